"""
错误类型定义

核心模块直接抛出异常，管线 (pipelines) 负责捕获并写入结果对象。
"""

from __future__ import annotations


class VoxelTilerError(Exception):
    """VoxelTiler 所有错误的基类"""


class InvalidResolution(VoxelTilerError, ValueError):
    """分辨率非正数 / 非有限值 / 缩放级别越界"""


class InvalidPoint(VoxelTilerError, ValueError):
    """点坐标或颜色无效 (NaN, Inf, 超出墨卡托纬度范围)"""

    def __init__(self, message: str, count: int = 1) -> None:
        super().__init__(message)
        self.count = count


class SimplificationFailed(VoxelTilerError, RuntimeError):
    """网格简化失败 (退化网格、目标比例被拒绝、后端异常)"""
