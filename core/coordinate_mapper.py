"""
CoordinateMapper — 点坐标 → 整数体素坐标

- 水平: floor(Resolution.to_voxel_space(...))
- 垂直: floor((height - height_offset) / edge)，edge 为该点的解析边长
- 高度偏移采用预扫描策略：先求数据集最低高度，再量化。
  不做增量 rebase；低于偏移的点得到负 z。
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from core.errors import InvalidPoint
from core.point_cloud import Point, PointCloudData
from core.resolution import Resolution

logger = logging.getLogger(__name__)

Coord = Tuple[int, int, int]

# float64 可精确表示的最大整数
MAX_VOXEL_COORD = float(2 ** 53)


@dataclass
class MappedPoints:
    """批量映射结果 (仅包含有效点)"""
    coords: np.ndarray   # (K, 3) int64
    edges: np.ndarray    # (K,) float64, 每点解析边长
    valid: np.ndarray    # (N,) bool, 相对输入的有效掩码

    @property
    def n_valid(self) -> int:
        return self.coords.shape[0]

    @property
    def n_invalid(self) -> int:
        return int((~self.valid).sum())


def scan_height_offset(pc: PointCloudData, resolution: Resolution = None) -> float:
    """预扫描：有效点的最低高度；没有有效点时返回 0.0"""
    if pc.n_points == 0:
        return 0.0
    mask = pc.valid_mask()
    if resolution is not None:
        mask &= resolution.valid_mask(pc.points)
    if not mask.any():
        return 0.0
    return float(pc.points[mask, 2].min())


class CoordinateMapper:
    """
    坐标映射器

    Usage::

        mapper = CoordinateMapper(MeterResolution(0.5), height_offset=12.0)
        coord = mapper.map(Point(1.2, 3.4, 13.1))     # -> (2, 6, 2)
        mapped = mapper.map_array(point_cloud)
    """

    def __init__(self, resolution: Resolution, height_offset: float = 0.0) -> None:
        resolution.validate()
        if not math.isfinite(height_offset):
            raise ValueError(f"Height offset must be finite, got {height_offset}")
        self.resolution = resolution
        self.height_offset = float(height_offset)

    def map(self, point: Point) -> Coord:
        """映射单个点；无效点抛出 InvalidPoint"""
        pc = PointCloudData.from_points([point])
        mapped = self.map_array(pc)
        if mapped.n_valid == 0:
            raise InvalidPoint(f"Point cannot be mapped: {tuple(point)}")
        x, y, z = mapped.coords[0]
        return int(x), int(y), int(z)

    def map_array(self, pc: PointCloudData) -> MappedPoints:
        """
        批量映射。

        Returns
        -------
        MappedPoints
            coords/edges 只包含有效点，valid 为与输入等长的掩码
        """
        n = pc.n_points
        if n == 0:
            return MappedPoints(
                coords=np.zeros((0, 3), dtype=np.int64),
                edges=np.zeros(0, dtype=np.float64),
                valid=np.zeros(0, dtype=bool),
            )

        valid = pc.valid_mask() & self.resolution.valid_mask(pc.points)
        positions = pc.points[valid]

        edges = self.resolution.resolve(positions[:, 1])
        edge_ok = np.isfinite(edges) & (edges > 0)
        if not edge_ok.all():
            valid_idx = np.flatnonzero(valid)
            valid[valid_idx[~edge_ok]] = False
            positions = positions[edge_ok]
            edges = edges[edge_ok]

        horizontal = np.floor(self.resolution.to_voxel_space(positions, edges))
        vertical = np.floor((positions[:, 2] - self.height_offset) / edges)
        quotients = np.column_stack([horizontal, vertical])

        # 超出整数精度的商 (极小边长 × 极大坐标) 视为无效点，而不是溢出回绕
        with np.errstate(invalid="ignore"):
            in_range = (np.abs(quotients) <= MAX_VOXEL_COORD).all(axis=1)
        if not in_range.all():
            valid_idx = np.flatnonzero(valid)
            valid[valid_idx[~in_range]] = False
            quotients = quotients[in_range]
            edges = edges[in_range]

        coords = quotients.astype(np.int64)
        return MappedPoints(coords=coords, edges=edges, valid=valid)
