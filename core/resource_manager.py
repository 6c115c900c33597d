"""
ResourceManager — CPU / 内存探测与并行度调度

功能:
- 启动时探测 CPU 核心数与物理内存 (psutil)
- 强制资源上限: CPU 留出指定核心给系统, 内存超过阈值时降速
- 为点云分块聚合提供 worker 数与安全分块大小
"""

from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """设备信息"""
    device_name: str = "CPU"
    cpu_count: int = 1
    cpu_reserved: int = 2
    ram_total_mb: int = 0


@dataclass
class ResourceSnapshot:
    """实时资源快照"""
    cpu_percent: float = 0.0
    ram_percent: float = 0.0
    ram_used_mb: int = 0
    is_throttled: bool = False


class ResourceManager:
    """
    计算资源管理器

    Usage::

        rm = ResourceManager(cpu_reserved_cores=2)
        rm.initialize()
        workers = rm.usable_cpu_threads
        chunk = rm.get_safe_batch_size()
    """

    def __init__(
        self,
        cpu_reserved_cores: int = 2,
        ram_warning_pct: int = 90,
        chunk_batch_size: int = 1_000_000,
        min_batch_size: int = 10_000,
    ) -> None:
        self.cpu_reserved_cores = cpu_reserved_cores
        self.ram_warning_pct = ram_warning_pct
        self.chunk_batch_size = chunk_batch_size
        self.min_batch_size = min_batch_size

        self._initialized = False
        self._device = DeviceInfo()

    @classmethod
    def from_config(cls, compute_config: dict) -> "ResourceManager":
        """从 settings.yaml 的 compute 段构造"""
        return cls(
            cpu_reserved_cores=compute_config.get("cpu_reserved_cores", 2),
            ram_warning_pct=compute_config.get("ram_warning_pct", 90),
            chunk_batch_size=compute_config.get("chunk_batch_size", 1_000_000),
        )

    # ── 初始化 ──────────────────────────────────────────────────

    def initialize(self) -> DeviceInfo:
        """
        探测硬件。

        Returns
        -------
        DeviceInfo
        """
        if self._initialized:
            return self._device

        self._device.cpu_count = os.cpu_count() or 1
        self._device.cpu_reserved = min(
            self.cpu_reserved_cores, max(0, self._device.cpu_count - 1)
        )
        self._device.ram_total_mb = psutil.virtual_memory().total // (1024 * 1024)
        self._device.device_name = platform.processor() or "CPU"
        self._initialized = True

        logger.info(
            "ResourceManager initialized: device=%s, RAM=%dMB, CPU=%d(-%d)",
            self._device.device_name,
            self._device.ram_total_mb,
            self._device.cpu_count,
            self._device.cpu_reserved,
        )
        return self._device

    # ── 实时监控 ────────────────────────────────────────────────

    @property
    def device_info(self) -> DeviceInfo:
        return self._device

    @property
    def usable_cpu_threads(self) -> int:
        """可用于计算的 CPU 线程数"""
        if not self._initialized:
            self.initialize()
        return max(1, self._device.cpu_count - self._device.cpu_reserved)

    def snapshot(self) -> ResourceSnapshot:
        """获取当前系统资源快照"""
        mem = psutil.virtual_memory()
        cpu_pct = psutil.cpu_percent(interval=None)

        return ResourceSnapshot(
            cpu_percent=cpu_pct,
            ram_percent=mem.percent,
            ram_used_mb=mem.used // (1024 * 1024),
            is_throttled=mem.percent > self.ram_warning_pct,
        )

    def should_throttle(self) -> bool:
        """检查是否应该降速"""
        return self.snapshot().is_throttled

    def get_safe_batch_size(self) -> int:
        """
        根据当前资源情况返回安全的分块点数。
        如果内存紧张则自动减半。
        """
        batch = self.chunk_batch_size

        if self.should_throttle():
            batch = max(self.min_batch_size, batch // 2)
            logger.warning("Memory pressure, reducing chunk size to %d points", batch)

        return batch
