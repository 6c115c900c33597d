"""
ParallelVoxelBuilder — 多线程点云聚合

策略: 每个 worker 持有独立的局部 VoxelGrid，全部完成后在屏障处按分块顺序合并。
没有并发写入者；由于聚合满足交换律/结合律，结果与分块方式和线程调度无关。
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional

from core.coordinate_mapper import scan_height_offset
from core.point_cloud import PointCloudData
from core.resolution import Resolution
from core.resource_manager import ResourceManager
from core.sparse_voxels import VoxelGrid

logger = logging.getLogger(__name__)


class ParallelVoxelBuilder:
    """
    并行体素构建器

    Usage::

        builder = ParallelVoxelBuilder(max_workers=8)
        grid = builder.build(point_cloud, MeterResolution(0.25))

        # 流式输入需要显式给出统一的高度偏移
        grid = builder.build_stream(chunks, resolution, height_offset=0.0)
    """

    def __init__(
        self,
        resource_manager: Optional[ResourceManager] = None,
        max_workers: Optional[int] = None,
        chunk_size: Optional[int] = None,
        strict: bool = False,
    ) -> None:
        self.rm = resource_manager or ResourceManager()
        self.max_workers = max_workers
        self.chunk_size = chunk_size
        self.strict = strict

    @property
    def workers(self) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return self.rm.usable_cpu_threads

    def build(
        self,
        points,
        resolution: Resolution,
        height_offset: Optional[float] = None,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> VoxelGrid:
        """
        并行构建。

        高度偏移只预扫描一次并由全部 worker 共享，保证各局部网格可合并。
        """
        resolution.validate()
        pc = PointCloudData.coerce(points)

        if height_offset is None:
            height_offset = scan_height_offset(pc, resolution)

        if pc.n_points == 0:
            return VoxelGrid(resolution, height_offset)

        chunk_size = self.chunk_size or self.rm.get_safe_batch_size()
        n_chunks = max(self.workers, -(-pc.n_points // max(1, chunk_size)))
        chunks = pc.split(n_chunks)

        return self._build_chunks(chunks, resolution, height_offset, progress_callback)

    def build_stream(
        self,
        chunks: Iterable,
        resolution: Resolution,
        height_offset: float,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> VoxelGrid:
        """流式输入 (有限序列的点块)，使用调用方给定的高度偏移"""
        resolution.validate()
        pcs = [PointCloudData.coerce(c) for c in chunks]
        if not pcs:
            return VoxelGrid(resolution, height_offset)
        return self._build_chunks(pcs, resolution, height_offset, progress_callback)

    def _build_chunks(
        self,
        chunks: List[PointCloudData],
        resolution: Resolution,
        height_offset: float,
        progress_callback: Optional[Callable[[float, str], None]],
    ) -> VoxelGrid:
        t0 = time.perf_counter()

        def report(pct: float, msg: str) -> None:
            if progress_callback:
                progress_callback(pct, msg)

        def build_one(chunk: PointCloudData) -> VoxelGrid:
            return VoxelGrid.build(chunk, resolution, height_offset=height_offset, strict=self.strict)

        workers = min(self.workers, len(chunks))
        report(0.0, f"Aggregating {len(chunks)} chunks on {workers} workers")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(build_one, chunk) for chunk in chunks]
            # 屏障: 按提交顺序收集，任一 worker 的异常在此处抛出
            partials = [f.result() for f in futures]

        report(80.0, "Merging partial grids")
        result = VoxelGrid(resolution, height_offset)
        for partial in partials:
            result.absorb(partial)

        elapsed = time.perf_counter() - t0
        report(100.0, f"Built {result.count} voxels")
        logger.info("Parallel build: %d chunks, %d workers → %d voxels (%d skipped points) in %.2fs",
                    len(chunks), workers, result.count, result.skipped_points, elapsed)
        return result
