"""
VoxelGrid — 稀疏体素聚合引擎

核心数据结构：
- 内部使用 Dict[Tuple[int,int,int], Voxel] 存储非空体素 (坐标 → 聚合属性)
- Voxel 只保存颜色累加和与点数，平均色读取时再计算，
  因此聚合满足交换律与结合律：任意顺序/分组 build + merge 结果一致
- 空气不存储；体素在第一个点落入时创建，聚合过程中不删除
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from core.coordinate_mapper import Coord, CoordinateMapper, scan_height_offset
from core.errors import InvalidPoint
from core.point_cloud import DEFAULT_COLOR, PointCloudData
from core.resolution import Resolution, ZoomResolution, pixel_resolution

logger = logging.getLogger(__name__)

ColorSum = Tuple[int, int, int]


@dataclass
class Voxel:
    """单个体素的聚合属性"""
    color_sum: ColorSum
    count: int

    def absorb(self, color_sum: ColorSum, count: int) -> None:
        self.color_sum = (
            self.color_sum[0] + color_sum[0],
            self.color_sum[1] + color_sum[1],
            self.color_sum[2] + color_sum[2],
        )
        self.count += count

    @property
    def color(self) -> Tuple[int, int, int]:
        """平均色 (四舍五入，纯整数运算)"""
        c = self.count
        r, g, b = self.color_sum
        return ((2 * r + c) // (2 * c), (2 * g + c) // (2 * c), (2 * b + c) // (2 * c))

    def copy(self) -> "Voxel":
        return Voxel(color_sum=self.color_sum, count=self.count)


class VoxelGrid:
    """
    稀疏体素网格

    Usage::

        grid = VoxelGrid.build(point_cloud, MeterResolution(0.5))
        grid.color((10, 20, 3))                 # -> (r, g, b)
        (10, 20, 3) in grid                     # -> True

        merged = grid_a.merge(grid_b)           # 并行构建的汇合点
        dense_only = merged.prune(min_points=3)
    """

    def __init__(
        self,
        resolution: Resolution,
        height_offset: float = 0.0,
        tile=None,
        tile_edge: Optional[int] = None,
    ) -> None:
        resolution.validate()
        self.resolution = resolution
        self.height_offset = float(height_offset)
        self.tile = tile
        self.tile_edge = tile_edge
        self.skipped_points = 0
        self._voxels: Dict[Coord, Voxel] = {}
        self._edge_min: Optional[float] = None
        self._edge_max: Optional[float] = None
        self._bounds_min: Optional[np.ndarray] = None
        self._bounds_max: Optional[np.ndarray] = None

    # ── 构建 ────────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        points,
        resolution: Resolution,
        height_offset: Optional[float] = None,
        strict: bool = False,
    ) -> "VoxelGrid":
        """
        从点集构建体素网格。

        Parameters
        ----------
        points : PointCloudData | ndarray (N, 3) | Iterable[Point]
        resolution : Resolution
            在创建任何体素之前校验，非法时抛出 InvalidResolution
        height_offset : float, optional
            高度偏移；省略时预扫描点集最低高度
        strict : bool
            True 时遇到无效点直接抛出 InvalidPoint；默认跳过并计数

        Returns
        -------
        VoxelGrid
        """
        resolution.validate()
        pc = PointCloudData.coerce(points)

        if height_offset is None:
            height_offset = scan_height_offset(pc, resolution)

        grid = cls(resolution, height_offset)
        grid.add_points(pc, strict=strict)
        return grid

    def add_points(self, points, strict: bool = False) -> int:
        """
        将点聚合进当前网格 (非线程安全，每个 worker 应持有独立网格)。

        Returns
        -------
        int
            实际聚合的点数
        """
        pc = PointCloudData.coerce(points)
        if pc.n_points == 0:
            return 0

        mapper = CoordinateMapper(self.resolution, self.height_offset)
        mapped = mapper.map_array(pc)

        if mapped.n_invalid:
            if strict:
                raise InvalidPoint(
                    f"{mapped.n_invalid} of {pc.n_points} points are invalid",
                    count=mapped.n_invalid,
                )
            self.skipped_points += mapped.n_invalid
            logger.warning("Skipped %d / %d invalid points", mapped.n_invalid, pc.n_points)

        if mapped.n_valid == 0:
            return 0

        colors = pc.color_array()[mapped.valid]
        self._ingest(mapped.coords, colors)
        self._track_edges(float(mapped.edges.min()), float(mapped.edges.max()))
        return mapped.n_valid

    def _ingest(self, coords: np.ndarray, colors: np.ndarray) -> None:
        """同坐标点先在 numpy 内归约，再逐体素累加"""
        unique, inverse = np.unique(coords, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)

        sums = np.zeros((unique.shape[0], 3), dtype=np.int64)
        np.add.at(sums, inverse, colors)
        counts = np.bincount(inverse, minlength=unique.shape[0])

        for i in range(unique.shape[0]):
            x, y, z = unique[i]
            s = sums[i]
            self.accumulate((int(x), int(y), int(z)), (int(s[0]), int(s[1]), int(s[2])), int(counts[i]))

    def accumulate(self, coord: Coord, color_sum: ColorSum, count: int = 1) -> Voxel:
        """get-or-insert 后累加；count 必须 ≥ 1"""
        if count < 1:
            raise ValueError(f"Voxel count must be >= 1, got {count}")
        voxel = self._voxels.get(coord)
        if voxel is None:
            voxel = Voxel(color_sum=tuple(color_sum), count=count)
            self._voxels[coord] = voxel
            self._invalidate_bounds()
        else:
            voxel.absorb(color_sum, count)
        return voxel

    def _track_edges(self, edge_min: Optional[float], edge_max: Optional[float]) -> None:
        if edge_min is None or edge_max is None:
            return
        self._edge_min = edge_min if self._edge_min is None else min(self._edge_min, edge_min)
        self._edge_max = edge_max if self._edge_max is None else max(self._edge_max, edge_max)

    # ── 合并 ────────────────────────────────────────────────────

    def is_compatible(self, other: "VoxelGrid") -> bool:
        return self.resolution == other.resolution and self.height_offset == other.height_offset

    def merge(self, other: "VoxelGrid") -> "VoxelGrid":
        """
        合并两个网格，返回新网格 (两个输入均不被修改)。

        共享坐标的体素累加，独有坐标直接复制。
        """
        if not self.is_compatible(other):
            raise ValueError(
                "Cannot merge grids built with different resolution or height offset: "
                f"{self.resolution}/{self.height_offset} vs {other.resolution}/{other.height_offset}"
            )
        merged = self.copy()
        merged.absorb(other)
        return merged

    def absorb(self, other: "VoxelGrid") -> None:
        """原地合并 other (调用方保证没有并发写入)"""
        if not self.is_compatible(other):
            raise ValueError("Cannot absorb grid with different resolution or height offset")
        for coord, voxel in other._voxels.items():
            self.accumulate(coord, voxel.color_sum, voxel.count)
        self._track_edges(other._edge_min, other._edge_max)
        self.skipped_points += other.skipped_points

    # ── 读取 ────────────────────────────────────────────────────

    def get(self, coord: Coord) -> Optional[Voxel]:
        return self._voxels.get(coord)

    def color(self, coord: Coord) -> Tuple[int, int, int]:
        """体素平均色；坐标不存在时抛出 KeyError"""
        return self._voxels[coord].color

    def __contains__(self, coord) -> bool:
        return coord in self._voxels

    def __len__(self) -> int:
        return len(self._voxels)

    def __iter__(self) -> Iterator[Coord]:
        return iter(self._voxels)

    def items(self) -> Iterable[Tuple[Coord, Voxel]]:
        return self._voxels.items()

    def coords(self) -> List[Coord]:
        """排序后的坐标列表 (确定性遍历)"""
        return sorted(self._voxels)

    @property
    def count(self) -> int:
        """非空体素数量"""
        return len(self._voxels)

    @property
    def is_empty(self) -> bool:
        return len(self._voxels) == 0

    @property
    def point_count(self) -> int:
        """贡献点总数"""
        return sum(v.count for v in self._voxels.values())

    @property
    def edge_length(self) -> float:
        """
        代表性体素边长 (米)。

        米制分辨率即为其边长；缩放级别分辨率取所见边长最小值与最大值的中点。
        """
        if isinstance(self.resolution, ZoomResolution):
            if self._edge_min is None:
                return float(pixel_resolution(0.0, self.resolution.zoom))
            return (self._edge_min + self._edge_max) / 2.0
        return float(self.resolution.edge_length)

    # ── 派生 ────────────────────────────────────────────────────

    def spawn(self, tile=None, tile_edge: Optional[int] = None) -> "VoxelGrid":
        """相同配置的空网格"""
        grid = VoxelGrid(self.resolution, self.height_offset, tile=tile, tile_edge=tile_edge)
        grid._edge_min = self._edge_min
        grid._edge_max = self._edge_max
        return grid

    def copy(self) -> "VoxelGrid":
        grid = self.spawn(tile=self.tile, tile_edge=self.tile_edge)
        grid._voxels = {c: v.copy() for c, v in self._voxels.items()}
        grid.skipped_points = self.skipped_points
        return grid

    def insert_copy(self, coord: Coord, voxel: Voxel) -> None:
        """插入体素副本 (用于分块，不与源网格共享可变状态)"""
        self._voxels[coord] = voxel.copy()
        self._invalidate_bounds()

    def prune(self, min_points: int) -> "VoxelGrid":
        """返回仅保留贡献点数 ≥ min_points 的体素的新网格"""
        grid = self.spawn(tile=self.tile, tile_edge=self.tile_edge)
        grid.skipped_points = self.skipped_points
        for coord, voxel in self._voxels.items():
            if voxel.count >= min_points:
                grid._voxels[coord] = voxel.copy()

        dropped = self.count - grid.count
        if dropped:
            logger.info("Pruned %d / %d voxels below %d points", dropped, self.count, min_points)
        return grid

    @classmethod
    def from_coords(
        cls,
        coords: Iterable[Coord],
        resolution: Resolution,
        color: Tuple[int, int, int] = DEFAULT_COLOR,
        height_offset: float = 0.0,
    ) -> "VoxelGrid":
        """直接由坐标集合创建网格，每个体素计数为 1"""
        grid = cls(resolution, height_offset)
        for coord in coords:
            x, y, z = coord
            grid.accumulate((int(x), int(y), int(z)), tuple(color), 1)
        return grid

    def equals(self, other: "VoxelGrid") -> bool:
        """体素集合、累加和与点数完全一致"""
        if self.count != other.count or not self.is_compatible(other):
            return False
        for coord, voxel in self._voxels.items():
            theirs = other._voxels.get(coord)
            if theirs is None or theirs != voxel:
                return False
        return True

    # ── 包围盒 ──────────────────────────────────────────────────

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """返回 (min_xyz, max_xyz)"""
        if self._bounds_min is None:
            self._compute_bounds()
        return self._bounds_min, self._bounds_max

    @property
    def size(self) -> Tuple[int, int, int]:
        """(width_x, depth_y, height_z)"""
        if self.is_empty:
            return (0, 0, 0)
        bmin, bmax = self.bounds
        d = bmax - bmin + 1
        return (int(d[0]), int(d[1]), int(d[2]))

    def _compute_bounds(self) -> None:
        if not self._voxels:
            self._bounds_min = np.zeros(3, dtype=np.int64)
            self._bounds_max = np.zeros(3, dtype=np.int64)
            return

        coords = np.array(list(self._voxels.keys()), dtype=np.int64)
        self._bounds_min = coords.min(axis=0)
        self._bounds_max = coords.max(axis=0)

    def _invalidate_bounds(self) -> None:
        self._bounds_min = None
        self._bounds_max = None

    # ── 统计信息 ────────────────────────────────────────────────

    def summary(self) -> Dict:
        return {
            "voxels": self.count,
            "points": self.point_count,
            "skipped_points": self.skipped_points,
            "size": list(self.size),
            "edge_length": self.edge_length,
            "height_offset": self.height_offset,
        }

    def __repr__(self) -> str:
        if self.is_empty:
            return "VoxelGrid(empty)"
        sx, sy, sz = self.size
        return f"VoxelGrid(voxels={self.count}, size={sx}×{sy}×{sz}, edge={self.edge_length:.4f})"
