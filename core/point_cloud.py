"""
PointCloudProcessor — 点云输入模块

功能:
1. 统一的点云数据容器 PointCloudData (位置 + 可选颜色 + 可选强度)
2. 加载 PLY (plyfile) 与 LAS/LAZ (laspy)
3. 无效点检测 (NaN / Inf 坐标、越界颜色)

核心管线只依赖 PointCloudData，与文件格式无关。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, NamedTuple, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_COLOR = (128, 128, 128)


class Point(NamedTuple):
    """单个点 (用于逐点输入；批量数据请使用 PointCloudData)"""
    x: float
    y: float
    z: float
    color: Optional[Tuple[int, int, int]] = None
    intensity: Optional[float] = None


@dataclass
class PointCloudData:
    """点云数据容器"""
    points: np.ndarray                       # (N, 3) float64
    colors: Optional[np.ndarray] = None      # (N, 3) uint8 或浮点 (校验前)
    intensity: Optional[np.ndarray] = None   # (N,) float
    metadata: Dict = field(default_factory=dict)

    @property
    def n_points(self) -> int:
        return self.points.shape[0]

    @property
    def has_colors(self) -> bool:
        return self.colors is not None and self.colors.shape[0] > 0

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.points.min(axis=0), self.points.max(axis=0)

    @property
    def extent(self) -> np.ndarray:
        vmin, vmax = self.bounds
        return vmax - vmin

    def summary(self) -> Dict:
        return {
            "points": self.n_points,
            "has_colors": self.has_colors,
            "has_intensity": self.intensity is not None,
            "extent": self.extent.tolist() if self.n_points else [0.0, 0.0, 0.0],
        }

    # ── 构造 ────────────────────────────────────────────────────

    @classmethod
    def empty(cls) -> "PointCloudData":
        return cls(points=np.zeros((0, 3), dtype=np.float64))

    @classmethod
    def from_points(cls, points: Iterable[Point]) -> "PointCloudData":
        """
        从 Point 序列构造。

        任意一个点带颜色时生成颜色数组，无颜色的点使用默认灰色。
        """
        items = list(points)
        if not items:
            return cls.empty()

        positions = np.array([(p[0], p[1], p[2]) for p in items], dtype=np.float64)

        colors = None
        if any(_field(p, 3) is not None for p in items):
            colors = np.array(
                [_field(p, 3) if _field(p, 3) is not None else DEFAULT_COLOR for p in items],
                dtype=np.float64,
            )

        intensity = None
        if any(_field(p, 4) is not None for p in items):
            intensity = np.array(
                [_field(p, 4) if _field(p, 4) is not None else 0.0 for p in items],
                dtype=np.float64,
            )

        return cls(points=positions, colors=colors, intensity=intensity)

    @classmethod
    def coerce(cls, data) -> "PointCloudData":
        """PointCloudData / (N,3) ndarray / Point 可迭代对象 → PointCloudData"""
        if isinstance(data, PointCloudData):
            return data
        if isinstance(data, np.ndarray):
            if data.size == 0:
                return cls.empty()
            if data.ndim != 2 or data.shape[1] < 3:
                raise ValueError(f"Point array must have shape (N, 3), got {data.shape}")
            colors = data[:, 3:6] if data.shape[1] >= 6 else None
            return cls(points=data[:, :3].astype(np.float64), colors=colors)
        return cls.from_points(data)

    def subset(self, mask_or_slice) -> "PointCloudData":
        """按布尔掩码或切片取子集 (颜色/强度同步)"""
        return PointCloudData(
            points=self.points[mask_or_slice],
            colors=self.colors[mask_or_slice] if self.colors is not None else None,
            intensity=self.intensity[mask_or_slice] if self.intensity is not None else None,
            metadata=self.metadata,
        )

    def split(self, n_chunks: int) -> "list[PointCloudData]":
        """按顺序切分为 n_chunks 个连续子块"""
        n_chunks = max(1, min(n_chunks, max(1, self.n_points)))
        bounds = np.linspace(0, self.n_points, n_chunks + 1).astype(int)
        return [self.subset(slice(bounds[i], bounds[i + 1])) for i in range(n_chunks)]

    # ── 校验 ────────────────────────────────────────────────────

    def valid_mask(self) -> np.ndarray:
        """坐标有限且颜色位于 [0, 255] 的点"""
        mask = np.isfinite(self.points).all(axis=1)
        if self.colors is not None:
            colors = np.asarray(self.colors, dtype=np.float64)
            mask &= np.isfinite(colors).all(axis=1)
            mask &= ((colors >= 0) & (colors <= 255)).all(axis=1)
        return mask

    def color_array(self) -> np.ndarray:
        """(N, 3) int64 颜色；无颜色时为默认灰色"""
        if self.colors is None:
            return np.tile(np.array(DEFAULT_COLOR, dtype=np.int64), (self.n_points, 1))
        return np.rint(np.asarray(self.colors, dtype=np.float64)).astype(np.int64)


def _field(point, index: int):
    return point[index] if len(point) > index else None


class PointCloudProcessor:
    """
    点云加载器

    Usage::

        pcp = PointCloudProcessor()
        pc = pcp.load("scan.ply")
        pc = pcp.load("terrain.laz")
    """

    SUPPORTED_EXTENSIONS = {".ply", ".las", ".laz"}

    # ── 加载 ────────────────────────────────────────────────────

    def load(self, path: str | Path) -> PointCloudData:
        """加载点云文件 (PLY, LAS, LAZ)"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Point cloud not found: {path}")

        ext = path.suffix.lower()
        if ext not in self.SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported point cloud format: {ext}")

        logger.info("Loading point cloud: %s", path.name)
        if ext == ".ply":
            result = self._load_ply(path)
        else:
            result = self._load_las(path)

        logger.info("Loaded: %d points, colors=%s, intensity=%s",
                    result.n_points, result.has_colors, result.intensity is not None)
        return result

    def _load_ply(self, path: Path) -> PointCloudData:
        """PLY 顶点元素: x, y, z + 可选 red/green/blue + 可选 intensity"""
        from plyfile import PlyData

        ply = PlyData.read(str(path))
        vertex = ply["vertex"]
        props = [p.name for p in vertex.properties]

        points = np.column_stack([vertex["x"], vertex["y"], vertex["z"]]).astype(np.float64)

        colors = None
        if {"red", "green", "blue"}.issubset(props):
            colors = np.column_stack([vertex["red"], vertex["green"], vertex["blue"]]).astype(np.uint8)

        intensity = None
        if "intensity" in props:
            intensity = np.asarray(vertex["intensity"], dtype=np.float64)

        return PointCloudData(
            points=points,
            colors=colors,
            intensity=intensity,
            metadata={"format": ".ply", "source": str(path), "properties": props},
        )

    def _load_las(self, path: Path) -> PointCloudData:
        """LAS/LAZ: 16 位颜色缩放到 8 位"""
        import laspy

        las = laspy.read(str(path))
        points = np.column_stack([las.x, las.y, las.z]).astype(np.float64)

        dims = set(las.point_format.dimension_names)
        colors = None
        if {"red", "green", "blue"}.issubset(dims):
            rgb = np.column_stack([las.red, las.green, las.blue]).astype(np.uint32)
            colors = (rgb >> 8).astype(np.uint8) if rgb.max(initial=0) > 255 else rgb.astype(np.uint8)

        intensity = None
        if "intensity" in dims:
            intensity = np.asarray(las.intensity, dtype=np.float64)

        return PointCloudData(
            points=points,
            colors=colors,
            intensity=intensity,
            metadata={"format": path.suffix.lower(), "source": str(path)},
        )
