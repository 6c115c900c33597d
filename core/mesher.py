"""
Mesher — 立方体面剔除网格生成

对每个占据体素 c 与每个允许方向 d：
若 c + d 未被占据，则在 c 朝向 d 的面上输出一个四边形 (两个三角形)。
体素之间的内部面永远不会输出，网格规模与暴露表面积成正比。

顶点去重策略：按 (角点整数坐标, 颜色) 去重的索引网格。
单个孤立体素 → 8 个顶点 / 12 个三角形。
"""

from __future__ import annotations

import logging
import time
from enum import Enum, Flag
from typing import Dict, List, Tuple

import numpy as np

from core.coordinate_mapper import Coord
from core.mesh_processor import MeshData
from core.sparse_voxels import VoxelGrid

logger = logging.getLogger(__name__)


class ValidSide(Flag):
    """允许输出的面方向"""
    NONE = 0
    TOP = 1          # +Z
    BOTTOM = 2       # -Z
    LEFT = 4         # -X
    RIGHT = 8        # +X
    FRONT = 16       # +Y
    BACK = 32        # -Y
    ALL = TOP | BOTTOM | LEFT | RIGHT | FRONT | BACK
    # 地形瓦片：底面开放
    OPEN_BOTTOM = TOP | LEFT | RIGHT | FRONT | BACK

    @classmethod
    def from_names(cls, names) -> "ValidSide":
        """["top", "left", ...] → ValidSide"""
        sides = cls.NONE
        for name in names:
            sides |= cls[str(name).upper()]
        return sides


class MeshOrigin(Enum):
    """顶点坐标原点"""
    WORLD = "world"   # 体素坐标 × 边长，z 加回高度偏移
    TILE = "tile"     # 相对瓦片左下角 (x/y)
    VOXEL = "voxel"   # 相对网格最小包围盒


# 方向 → (邻居偏移, 面的四个角点 (从外侧看逆时针))
_FACES: Tuple[Tuple[ValidSide, Coord, Tuple[Coord, Coord, Coord, Coord]], ...] = (
    (ValidSide.LEFT, (-1, 0, 0), ((0, 0, 0), (0, 0, 1), (0, 1, 1), (0, 1, 0))),
    (ValidSide.RIGHT, (1, 0, 0), ((1, 0, 0), (1, 1, 0), (1, 1, 1), (1, 0, 1))),
    (ValidSide.BACK, (0, -1, 0), ((0, 0, 0), (1, 0, 0), (1, 0, 1), (0, 0, 1))),
    (ValidSide.FRONT, (0, 1, 0), ((0, 1, 0), (0, 1, 1), (1, 1, 1), (1, 1, 0))),
    (ValidSide.BOTTOM, (0, 0, -1), ((0, 0, 0), (0, 1, 0), (1, 1, 0), (1, 0, 0))),
    (ValidSide.TOP, (0, 0, 1), ((0, 0, 1), (1, 0, 1), (1, 1, 1), (0, 1, 1))),
)


class Mesher:
    """
    面剔除网格生成器

    Usage::

        mesher = Mesher()
        mesh = mesher.mesh(grid)                                   # 六面全开
        mesh = mesher.mesh(tile_grid, ValidSide.OPEN_BOTTOM,
                           origin=MeshOrigin.TILE, keep_border=False)
    """

    def mesh(
        self,
        grid: VoxelGrid,
        valid_sides: ValidSide = ValidSide.ALL,
        origin: MeshOrigin = MeshOrigin.WORLD,
        keep_border: bool = True,
    ) -> MeshData:
        """
        生成网格。

        Parameters
        ----------
        grid : VoxelGrid
        valid_sides : ValidSide
            不在其中的方向永远不会输出面
        origin : MeshOrigin
            顶点坐标原点
        keep_border : bool
            False 时丢弃任一角点落在网格顶点包围盒边界上的面 (瓦片接缝)

        Returns
        -------
        MeshData
            空网格返回空 MeshData
        """
        t0 = time.perf_counter()

        if grid.is_empty:
            return MeshData.empty(metadata={"edge_length": grid.edge_length, "origin": origin.value})

        faces_to_test = [f for f in _FACES if f[0] & valid_sides]

        if not keep_border:
            bmin, bmax = grid.bounds
            lo = tuple(int(v) for v in bmin)
            hi = tuple(int(v) + 1 for v in bmax)

        vertex_index: Dict[Tuple[Coord, Tuple[int, int, int]], int] = {}
        corners: List[Coord] = []
        colors: List[Tuple[int, int, int]] = []
        triangles: List[Tuple[int, int, int]] = []
        face_counts = {side.name.lower(): 0 for side, _, _ in _FACES}

        for coord in grid.coords():
            x, y, z = coord
            color = None

            for side, (dx, dy, dz), quad in faces_to_test:
                if (x + dx, y + dy, z + dz) in grid:
                    continue

                quad_corners = [(x + cx, y + cy, z + cz) for cx, cy, cz in quad]
                if not keep_border and any(_on_border(c, lo, hi) for c in quad_corners):
                    continue

                if color is None:
                    color = grid.color(coord)

                ids = []
                for corner in quad_corners:
                    key = (corner, color)
                    idx = vertex_index.get(key)
                    if idx is None:
                        idx = len(corners)
                        vertex_index[key] = idx
                        corners.append(corner)
                        colors.append(color)
                    ids.append(idx)

                triangles.append((ids[0], ids[1], ids[2]))
                triangles.append((ids[0], ids[2], ids[3]))
                face_counts[side.name.lower()] += 1

        metadata = {
            "edge_length": grid.edge_length,
            "origin": origin.value,
            "voxels": grid.count,
            "face_counts": face_counts,
        }
        if grid.tile is not None:
            metadata["tile"] = grid.tile.path

        if not triangles:
            return MeshData.empty(metadata=metadata)

        vertices = self._place_vertices(np.array(corners, dtype=np.int64), grid, origin)

        mesh = MeshData(
            vertices=vertices,
            faces=np.array(triangles, dtype=np.int32),
            vertex_colors=np.array(colors, dtype=np.uint8),
            metadata=metadata,
        )

        logger.debug("Meshed %d voxels → %d verts, %d tris in %.3fs",
                     grid.count, mesh.n_vertices, mesh.n_faces, time.perf_counter() - t0)
        return mesh

    @staticmethod
    def _place_vertices(corners: np.ndarray, grid: VoxelGrid, origin: MeshOrigin) -> np.ndarray:
        """整数角点 → 浮点顶点坐标"""
        edge = grid.edge_length
        shift = np.zeros(3, dtype=np.int64)

        if origin == MeshOrigin.TILE and grid.tile is not None:
            shift[0] = grid.tile.tile_x * grid.tile_edge
            shift[1] = grid.tile.tile_y * grid.tile_edge
        elif origin == MeshOrigin.VOXEL:
            shift = grid.bounds[0].astype(np.int64)

        positions = (corners - shift).astype(np.float64) * edge
        if origin == MeshOrigin.WORLD:
            positions[:, 2] += grid.height_offset
        return positions


def _on_border(corner: Coord, lo: Coord, hi: Coord) -> bool:
    return any(corner[i] == lo[i] or corner[i] == hi[i] for i in range(3))
