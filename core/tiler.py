"""
TilePartitioner — 按水平瓦片切分体素网格

- 瓦片边长默认 256 体素列，与标准 Web 地图瓦片一致
- tile_x = x // edge, tile_y = y // edge (floor 除法)，z 不参与切分
- 每个瓦片得到独立的 VoxelGrid (体素为副本)，可单独处理后释放
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, Tuple

from core.coordinate_mapper import Coord
from core.sparse_voxels import VoxelGrid

logger = logging.getLogger(__name__)

DEFAULT_TILE_EDGE = 256


@dataclass(frozen=True, order=True)
class TileIndex:
    """瓦片索引 (zoom, x, y)"""
    zoom: int
    tile_x: int
    tile_y: int

    @property
    def path(self) -> str:
        """z/x/y 形式的相对路径"""
        return f"{self.zoom}/{self.tile_x}/{self.tile_y}"


class TilePartitioner:
    """
    瓦片切分器

    Usage::

        tiles = TilePartitioner(tile_edge=256).partition(grid)
        for index, tile_grid in tiles.items():
            mesh = Mesher().mesh(tile_grid, ValidSide.OPEN_BOTTOM)
    """

    def __init__(self, tile_edge: int = DEFAULT_TILE_EDGE) -> None:
        if isinstance(tile_edge, bool) or not isinstance(tile_edge, int) or tile_edge <= 0:
            raise ValueError(f"Tile edge must be a positive integer, got {tile_edge!r}")
        self.tile_edge = tile_edge

    def tile_of(self, coord: Coord, zoom: int = 0) -> TileIndex:
        x, y, _z = coord
        return TileIndex(zoom, x // self.tile_edge, y // self.tile_edge)

    def partition(self, grid: VoxelGrid) -> Dict[TileIndex, VoxelGrid]:
        """
        切分网格。

        Returns
        -------
        dict[TileIndex, VoxelGrid]
            按 TileIndex 排序；不包含空瓦片
        """
        zoom = grid.resolution.zoom
        tiles: Dict[TileIndex, VoxelGrid] = {}

        for coord, voxel in grid.items():
            index = self.tile_of(coord, zoom)
            tile_grid = tiles.get(index)
            if tile_grid is None:
                tile_grid = grid.spawn(tile=index, tile_edge=self.tile_edge)
                tiles[index] = tile_grid
            tile_grid.insert_copy(coord, voxel)

        result = {index: tiles[index] for index in sorted(tiles)}
        logger.info("Partitioned %d voxels into %d tiles (edge=%d)",
                    grid.count, len(result), self.tile_edge)
        return result

    def iter_tiles(self, grid: VoxelGrid) -> Iterator[Tuple[TileIndex, VoxelGrid]]:
        """按 TileIndex 顺序迭代瓦片"""
        yield from self.partition(grid).items()
