"""
Tile Pipeline — 点云 → 瓦片网格管线

流程:
  导入点云 (PLY / LAS / LAZ)
  → (可选) 投影坐标 → 经纬度 (pyproj)
  → 并行体素聚合
  → (可选) 按最少点数剔除稀疏体素
  → (可选) 瓦片切分
  → 逐瓦片面剔除网格化 (线程池)
  → (可选) 网格简化
  → 导出 PLY / GLB
"""

from __future__ import annotations

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.errors import SimplificationFailed
from core.mesh_processor import MeshData, Simplifier, SimplifyTarget
from core.mesher import Mesher, MeshOrigin, ValidSide
from core.point_cloud import PointCloudData, PointCloudProcessor
from core.projection import reproject_to_lonlat
from core.resolution import parse_resolution
from core.resource_manager import ResourceManager
from core.sparse_voxels import VoxelGrid
from core.tiler import TileIndex, TilePartitioner
from core.voxel_builder import ParallelVoxelBuilder

logger = logging.getLogger(__name__)


@dataclass
class TilePipelineConfig:
    """瓦片管线配置"""
    input_path: str = ""
    output_path: str = ""                 # 瓦片模式为目录，否则为单个文件
    output_format: str = "glb"            # glb | ply
    resolution: Any = 1.0                 # 1.0 | {"meter": 1.0} | {"zoom": 18}
    source_crs: Optional[Any] = None      # "EPSG:6677" 等投影坐标系；None = 输入已是经纬度
    swap_xy: bool = False                 # LAS 的 x 列为北向坐标时交换
    height_offset: Optional[float] = None  # None = 预扫描最低高度
    strict_points: bool = False           # True = 遇到无效点整体失败
    min_points: int = 1                   # 体素最少贡献点数
    # 瓦片
    tiling: bool = True
    tile_edge: int = 256
    # 网格化
    valid_sides: List[str] = field(
        default_factory=lambda: ["top", "bottom", "left", "right", "front", "back"]
    )
    keep_border: bool = True
    origin: str = "tile"                  # world | tile | voxel
    # 简化
    simplify: bool = False
    simplify_ratio: float = 0.5
    # 并行
    max_workers: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "TilePipelineConfig":
        """从 settings.yaml 的 pipeline 段构造，忽略未知键"""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown pipeline config keys: %s", sorted(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TilePipelineResult:
    """瓦片管线结果"""
    success: bool = True
    output_paths: List[str] = field(default_factory=list)
    input_points: int = 0
    skipped_points: int = 0
    total_voxels: int = 0
    tile_count: int = 0
    total_vertices: int = 0
    total_faces: int = 0
    elapsed_sec: float = 0.0
    meshes: Dict[TileIndex, MeshData] = field(default_factory=dict, repr=False)
    simplification_failures: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class PipelineTiles:
    """
    点云 → 瓦片网格转换管线

    Usage::

        pipeline = PipelineTiles(ResourceManager())
        result = pipeline.run(TilePipelineConfig(
            input_path="terrain.laz",
            output_path="tiles/",
            resolution={"zoom": 18},
            source_crs="EPSG:6677",
            valid_sides=["top", "left", "right", "front", "back"],
        ))
    """

    def __init__(
        self,
        resource_manager: Optional[ResourceManager] = None,
        simplifier: Optional[Simplifier] = None,
    ) -> None:
        self.rm = resource_manager or ResourceManager()
        self.pc_processor = PointCloudProcessor()
        self.mesher = Mesher()
        self.simplifier = simplifier or Simplifier()
        # 中间结果
        self.current_grid: Optional[VoxelGrid] = None

    def run(
        self,
        config: TilePipelineConfig,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> TilePipelineResult:
        """从文件执行管线"""
        t0 = time.perf_counter()
        try:
            pc = self.pc_processor.load(config.input_path)
        except Exception as e:
            logger.error("Failed to load point cloud: %s", e, exc_info=True)
            result = TilePipelineResult(success=False, errors=[str(e)])
            result.elapsed_sec = time.perf_counter() - t0
            return result

        return self.run_points(pc, config, progress_callback)

    def run_points(
        self,
        points,
        config: TilePipelineConfig,
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> TilePipelineResult:
        """对内存中的点集执行管线；config.output_path 为空时不导出"""
        t0 = time.perf_counter()
        result = TilePipelineResult()

        def report(pct: float, msg: str) -> None:
            if progress_callback:
                progress_callback(pct, msg)

        try:
            # ── Step 1: 准备 ──
            resolution = parse_resolution(config.resolution)
            valid_sides = ValidSide.from_names(config.valid_sides)
            origin = MeshOrigin(config.origin)
            pc = PointCloudData.coerce(points)
            result.input_points = pc.n_points

            # ── Step 1b: 投影坐标 → 经纬度 ──
            if config.source_crs is not None:
                if resolution.is_geodetic:
                    report(2.0, f"Reprojecting from {config.source_crs}…")
                    pc = reproject_to_lonlat(pc, config.source_crs, swap_xy=config.swap_xy)
                else:
                    result.warnings.append(
                        f"source_crs {config.source_crs} ignored: meter resolution works in source units"
                    )
            logger.debug("Input: %s", pc.summary())

            # ── Step 2: 并行体素聚合 ──
            report(5.0, "Voxelizing…")
            builder = ParallelVoxelBuilder(
                self.rm, max_workers=config.max_workers, strict=config.strict_points
            )
            grid = builder.build(
                pc, resolution,
                height_offset=config.height_offset,
                progress_callback=lambda p, m: report(5 + p * 0.35, m),
            )
            result.skipped_points = grid.skipped_points
            if grid.skipped_points:
                result.warnings.append(f"Skipped {grid.skipped_points} invalid points")
                if (resolution.is_geodetic and config.source_crs is None
                        and grid.skipped_points == pc.n_points):
                    result.warnings.append(
                        "No point is valid lon/lat; set source_crs for projected input"
                    )
            logger.debug("Voxel grid: %s", grid.summary())

            # ── Step 3: 剔除稀疏体素 ──
            if config.min_points > 1:
                grid = grid.prune(config.min_points)

            self.current_grid = grid
            result.total_voxels = grid.count

            # ── Step 4: 瓦片切分 ──
            report(45.0, "Partitioning tiles…")
            if config.tiling:
                tiles = TilePartitioner(config.tile_edge).partition(grid)
            else:
                tiles = {TileIndex(resolution.zoom, 0, 0): grid} if not grid.is_empty else {}
            result.tile_count = len(tiles)

            # ── Step 5: 网格化 ──
            report(50.0, f"Meshing {len(tiles)} tiles…")
            meshes = self._mesh_tiles(tiles, valid_sides, origin, config)

            # ── Step 6: 简化 ──
            if config.simplify:
                report(70.0, "Simplifying…")
                meshes = self._simplify_tiles(meshes, config, result)

            result.meshes = meshes
            result.total_vertices = sum(m.n_vertices for m in meshes.values())
            result.total_faces = sum(m.n_faces for m in meshes.values())

            # ── Step 7: 导出 ──
            if config.output_path and meshes:
                report(85.0, "Exporting…")
                result.output_paths = self._export(meshes, config, report)

            result.success = True
            elapsed = time.perf_counter() - t0
            result.elapsed_sec = elapsed

            report(100.0, f"Done ({elapsed:.1f}s, {result.tile_count} tiles)")
            logger.info("Tile pipeline: %d points → %d voxels → %d tiles, %d faces in %.1fs",
                        result.input_points, result.total_voxels, result.tile_count,
                        result.total_faces, elapsed)

        except Exception as e:
            result.success = False
            result.errors.append(str(e))
            result.elapsed_sec = time.perf_counter() - t0
            logger.error("Tile pipeline failed: %s", e, exc_info=True)
            report(100.0, f"Error: {e}")

        return result

    # ── 内部步骤 ────────────────────────────────────────────────

    def _mesh_tiles(
        self,
        tiles: Dict[TileIndex, VoxelGrid],
        valid_sides: ValidSide,
        origin: MeshOrigin,
        config: TilePipelineConfig,
    ) -> Dict[TileIndex, MeshData]:
        """瓦片之间没有共享可变状态，直接线程池并行"""
        if not tiles:
            return {}

        workers = min(len(tiles), config.max_workers or self.rm.usable_cpu_threads)

        def mesh_one(tile_grid: VoxelGrid) -> MeshData:
            return self.mesher.mesh(tile_grid, valid_sides, origin=origin, keep_border=config.keep_border)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(mesh_one, tiles.values()))

        return dict(zip(tiles.keys(), results))

    def _simplify_tiles(
        self,
        meshes: Dict[TileIndex, MeshData],
        config: TilePipelineConfig,
        result: TilePipelineResult,
    ) -> Dict[TileIndex, MeshData]:
        """简化失败的瓦片保留原网格并记录失败原因"""
        target = SimplifyTarget(ratio=config.simplify_ratio)
        simplified: Dict[TileIndex, MeshData] = {}

        for tile, mesh in meshes.items():
            try:
                simplified[tile] = self.simplifier.simplify(mesh, target)
            except SimplificationFailed as e:
                logger.warning("Simplification failed for tile %s: %s", tile.path, e)
                result.simplification_failures.append(f"{tile.path}: {e}")
                simplified[tile] = mesh

        return simplified

    def _export(
        self,
        meshes: Dict[TileIndex, MeshData],
        config: TilePipelineConfig,
        report: Callable[[float, str], None],
    ) -> List[str]:
        from io_formats.mesh_exporter import MeshExporter

        exporter = MeshExporter()
        output_path = Path(config.output_path)

        if config.tiling:
            paths = exporter.export_tiles(
                meshes, output_path, fmt=config.output_format,
                progress_callback=lambda p, m: report(85 + p * 0.14, m),
            )
            return [str(p) for p in paths]

        mesh = next(iter(meshes.values()))
        if output_path.suffix.lower().lstrip(".") != config.output_format:
            output_path = output_path.with_suffix(f".{config.output_format}")
        return [str(exporter.export(mesh, output_path))]
