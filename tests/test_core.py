"""
测试核心计算模块 — Resolution, CoordinateMapper, VoxelGrid, ParallelVoxelBuilder, TilePartitioner
"""

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _random_cloud(n=500, seed=7, extent=10.0):
    from core.point_cloud import PointCloudData
    rng = np.random.default_rng(seed)
    points = rng.uniform(0.0, extent, size=(n, 3))
    colors = rng.integers(0, 256, size=(n, 3)).astype(np.uint8)
    return PointCloudData(points=points, colors=colors)


# ── Resolution ─────────────────────────────────────────────────

class TestResolution:

    @pytest.mark.parametrize("edge", [0.0, -1.0, float("nan"), float("inf")])
    def test_invalid_meter_edge(self, edge):
        from core.errors import InvalidResolution
        from core.resolution import MeterResolution
        with pytest.raises(InvalidResolution):
            MeterResolution(edge).validate()

    @pytest.mark.parametrize("zoom", [-1, 31, 1.5, True])
    def test_invalid_zoom(self, zoom):
        from core.errors import InvalidResolution
        from core.resolution import ZoomResolution
        with pytest.raises(InvalidResolution):
            ZoomResolution(zoom).validate()

    def test_pixel_resolution_shrinks_toward_poles(self):
        from core.resolution import EQUATOR_M_PER_PX, ZoomResolution
        res = ZoomResolution(0)
        edges = res.resolve(np.array([0.0, 60.0]))
        assert edges[0] == pytest.approx(EQUATOR_M_PER_PX)
        assert edges[1] == pytest.approx(EQUATOR_M_PER_PX / 2.0)

    def test_pixel_resolution_halves_per_zoom(self):
        from core.resolution import ZoomResolution
        e10 = ZoomResolution(10).resolve(np.array([35.0]))[0]
        e11 = ZoomResolution(11).resolve(np.array([35.0]))[0]
        assert e11 == pytest.approx(e10 / 2.0)

    def test_parse_resolution(self):
        from core.errors import InvalidResolution
        from core.resolution import MeterResolution, ZoomResolution, parse_resolution
        assert parse_resolution(0.5) == MeterResolution(0.5)
        assert parse_resolution({"meter": 2}) == MeterResolution(2)
        assert parse_resolution({"zoom": 18}) == ZoomResolution(18)
        with pytest.raises(InvalidResolution):
            parse_resolution({"meter": 0})
        with pytest.raises(InvalidResolution):
            parse_resolution({"foo": 1})


# ── CoordinateMapper ───────────────────────────────────────────

class TestCoordinateMapper:

    def test_meter_mapping_with_offset(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        mapper = CoordinateMapper(MeterResolution(0.5), height_offset=12.0)
        assert mapper.map(Point(1.2, 3.4, 13.1)) == (2, 6, 2)

    def test_negative_coordinates_floor(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        mapper = CoordinateMapper(MeterResolution(1.0))
        assert mapper.map(Point(-0.5, -1.5, 0.0)) == (-1, -2, 0)

    def test_zoom_mapping_global_pixels(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.point_cloud import Point
        from core.resolution import ZoomResolution
        assert CoordinateMapper(ZoomResolution(0)).map(Point(0.0, 0.0, 0.0)) == (128, 128, 0)
        assert CoordinateMapper(ZoomResolution(1)).map(Point(-180.0, 0.0, 0.0)) == (0, 256, 0)

    def test_zoom_vertical_uses_point_edge(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.point_cloud import Point
        from core.resolution import ZoomResolution, pixel_resolution
        edge = float(pixel_resolution(60.0, 0))
        mapper = CoordinateMapper(ZoomResolution(0))
        assert mapper.map(Point(0.0, 60.0, 3.5 * edge))[2] == 3

    def test_invalid_point_rejected(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.errors import InvalidPoint
        from core.point_cloud import Point
        from core.resolution import MeterResolution, ZoomResolution
        with pytest.raises(InvalidPoint):
            CoordinateMapper(MeterResolution(1.0)).map(Point(float("nan"), 0.0, 0.0))
        with pytest.raises(InvalidPoint):
            CoordinateMapper(ZoomResolution(5)).map(Point(10.0, 89.0, 0.0))

    def test_pixels_stay_inside_world(self):
        from core.point_cloud import Point
        from core.resolution import MAX_LATITUDE, ZoomResolution
        from core.sparse_voxels import VoxelGrid
        from core.tiler import TileIndex, TilePartitioner
        grid = VoxelGrid.build([
            Point(180.0, 0.0, 0.0),
            Point(10.0, MAX_LATITUDE, 0.0),
            Point(10.0, -MAX_LATITUDE, 0.0),
            Point(-180.0, 0.0, 0.0),
        ], ZoomResolution(0), height_offset=0.0)
        assert grid.skipped_points == 0
        assert set(grid) == {(255, 128, 0), (135, 0, 0), (135, 255, 0), (0, 128, 0)}
        assert list(TilePartitioner().partition(grid)) == [TileIndex(0, 0, 0)]

    def test_antimeridian_last_column_at_high_zoom(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.point_cloud import Point
        from core.resolution import MAX_ZOOM, ZoomResolution
        x, _, _ = CoordinateMapper(ZoomResolution(MAX_ZOOM)).map(Point(180.0, 0.0, 0.0))
        assert x == 256 * 2 ** MAX_ZOOM - 1

    def test_out_of_range_quotient_invalid(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.errors import InvalidPoint
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        res = MeterResolution(1e-12)
        with pytest.raises(InvalidPoint):
            CoordinateMapper(res).map(Point(1e8, 0.0, 0.0))

        points = [Point(1e8, 0.0, 0.0), Point(0.0, 0.0, 0.0)]
        grid = VoxelGrid.build(points, res, height_offset=0.0)
        assert set(grid) == {(0, 0, 0)}
        assert grid.skipped_points == 1
        with pytest.raises(InvalidPoint):
            VoxelGrid.build(points, res, height_offset=0.0, strict=True)

    def test_invalid_resolution_rejected(self):
        from core.coordinate_mapper import CoordinateMapper
        from core.errors import InvalidResolution
        from core.resolution import MeterResolution
        with pytest.raises(InvalidResolution):
            CoordinateMapper(MeterResolution(-2.0))

    def test_scan_height_offset_ignores_invalid(self):
        from core.coordinate_mapper import scan_height_offset
        from core.point_cloud import PointCloudData
        pc = PointCloudData(points=np.array([
            [0.0, 0.0, 5.0],
            [0.0, 0.0, float("nan")],
            [float("inf"), 0.0, -100.0],
            [1.0, 1.0, 3.0],
        ]))
        assert scan_height_offset(pc) == 3.0
        assert scan_height_offset(PointCloudData.empty()) == 0.0


# ── VoxelGrid ──────────────────────────────────────────────────

class TestVoxelGrid:

    def test_two_points_mean_color(self):
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build([
            Point(0.1, 0.1, 0.1, (10, 20, 30)),
            Point(0.9, 0.9, 0.9, (20, 40, 60)),
        ], MeterResolution(1.0), height_offset=0.0)
        assert grid.count == 1
        assert grid.color((0, 0, 0)) == (15, 30, 45)
        assert grid.get((0, 0, 0)).count == 2

    def test_count_weighted_mean(self):
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build([
            Point(0.1, 0.1, 0.1, (0, 0, 0)),
            Point(0.2, 0.2, 0.2, (0, 0, 0)),
            Point(0.3, 0.3, 0.3, (255, 255, 255)),
        ], MeterResolution(1.0), height_offset=0.0)
        assert grid.color((0, 0, 0)) == (85, 85, 85)

    def test_default_color_without_colors(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build(np.array([[0.5, 0.5, 0.5]]), MeterResolution(1.0))
        assert grid.color((0, 0, 0)) == (128, 128, 128)

    def test_height_offset_prescan(self):
        from core.point_cloud import PointCloudData
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        pc = PointCloudData(points=np.array([[0.0, 0.0, 10.0], [0.0, 0.0, 12.5]]))
        grid = VoxelGrid.build(pc, MeterResolution(1.0))
        assert grid.height_offset == 10.0
        assert set(grid) == {(0, 0, 0), (0, 0, 2)}

    def test_invalid_resolution_before_voxels(self):
        from core.errors import InvalidResolution
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        with pytest.raises(InvalidResolution):
            VoxelGrid.build(_random_cloud(10), MeterResolution(0.0))

    def test_invalid_points_skipped(self):
        from core.point_cloud import PointCloudData
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        pc = PointCloudData(
            points=np.array([[0.5, 0.5, 0.5], [np.nan, 0.0, 0.0], [1.5, 0.5, 0.5]]),
            colors=np.array([[10, 10, 10], [0, 0, 0], [300, 0, 0]], dtype=np.float64),
        )
        grid = VoxelGrid.build(pc, MeterResolution(1.0), height_offset=0.0)
        assert grid.count == 1
        assert grid.skipped_points == 2

    def test_invalid_points_strict(self):
        from core.errors import InvalidPoint
        from core.point_cloud import PointCloudData
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        pc = PointCloudData(points=np.array([[0.5, 0.5, 0.5], [np.inf, 0.0, 0.0]]))
        with pytest.raises(InvalidPoint) as exc:
            VoxelGrid.build(pc, MeterResolution(1.0), strict=True)
        assert exc.value.count == 1

    def test_empty_input(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build([], MeterResolution(1.0))
        assert grid.is_empty
        assert grid.size == (0, 0, 0)

    def test_order_independence(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        pc = _random_cloud(800, extent=4.0)
        res = MeterResolution(0.5)
        whole = VoxelGrid.build(pc, res, height_offset=0.0)

        perm = np.random.default_rng(3).permutation(pc.n_points)
        shuffled = pc.subset(perm)
        parts = [VoxelGrid.build(chunk, res, height_offset=0.0) for chunk in shuffled.split(7)]

        merged = parts[0]
        for part in parts[1:]:
            merged = merged.merge(part)
        assert merged.equals(whole)

        merged_rev = parts[-1]
        for part in reversed(parts[:-1]):
            merged_rev = part.merge(merged_rev)
        assert merged_rev.equals(whole)

    def test_merge_does_not_mutate_inputs(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        res = MeterResolution(1.0)
        a = VoxelGrid.from_coords([(0, 0, 0)], res)
        b = VoxelGrid.from_coords([(0, 0, 0), (1, 0, 0)], res)
        merged = a.merge(b)
        assert merged.get((0, 0, 0)).count == 2
        assert a.get((0, 0, 0)).count == 1
        assert a.count == 1

    def test_merge_rejects_incompatible(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        a = VoxelGrid(MeterResolution(1.0))
        with pytest.raises(ValueError):
            a.merge(VoxelGrid(MeterResolution(2.0)))
        with pytest.raises(ValueError):
            a.merge(VoxelGrid(MeterResolution(1.0), height_offset=5.0))

    def test_accumulate_rejects_zero_count(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid(MeterResolution(1.0))
        with pytest.raises(ValueError):
            grid.accumulate((0, 0, 0), (0, 0, 0), 0)

    def test_prune(self):
        from core.point_cloud import Point
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build([
            Point(0.1, 0.1, 0.1), Point(0.2, 0.2, 0.2), Point(5.5, 0.5, 0.5),
        ], MeterResolution(1.0), height_offset=0.0)
        pruned = grid.prune(2)
        assert set(pruned) == {(0, 0, 0)}
        assert grid.count == 2

    def test_bounds(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.from_coords([(5, 10, 15), (20, 30, 40)], MeterResolution(1.0))
        bmin, bmax = grid.bounds
        assert bmin.tolist() == [5, 10, 15]
        assert bmax.tolist() == [20, 30, 40]
        assert grid.size == (16, 21, 26)

    def test_summary(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.from_coords([(0, 0, 0), (2, 0, 1)], MeterResolution(0.5))
        info = grid.summary()
        assert info["voxels"] == 2
        assert info["points"] == 2
        assert info["size"] == [3, 1, 2]
        assert info["edge_length"] == 0.5

    def test_zoom_edge_length_midpoint(self):
        from core.point_cloud import Point
        from core.resolution import ZoomResolution, pixel_resolution
        from core.sparse_voxels import VoxelGrid
        grid = VoxelGrid.build([Point(0.0, 0.0, 0.0), Point(0.0, 60.0, 0.0)], ZoomResolution(0))
        expected = (float(pixel_resolution(0.0, 0)) + float(pixel_resolution(60.0, 0))) / 2.0
        assert grid.edge_length == pytest.approx(expected)


# ── ParallelVoxelBuilder ───────────────────────────────────────

class TestParallelVoxelBuilder:

    def test_parallel_equals_single_batch(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        from core.voxel_builder import ParallelVoxelBuilder
        pc = _random_cloud(1000, extent=6.0)
        res = MeterResolution(0.75)
        single = VoxelGrid.build(pc, res)
        parallel = ParallelVoxelBuilder(max_workers=4, chunk_size=37).build(pc, res)
        assert parallel.equals(single)
        assert parallel.height_offset == single.height_offset

    def test_chunking_does_not_change_result(self):
        from core.resolution import MeterResolution
        from core.voxel_builder import ParallelVoxelBuilder
        pc = _random_cloud(600, extent=3.0)
        res = MeterResolution(0.5)
        a = ParallelVoxelBuilder(max_workers=2, chunk_size=600).build(pc, res)
        b = ParallelVoxelBuilder(max_workers=8, chunk_size=13).build(pc, res)
        assert a.equals(b)

    def test_build_stream_shared_offset(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        from core.voxel_builder import ParallelVoxelBuilder
        pc = _random_cloud(300, extent=5.0)
        res = MeterResolution(1.0)
        streamed = ParallelVoxelBuilder(max_workers=3).build_stream(pc.split(5), res, height_offset=0.0)
        assert streamed.equals(VoxelGrid.build(pc, res, height_offset=0.0))

    def test_empty_input(self):
        from core.resolution import MeterResolution
        from core.voxel_builder import ParallelVoxelBuilder
        grid = ParallelVoxelBuilder(max_workers=2).build([], MeterResolution(1.0))
        assert grid.is_empty

    def test_strict_error_propagates(self):
        from core.errors import InvalidPoint
        from core.point_cloud import PointCloudData
        from core.resolution import MeterResolution
        from core.voxel_builder import ParallelVoxelBuilder
        pc = PointCloudData(points=np.array([[0.0, 0.0, 0.0], [np.nan, 1.0, 1.0]] * 10))
        with pytest.raises(InvalidPoint):
            ParallelVoxelBuilder(max_workers=2, chunk_size=4, strict=True).build(pc, MeterResolution(1.0))


# ── ResourceManager ────────────────────────────────────────────

class TestResourceManager:

    def test_usable_threads(self):
        from core.resource_manager import ResourceManager
        rm = ResourceManager(cpu_reserved_cores=2)
        info = rm.initialize()
        assert info.cpu_count >= 1
        assert rm.usable_cpu_threads >= 1

    def test_safe_batch_size(self):
        from core.resource_manager import ResourceManager
        rm = ResourceManager(chunk_batch_size=50_000, min_batch_size=1_000)
        assert 1_000 <= rm.get_safe_batch_size() <= 50_000


# ── TilePartitioner ────────────────────────────────────────────

class TestTilePartitioner:

    @pytest.fixture
    def grid(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        return VoxelGrid.from_coords(
            [(0, 0, 0), (255, 0, 3), (256, 0, 0), (-1, 5, 0), (300, 513, 7)],
            MeterResolution(1.0),
        )

    def test_assignment(self, grid):
        from core.tiler import TileIndex, TilePartitioner
        tiles = TilePartitioner(256).partition(grid)
        assert list(tiles) == [
            TileIndex(0, -1, 0),
            TileIndex(0, 0, 0),
            TileIndex(0, 1, 0),
            TileIndex(0, 1, 2),
        ]
        assert set(tiles[TileIndex(0, 0, 0)]) == {(0, 0, 0), (255, 0, 3)}

    def test_coverage(self, grid):
        from core.tiler import TilePartitioner
        tiles = TilePartitioner(256).partition(grid)
        seen = []
        for tile_grid in tiles.values():
            seen.extend(tile_grid)
        assert len(seen) == grid.count
        assert set(seen) == set(grid)

    def test_tiles_are_copies(self, grid):
        from core.tiler import TileIndex, TilePartitioner
        tiles = TilePartitioner(256).partition(grid)
        tiles[TileIndex(0, 0, 0)].accumulate((0, 0, 0), (1, 1, 1), 1)
        assert grid.get((0, 0, 0)).count == 1

    def test_deterministic(self, grid):
        from core.tiler import TilePartitioner
        a = TilePartitioner(16).partition(grid)
        b = TilePartitioner(16).partition(grid.copy())
        assert list(a) == list(b)
        for key in a:
            assert a[key].equals(b[key])

    def test_zoom_from_resolution(self):
        from core.resolution import ZoomResolution
        from core.sparse_voxels import VoxelGrid
        from core.tiler import TileIndex, TilePartitioner
        grid = VoxelGrid.from_coords([(600, 10, 0)], ZoomResolution(12))
        tiles = TilePartitioner().partition(grid)
        assert list(tiles) == [TileIndex(12, 2, 0)]
        assert tiles[TileIndex(12, 2, 0)].tile_edge == 256

    def test_empty(self):
        from core.resolution import MeterResolution
        from core.sparse_voxels import VoxelGrid
        from core.tiler import TilePartitioner
        assert TilePartitioner().partition(VoxelGrid(MeterResolution(1.0))) == {}

    def test_tile_of(self):
        from core.tiler import TileIndex, TilePartitioner
        part = TilePartitioner(256)
        assert part.tile_of((255, 256, 9)) == TileIndex(0, 0, 1)
        assert part.tile_of((-1, -257, 0), zoom=18) == TileIndex(18, -1, -2)

    def test_iter_tiles_matches_partition(self, grid):
        from core.tiler import TilePartitioner
        part = TilePartitioner(256)
        pairs = list(part.iter_tiles(grid))
        tiles = part.partition(grid)
        assert [index for index, _ in pairs] == list(tiles)
        for index, tile_grid in pairs:
            assert tile_grid.tile == index
            assert tile_grid.equals(tiles[index])

    def test_invalid_edge(self):
        from core.tiler import TilePartitioner
        with pytest.raises(ValueError):
            TilePartitioner(0)
