"""VoxelTiler core — 计算引擎包"""

from core.errors import InvalidPoint, InvalidResolution, SimplificationFailed, VoxelTilerError
from core.resolution import MeterResolution, Resolution, ZoomResolution, parse_resolution
from core.point_cloud import Point, PointCloudData, PointCloudProcessor
from core.coordinate_mapper import CoordinateMapper, scan_height_offset
from core.projection import reproject_to_lonlat
from core.sparse_voxels import Voxel, VoxelGrid
from core.resource_manager import ResourceManager
from core.voxel_builder import ParallelVoxelBuilder
from core.tiler import TileIndex, TilePartitioner
from core.mesh_processor import MeshData, ReductionBackend, Simplifier, SimplifyTarget
from core.mesher import Mesher, MeshOrigin, ValidSide

__all__ = [
    "VoxelTilerError",
    "InvalidResolution",
    "InvalidPoint",
    "SimplificationFailed",
    "Resolution",
    "MeterResolution",
    "ZoomResolution",
    "parse_resolution",
    "Point",
    "PointCloudData",
    "PointCloudProcessor",
    "CoordinateMapper",
    "scan_height_offset",
    "reproject_to_lonlat",
    "Voxel",
    "VoxelGrid",
    "ResourceManager",
    "ParallelVoxelBuilder",
    "TileIndex",
    "TilePartitioner",
    "MeshData",
    "ReductionBackend",
    "Simplifier",
    "SimplifyTarget",
    "Mesher",
    "MeshOrigin",
    "ValidSide",
]
