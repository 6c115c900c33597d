"""VoxelTiler io_formats — 网格导出格式包"""

__all__ = [
    "mesh_exporter",
    "MeshExporter",
    "SUPPORTED_FORMATS",
]

# 便捷重导出
from io_formats.mesh_exporter import MeshExporter, SUPPORTED_FORMATS  # noqa: F401
