"""
Mesh 导出器 — PLY / GLB (trimesh)

瓦片输出目录结构:
    out_dir/
    └── {zoom}/{tile_x}/{tile_y}.glb
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np

from core.mesh_processor import MeshData

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"ply", "glb"}


class MeshExporter:
    """
    网格导出器

    Usage::

        exporter = MeshExporter()
        exporter.export(mesh, "bunny.ply")
        exporter.export_tiles(tile_meshes, "out/", fmt="glb")
    """

    def __init__(self) -> None:
        import trimesh
        self._trimesh = trimesh

    def export(self, mesh: MeshData, output_path: str | Path) -> Path:
        """将 MeshData 写为 .ply 或 .glb"""
        output_path = Path(output_path)
        fmt = output_path.suffix.lower().lstrip(".")
        if fmt not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported mesh format: .{fmt}")
        if mesh.is_empty:
            raise ValueError("Empty mesh, nothing to export")

        output_path.parent.mkdir(parents=True, exist_ok=True)

        colors = mesh.vertex_colors
        if colors is not None:
            # RGBA
            colors = np.column_stack([colors, np.full(len(colors), 255, dtype=np.uint8)])

        tri = self._trimesh.Trimesh(
            vertices=mesh.vertices,
            faces=mesh.faces,
            vertex_colors=colors,
            process=False,
        )
        tri.export(str(output_path), file_type=fmt)

        logger.info("Exported %s: %d verts, %d faces", output_path.name, mesh.n_vertices, mesh.n_faces)
        return output_path

    def export_tiles(
        self,
        meshes: Dict,
        out_dir: str | Path,
        fmt: str = "glb",
        progress_callback: Optional[Callable[[float, str], None]] = None,
    ) -> List[Path]:
        """
        导出瓦片网格 (TileIndex → MeshData)，空网格跳过。

        Returns
        -------
        list[Path]
            实际写出的文件
        """
        fmt = fmt.lower().lstrip(".")
        if fmt not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported mesh format: .{fmt}")

        out_dir = Path(out_dir)
        written: List[Path] = []
        total = max(1, len(meshes))

        for i, (tile, mesh) in enumerate(meshes.items()):
            if progress_callback:
                progress_callback(i / total * 100.0, f"Exporting tile {tile.path}")
            if mesh.is_empty:
                continue
            path = out_dir / str(tile.zoom) / str(tile.tile_x) / f"{tile.tile_y}.{fmt}"
            written.append(self.export(mesh, path))

        logger.info("Exported %d / %d tiles to %s", len(written), len(meshes), out_dir)
        return written
