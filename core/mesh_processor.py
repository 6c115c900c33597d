"""
MeshProcessor — 网格数据与简化模块

功能:
1. 统一的网格数据结构 MeshData (顶点 + 顶点颜色 + 三角形索引)
2. Simplifier: 将 MeshData 打包给外部简化后端，并把结果解包回 MeshData
3. 默认后端 TrimeshReductionBackend: trimesh 二次误差度量简化，
   顶点颜色通过 KD-Tree 取最近原始顶点传递
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.spatial import KDTree

from core.errors import SimplificationFailed

logger = logging.getLogger(__name__)


@dataclass
class MeshData:
    """统一的网格数据容器"""
    vertices: np.ndarray           # (N, 3) float64，地理坐标下 float32 精度不足
    faces: np.ndarray              # (M, 3) int32
    vertex_colors: Optional[np.ndarray] = None  # (N, 3) uint8
    metadata: Dict = field(default_factory=dict)

    @classmethod
    def empty(cls, metadata: Optional[Dict] = None) -> "MeshData":
        return cls(
            vertices=np.zeros((0, 3), dtype=np.float64),
            faces=np.zeros((0, 3), dtype=np.int32),
            vertex_colors=np.zeros((0, 3), dtype=np.uint8),
            metadata=dict(metadata or {}),
        )

    @property
    def n_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def n_faces(self) -> int:
        return self.faces.shape[0]

    @property
    def is_empty(self) -> bool:
        return self.n_faces == 0

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        if self.n_vertices == 0:
            return np.zeros(3), np.zeros(3)
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def copy(self) -> "MeshData":
        return MeshData(
            vertices=self.vertices.copy(),
            faces=self.faces.copy(),
            vertex_colors=self.vertex_colors.copy() if self.vertex_colors is not None else None,
            metadata=dict(self.metadata),
        )


@dataclass
class SimplifyTarget:
    """简化目标：保留三角形比例，或显式目标面数 (优先)"""
    ratio: float = 0.5
    face_count: Optional[int] = None

    def validate(self) -> None:
        if self.face_count is not None:
            if self.face_count < 1:
                raise SimplificationFailed(f"Target face count must be >= 1, got {self.face_count}")
            return
        if not (0.0 < self.ratio <= 1.0):
            raise SimplificationFailed(f"Target ratio must be within (0, 1], got {self.ratio}")

    def face_target(self, n_faces: int) -> int:
        if self.face_count is not None:
            return int(self.face_count)
        return max(1, int(n_faces * self.ratio))


class ReductionBackend:
    """
    外部简化后端接口。

    reduce(vertices, faces, colors, target) -> (vertices, faces, colors)
    """

    name = "abstract"

    def reduce(
        self,
        vertices: np.ndarray,
        faces: np.ndarray,
        colors: np.ndarray,
        target: SimplifyTarget,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        raise NotImplementedError


class TrimeshReductionBackend(ReductionBackend):
    """trimesh 二次误差度量简化 (需要 fast-simplification)"""

    name = "trimesh"

    def __init__(self) -> None:
        import trimesh
        self._trimesh = trimesh
        logger.debug("trimesh %s loaded", trimesh.__version__)

    def reduce(self, vertices, faces, colors, target):
        tri = self._trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        simplified = tri.simplify_quadric_decimation(face_count=target.face_target(len(faces)))

        new_vertices = np.asarray(simplified.vertices, dtype=np.float64)
        new_faces = np.asarray(simplified.faces, dtype=np.int32)

        # 颜色传递：最近原始顶点
        if new_vertices.shape[0]:
            _, nearest = KDTree(vertices).query(new_vertices)
            new_colors = colors[nearest]
        else:
            new_colors = np.zeros((0, 3), dtype=np.uint8)
        return new_vertices, new_faces, new_colors


class Simplifier:
    """
    网格简化编排器

    Usage::

        simplifier = Simplifier()                      # 默认 trimesh 后端
        mesh = simplifier.simplify(mesh, SimplifyTarget(ratio=0.25))
    """

    def __init__(self, backend: Optional[ReductionBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> ReductionBackend:
        if self._backend is None:
            self._backend = TrimeshReductionBackend()
        return self._backend

    def simplify(self, mesh: MeshData, target: Optional[SimplifyTarget] = None) -> MeshData:
        """
        简化网格，返回新的 MeshData。

        空网格或面数已 <= 目标时原样返回副本；
        目标非法、后端异常或结果退化时抛出 SimplificationFailed (不重试)。
        """
        target = target or SimplifyTarget()
        target.validate()

        if mesh.is_empty:
            return mesh.copy()

        target_faces = target.face_target(mesh.n_faces)
        if mesh.n_faces <= target_faces:
            logger.info("Mesh already has %d faces (target=%d), skip simplification",
                        mesh.n_faces, target_faces)
            return mesh.copy()

        colors = mesh.vertex_colors
        if colors is None:
            colors = np.full((mesh.n_vertices, 3), 128, dtype=np.uint8)

        try:
            vertices, faces, new_colors = self.backend.reduce(
                np.asarray(mesh.vertices, dtype=np.float64),
                np.asarray(mesh.faces, dtype=np.int64),
                np.asarray(colors, dtype=np.uint8),
                target,
            )
        except SimplificationFailed:
            raise
        except Exception as e:
            raise SimplificationFailed(f"Backend '{self.backend.name}' failed: {e}") from e

        self._check_result(vertices, faces, new_colors)

        logger.info("Simplified: %d → %d faces", mesh.n_faces, len(faces))
        return MeshData(
            vertices=np.asarray(vertices, dtype=np.float64),
            faces=np.asarray(faces, dtype=np.int32),
            vertex_colors=np.asarray(new_colors, dtype=np.uint8),
            metadata={**mesh.metadata, "simplified_from": mesh.n_faces},
        )

    @staticmethod
    def _check_result(vertices: np.ndarray, faces: np.ndarray, colors: np.ndarray) -> None:
        vertices = np.asarray(vertices)
        faces = np.asarray(faces)
        colors = np.asarray(colors)

        if faces.ndim != 2 or faces.shape[1] != 3 or faces.shape[0] == 0:
            raise SimplificationFailed(f"Backend returned degenerate faces: shape={faces.shape}")
        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise SimplificationFailed(f"Backend returned invalid vertices: shape={vertices.shape}")
        if faces.min() < 0 or faces.max() >= vertices.shape[0]:
            raise SimplificationFailed("Backend returned out-of-range vertex indices")
        if colors.shape != (vertices.shape[0], 3):
            raise SimplificationFailed(
                f"Backend dropped vertex colors: {colors.shape} for {vertices.shape[0]} vertices"
            )
