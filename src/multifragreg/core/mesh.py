from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mesh:
    """Triangle mesh topology plus its reference vertex positions."""

    vertices: np.ndarray  # (V,3)
    triangles: np.ndarray  # (T,3) int

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def n_triangles(self) -> int:
        return int(self.triangles.shape[0])


def load_mesh(path: Path) -> Mesh:
    """Load a triangle mesh (PLY/STL/OBJ...) without merging or reordering vertices."""
    import trimesh

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing {path}")
    tm = trimesh.load(str(path), force="mesh", process=False)
    vertices = np.asarray(tm.vertices, dtype=np.float64).reshape(-1, 3)
    triangles = np.asarray(tm.faces, dtype=np.int64).reshape(-1, 3)
    if vertices.shape[0] == 0 or triangles.shape[0] == 0:
        raise ValueError(f"{path} contains no triangles")
    logger.info("Loaded mesh %s: %d vertices, %d triangles", path, vertices.shape[0], triangles.shape[0])
    return Mesh(vertices=vertices, triangles=triangles)


def export_stl(path: Path, vertices: np.ndarray, triangles: np.ndarray, mask: np.ndarray | None = None) -> Path:
    """
    Write a surface as STL. With `mask`, only triangles whose three vertices are
    selected are written.
    """
    import trimesh

    path = Path(path)
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
    if mask is not None:
        mask = np.asarray(mask, dtype=bool).reshape(-1)
        if mask.size != vertices.shape[0]:
            raise ValueError("mask length must match the vertex count")
        triangles = triangles[np.all(mask[triangles], axis=1)]
    path.parent.mkdir(parents=True, exist_ok=True)
    tm = trimesh.Trimesh(vertices=vertices, faces=triangles, process=False)
    tm.export(str(path), file_type="stl")
    logger.info("Wrote %s (%d triangles)", path, triangles.shape[0])
    return path
