from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

from multifragreg.core.mesh import Mesh


class VertexMetric(ABC):
    """
    Cross-view consistency of vertex visibility.

    Each view contributes one boolean mask (one entry per mesh vertex); a vertex is
    consistent when it is seen by exactly `views` masks.
    """

    def __init__(self) -> None:
        self.n_vertices = 0
        self.views = 0
        self._wrong = 0

    def set_mesh(self, mesh: Mesh) -> None:
        self.n_vertices = mesh.n_vertices

    def set_views_number(self, views: int) -> None:
        self.views = int(views)

    def _counts(self, masks: Sequence[np.ndarray]) -> np.ndarray:
        counts = np.zeros((self.n_vertices,), dtype=np.int64)
        for m in masks:
            m = np.asarray(m, dtype=bool).reshape(-1)
            assert m.size == self.n_vertices, "vertex mask length must match the mesh"
            counts += m
        self._wrong = int(np.count_nonzero(counts != self.views))
        return counts

    def get_wrong_vertices_count(self) -> int:
        """Vertices whose visibility count differed from `views` at the last evaluation."""
        return self._wrong

    @abstractmethod
    def get_values(self, masks: Sequence[np.ndarray], points: np.ndarray | None = None) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def get_target_values(self) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def values_count(self) -> int:
        raise NotImplementedError


class SimpleVertexMetric(VertexMetric):
    """Per vertex: 2 for every mask that sees it; target 2 * views."""

    def get_values(self, masks: Sequence[np.ndarray], points: np.ndarray | None = None) -> np.ndarray:
        return 2.0 * self._counts(masks).astype(np.float64)

    def get_target_values(self) -> np.ndarray:
        return np.full((self.n_vertices,), 2.0 * self.views, dtype=np.float64)

    def values_count(self) -> int:
        return self.n_vertices


class SquaredDifferencesVertexMetric(VertexMetric):
    """Single value: sum over vertices of (count - views)^2; target 0."""

    def get_values(self, masks: Sequence[np.ndarray], points: np.ndarray | None = None) -> np.ndarray:
        d = self._counts(masks).astype(np.float64) - float(self.views)
        return np.array([float(np.sum(d * d))], dtype=np.float64)

    def get_target_values(self) -> np.ndarray:
        return np.zeros((1,), dtype=np.float64)

    def values_count(self) -> int:
        return 1


VERTEX_METRICS: dict[str, type[VertexMetric]] = {
    "simple": SimpleVertexMetric,
    "squared_differences": SquaredDifferencesVertexMetric,
}
