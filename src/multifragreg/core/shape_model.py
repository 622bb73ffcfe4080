from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


class StatisticalShapeModel:
    """
    Linear statistical shape model shared by every fragment of a registration.

      vertices = mean + sum_k raw[k] * component_k

    Two views of the coefficients exist: *raw* (as stored in the model) and
    *standardized* (raw / std). Every write goes through `_assign_raw`, which keeps
    raw[k] == standardized[k] * std[k] and recomputes the vertices.
    """

    def __init__(
        self,
        mean_vertices: np.ndarray,
        components: np.ndarray,
        std: np.ndarray,
        coefficients: np.ndarray | None = None,
    ) -> None:
        mean_vertices = np.asarray(mean_vertices, dtype=np.float64).reshape(-1, 3)
        std = np.asarray(std, dtype=np.float64).reshape(-1)
        K = int(std.size)
        V = int(mean_vertices.shape[0])
        components = np.asarray(components, dtype=np.float64).reshape(K, V * 3)
        if np.any(std <= 0.0) or not np.all(np.isfinite(std)):
            raise ValueError("shape model std must be finite and > 0")

        self._mean = mean_vertices
        self._components = components
        self._std = std
        if coefficients is None:
            self._raw = np.zeros((K,), dtype=np.float64)
        else:
            self._raw = np.asarray(coefficients, dtype=np.float64).reshape(K).copy()
        self._vertices = self._recompute()

    @classmethod
    def rigid(cls, vertices: np.ndarray) -> "StatisticalShapeModel":
        """A model without principal components (plain mesh)."""
        vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        return cls(vertices, np.zeros((0, vertices.size)), np.zeros((0,)))

    @property
    def n_params(self) -> int:
        return int(self._std.size)

    @property
    def n_vertices(self) -> int:
        return int(self._mean.shape[0])

    @property
    def std(self) -> np.ndarray:
        return self._std.copy()

    def _recompute(self) -> np.ndarray:
        if self.n_params == 0:
            return self._mean.copy()
        return self._mean + (self._raw @ self._components).reshape(-1, 3)

    def _assign_raw(self, raw: np.ndarray) -> None:
        raw = np.asarray(raw, dtype=np.float64).reshape(-1)
        if raw.size > self.n_params:
            raise ValueError(f"got {raw.size} shape parameters, model has {self.n_params}")
        # A shorter vector updates the leading components only.
        self._raw[: raw.size] = raw
        self._vertices = self._recompute()

    def get_shape_params(self) -> np.ndarray:
        return self._raw.copy()

    def get_standardized_shape_params(self) -> np.ndarray:
        return self._raw / self._std

    def set_shape_params(self, params: np.ndarray) -> None:
        self._assign_raw(params)

    def set_standardized_shape_params(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        self._assign_raw(params * self._std[: params.size])

    def vertices(self) -> np.ndarray:
        """Current model-space vertices (V,3); the caller owns the returned array."""
        return self._vertices.copy()


def load_shape_model(path: Path, mean_vertices: np.ndarray | None = None) -> StatisticalShapeModel:
    """
    Load a shape model from an NPZ archive with keys:

      components (K, V*3), std (K,), optional mean (V,3), optional coefficients (K,)

    When the archive has no `mean`, `mean_vertices` (usually the mesh vertices) is used.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing {path}")
    with np.load(str(path)) as npz:
        for k in ("components", "std"):
            if k not in npz:
                raise ValueError(f"{path} missing key: {k}")
        if "mean" in npz:
            mean = np.asarray(npz["mean"], dtype=np.float64)
        elif mean_vertices is not None:
            mean = np.asarray(mean_vertices, dtype=np.float64)
        else:
            raise ValueError(f"{path} has no mean shape and no mesh vertices were given")
        coeffs = np.asarray(npz["coefficients"], dtype=np.float64) if "coefficients" in npz else None
        model = StatisticalShapeModel(mean, npz["components"], npz["std"], coeffs)
    logger.info("Loaded shape model %s: %d vertices, %d components", path, model.n_vertices, model.n_params)
    return model
