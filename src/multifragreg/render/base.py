from __future__ import annotations

from pathlib import Path
from typing import Protocol

import numpy as np

from multifragreg.core.geometry import CropWindow, Perspective
from multifragreg.core.mesh import Mesh
from multifragreg.core.shape_model import StatisticalShapeModel


class Renderer(Protocol):
    """
    Offscreen renderer of one radiograph view.

    Every buffer returned by a renderer is a fresh array owned by the caller.
    """

    @property
    def mesh(self) -> Mesh | None: ...

    def set_mesh(self, mesh: Mesh) -> None: ...

    def set_shape_model(self, model: StatisticalShapeModel) -> None: ...

    def set_perspective(self, perspective: Perspective) -> None: ...

    def set_render_size(self, width_px: int, height_px: int) -> None: ...

    def set_crop_window(self, crop: CropWindow | None) -> None: ...

    def set_rotation(self, rotation: np.ndarray) -> None: ...

    def set_translation(self, translation: np.ndarray) -> None: ...

    def get_rotation(self) -> np.ndarray: ...

    def get_translation(self) -> np.ndarray: ...

    def enable_x_mirroring(self, enable: bool) -> None: ...

    def render_now(self) -> None: ...

    def get_rendered_image(self) -> np.ndarray: ...

    def get_rendered_red_channel(self) -> np.ndarray: ...

    def get_recomputed_vertices(self, transform: bool = False) -> np.ndarray: ...

    def get_vertices_mask(
        self,
        vertices: np.ndarray,
        crop_ndc: tuple[float, float, float, float] = ...,
        angle_deg: float = 0.0,
    ) -> np.ndarray: ...

    def export_stl(self, path: Path, transform: bool = True, mask: np.ndarray | None = None) -> Path: ...
