from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw

from multifragreg.core.geometry import (
    FULL_NDC_CROP,
    CropWindow,
    Perspective,
    as_vec3,
    ndc_crop_mask,
    pixel_to_ndc,
    project_points,
    transform_vertices,
)
from multifragreg.core.mesh import Mesh, export_stl
from multifragreg.core.shape_model import StatisticalShapeModel


class SilhouetteRenderer:
    """
    CPU reference renderer: rasterises the projected triangles of the posed model
    into a binary 8-bit silhouette (255 inside, 0 outside).

    The model-space vertices come from the shared shape model when one is attached,
    otherwise from the mesh itself.
    """

    def __init__(self, width_px: int = 512, height_px: int = 512) -> None:
        self._width = int(width_px)
        self._height = int(height_px)
        self._mesh: Mesh | None = None
        self._shape_model: StatisticalShapeModel | None = None
        self._perspective: Perspective | None = None
        self._crop: CropWindow | None = None
        self._rotation = np.zeros((3,), dtype=np.float64)
        self._translation = np.zeros((3,), dtype=np.float64)
        self._mirror = False
        self._image: np.ndarray | None = None
        self.rendered_count = 0

    @property
    def mesh(self) -> Mesh | None:
        return self._mesh

    @property
    def size(self) -> tuple[int, int]:
        return self._width, self._height

    def set_mesh(self, mesh: Mesh) -> None:
        if self._shape_model is not None and self._shape_model.n_vertices != mesh.n_vertices:
            raise ValueError("mesh and shape model vertex counts differ")
        self._mesh = mesh

    def set_shape_model(self, model: StatisticalShapeModel) -> None:
        if self._mesh is not None and model.n_vertices != self._mesh.n_vertices:
            raise ValueError("mesh and shape model vertex counts differ")
        self._shape_model = model

    def set_perspective(self, perspective: Perspective) -> None:
        self._perspective = perspective

    def set_render_size(self, width_px: int, height_px: int) -> None:
        if width_px <= 0 or height_px <= 0:
            raise ValueError("render size must be > 0")
        self._width = int(width_px)
        self._height = int(height_px)

    def set_crop_window(self, crop: CropWindow | None) -> None:
        """`None` restores the full render size."""
        if crop is not None and (
            crop.x < 0 or crop.y < 0 or crop.x + crop.width > self._width or crop.y + crop.height > self._height
        ):
            raise ValueError(f"crop window {crop} exceeds render size {(self._width, self._height)}")
        self._crop = crop

    def set_rotation(self, rotation: np.ndarray) -> None:
        self._rotation = as_vec3(rotation)

    def set_translation(self, translation: np.ndarray) -> None:
        self._translation = as_vec3(translation)

    def get_rotation(self) -> np.ndarray:
        return self._rotation.copy()

    def get_translation(self) -> np.ndarray:
        return self._translation.copy()

    def enable_x_mirroring(self, enable: bool) -> None:
        self._mirror = bool(enable)

    def _effective_perspective(self) -> Perspective:
        if self._perspective is None:
            raise RuntimeError("perspective is not set")
        p = self._perspective
        if (p.width_px, p.height_px) != (self._width, self._height):
            p = p.with_size(self._width, self._height)
        return p

    def _crop_window(self) -> CropWindow:
        return self._crop if self._crop is not None else CropWindow.full(self._width, self._height)

    def _model_vertices(self) -> np.ndarray:
        if self._shape_model is not None:
            v = self._shape_model.vertices()
        elif self._mesh is not None:
            v = np.array(self._mesh.vertices, dtype=np.float64)
        else:
            raise RuntimeError("mesh is not set")
        if self._mirror:
            v[:, 0] = -v[:, 0]
        return v

    def get_recomputed_vertices(self, transform: bool = False) -> np.ndarray:
        v = self._model_vertices()
        if transform:
            v = transform_vertices(v, self._rotation, self._translation)
        return v

    def render_now(self) -> None:
        if self._mesh is None:
            raise RuntimeError("mesh is not set")
        perspective = self._effective_perspective()
        scene = self.get_recomputed_vertices(transform=True)
        uv, depth = project_points(perspective, scene)

        canvas = Image.new("L", (self._width, self._height), 0)
        draw = ImageDraw.Draw(canvas)
        tris = self._mesh.triangles
        # Triangles with a vertex behind the source are skipped.
        visible = np.all(depth[tris] > 1e-12, axis=1) & np.all(np.isfinite(uv[tris]).all(axis=-1), axis=1)
        for tri in uv[tris[visible]]:
            draw.polygon([(float(u), float(v)) for u, v in tri], fill=255)
        self._image = np.asarray(canvas, dtype=np.uint8)
        self.rendered_count += 1

    def get_rendered_image(self) -> np.ndarray:
        if self._image is None:
            raise RuntimeError("render_now() has not been called")
        rows, cols = self._crop_window().slices()
        return self._image[rows, cols].copy()

    def get_rendered_red_channel(self) -> np.ndarray:
        return self.get_rendered_image().astype(np.float32) / 255.0

    def get_vertices_mask(
        self,
        vertices: np.ndarray,
        crop_ndc: tuple[float, float, float, float] = FULL_NDC_CROP,
        angle_deg: float = 0.0,
    ) -> np.ndarray:
        """
        Vertices (model space) whose projection under the current pose falls inside the
        NDC crop rectangle rotated by `angle_deg`.
        """
        perspective = self._effective_perspective()
        scene = transform_vertices(vertices, self._rotation, self._translation)
        uv, _depth = project_points(perspective, scene)
        return ndc_crop_mask(pixel_to_ndc(perspective, uv), crop_ndc, angle_deg)

    def export_stl(self, path: Path, transform: bool = True, mask: np.ndarray | None = None) -> Path:
        if self._mesh is None:
            raise RuntimeError("mesh is not set")
        return export_stl(path, self.get_recomputed_vertices(transform=transform), self._mesh.triangles, mask)
