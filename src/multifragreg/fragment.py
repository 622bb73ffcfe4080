from __future__ import annotations

from typing import Callable, Sequence

import numpy as np

from multifragreg.core.geometry import FULL_NDC_CROP, CropWindow, as_vec3, pose_matrix
from multifragreg.core.shape_model import StatisticalShapeModel
from multifragreg.metrics.image import ImageMetric
from multifragreg.observer import Observer, timed
from multifragreg.render.base import Renderer

# Central-difference steps: degrees / model units for the pose, standardized units for the shape.
POSE_EPS = 1.0
SHAPE_EPS = 1.0


class XRayView:
    """
    One radiograph of a fragment: its renderer, its image metric, and the NDC rectangle
    used to decide which vertices the view covers.

    The reference image and mask are kept uncropped and re-applied whenever the crop
    window changes, so setters may be called in any order.
    """

    def __init__(self, renderer: Renderer, metric: ImageMetric, observer: Observer | None = None) -> None:
        self.renderer = renderer
        self.metric = metric
        self.observer = observer
        self.crop: CropWindow | None = None
        self.crop_ndc: tuple[float, float, float, float] = FULL_NDC_CROP
        self.angle_deg = 0.0
        self.reference: np.ndarray | None = None
        self.reference_mask: np.ndarray | None = None

        # Vertex visibility at the current pose, and per perturbed column.
        self.mask: np.ndarray | None = None
        self.plus_masks: list[np.ndarray] = []
        self.minus_masks: list[np.ndarray] = []

    def set_observer(self, observer: Observer | None) -> None:
        self.observer = observer
        self.metric.set_observer(observer)

    def set_crop_window(self, crop: CropWindow | None) -> None:
        self.crop = crop
        self.renderer.set_crop_window(crop)
        self._apply_reference()

    def set_image(self, image: np.ndarray) -> None:
        self.reference = np.asarray(image)
        self._apply_reference()

    def set_mask(self, mask: np.ndarray | None) -> None:
        self.reference_mask = None if mask is None else np.asarray(mask)
        self._apply_reference()

    def _cropped(self, image: np.ndarray) -> np.ndarray:
        if self.crop is None:
            return image
        rows, cols = self.crop.slices()
        return image[rows, cols]

    def _apply_reference(self) -> None:
        if self.reference is None:
            return
        # Drop the previous mask first: its size may not match the newly cropped reference.
        self.metric.set_mask(None)
        self.metric.set_image(self._cropped(self.reference))
        if self.reference_mask is not None:
            self.metric.set_mask(self._cropped(self.reference_mask))

    def reference_image(self) -> np.ndarray | None:
        if self.reference is None:
            return None
        ref = self._cropped(self.reference)
        return ref[..., 0] if ref.ndim == 3 else ref

    def render(self) -> None:
        with timed(self.observer, "rendering"):
            self.renderer.render_now()

    def values(self) -> np.ndarray:
        return self.metric.get_values()

    def vertices_mask(self) -> np.ndarray:
        vertices = self.renderer.get_recomputed_vertices(transform=False)
        return self.renderer.get_vertices_mask(vertices, self.crop_ndc, self.angle_deg)

    def reset_masks(self, columns: int) -> None:
        assert self.mask is not None, "update_masks() must run before the vertex Jacobian"
        self.plus_masks = [self.mask] * columns
        self.minus_masks = [self.mask] * columns


class BoneFragment:
    """
    One rigid bone fragment seen by several radiographs.

    The fragment owns its pose and pushes it into every view's renderer; the shape model
    is shared with all other fragments and is never owned here.
    """

    def __init__(self, views: Sequence[XRayView], shape_model: StatisticalShapeModel | None = None) -> None:
        self.views = list(views)
        self.shape_model = shape_model
        self._rotation = np.zeros((3,), dtype=np.float64)
        self._translation = np.zeros((3,), dtype=np.float64)
        self._values_count = 0

    def set_rotation(self, rotation: np.ndarray) -> None:
        self._rotation = as_vec3(rotation)
        for v in self.views:
            v.renderer.set_rotation(self._rotation)

    def set_translation(self, translation: np.ndarray) -> None:
        self._translation = as_vec3(translation)
        for v in self.views:
            v.renderer.set_translation(self._translation)

    def get_rotation(self) -> np.ndarray:
        return self._rotation.copy()

    def get_translation(self) -> np.ndarray:
        return self._translation.copy()

    def get_transformation(self) -> np.ndarray:
        return pose_matrix(self._rotation, self._translation)

    def set_observer(self, observer: Observer | None) -> None:
        for v in self.views:
            v.set_observer(observer)

    def init_values_count(self) -> int:
        self._values_count = int(sum(v.metric.values_count() for v in self.views))
        return self._values_count

    def values_count(self) -> int:
        return self._values_count

    def render(self) -> None:
        for v in self.views:
            v.render()

    def get_values(self) -> np.ndarray:
        """Render every view and concatenate their metric values."""
        self.render()
        if not self.views:
            return np.zeros((0,), dtype=np.float64)
        return np.concatenate([v.values() for v in self.views])

    def get_target_values(self) -> np.ndarray:
        if not self.views:
            return np.zeros((0,), dtype=np.float64)
        return np.concatenate([v.metric.get_target_values() for v in self.views])

    def get_images(self) -> list[np.ndarray]:
        return [v.renderer.get_rendered_image() for v in self.views]

    def update_masks(self) -> None:
        for v in self.views:
            v.mask = v.vertices_mask()

    def _record_masks(self, sign: int, column: int) -> None:
        for v in self.views:
            target = v.plus_masks if sign > 0 else v.minus_masks
            target[column] = v.vertices_mask()

    def pose_gradient(
        self,
        set_pose: Callable[[np.ndarray], None],
        get_pose: Callable[[], np.ndarray],
        record_masks: bool = False,
        eps: float = POSE_EPS,
    ) -> np.ndarray:
        """
        Central-difference Jacobian (values_count x 3) of this fragment's metric values
        with respect to one 3-vector of the pose. The pose is restored on exit.

        With `record_masks`, each view's `plus_masks[p]` / `minus_masks[p]` receive the
        vertex visibility at the perturbed poses.
        """
        base = get_pose()
        J = np.zeros((self.values_count(), 3), dtype=np.float64)
        try:
            for p in range(3):
                x = base.copy()
                x[p] = base[p] + eps
                set_pose(x)
                plus = self.get_values()
                if record_masks:
                    self._record_masks(+1, p)

                x[p] = base[p] - eps
                set_pose(x)
                minus = self.get_values()
                if record_masks:
                    self._record_masks(-1, p)

                J[:, p] = (plus - minus) / (2.0 * eps)
        finally:
            set_pose(base)
        return J

    def rotation_gradient(self, record_masks: bool = False) -> np.ndarray:
        return self.pose_gradient(self.set_rotation, self.get_rotation, record_masks)

    def translation_gradient(self, record_masks: bool = False) -> np.ndarray:
        return self.pose_gradient(self.set_translation, self.get_translation, record_masks)


def shape_gradient(
    fragments: Sequence[BoneFragment],
    shape_model: StatisticalShapeModel,
    count: int,
    record_masks: bool = False,
    eps: float = SHAPE_EPS,
) -> np.ndarray:
    """
    Central-difference Jacobian of every fragment's metric values (stacked in fragment
    order) with respect to the first `count` standardized shape parameters.

    The shape is shared, so each perturbation is applied once and every fragment is
    re-rendered before the column is formed. The shape parameters are restored on exit.
    """
    base = shape_model.get_standardized_shape_params()
    n_rows = int(sum(f.values_count() for f in fragments))
    J = np.zeros((n_rows, count), dtype=np.float64)

    def evaluate(sign: int, column: int) -> np.ndarray:
        values = []
        for f in fragments:
            values.append(f.get_values())
            if record_masks:
                f._record_masks(sign, column)
        return np.concatenate(values) if values else np.zeros((0,), dtype=np.float64)

    try:
        for p in range(count):
            x = base.copy()
            x[p] = base[p] + eps
            shape_model.set_standardized_shape_params(x)
            plus = evaluate(+1, p)

            x[p] = base[p] - eps
            shape_model.set_standardized_shape_params(x)
            minus = evaluate(-1, p)

            J[:, p] = (plus - minus) / (2.0 * eps)
    finally:
        shape_model.set_standardized_shape_params(base)
    return J
