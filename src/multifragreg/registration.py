from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, NamedTuple, Sequence

import numpy as np

from multifragreg.core.geometry import (
    CropWindow,
    Perspective,
    as_vec3,
    bounding_box,
    half_space_mask,
    transform_vertices,
)
from multifragreg.core.mesh import Mesh
from multifragreg.core.shape_model import StatisticalShapeModel
from multifragreg.fragment import POSE_EPS, SHAPE_EPS, BoneFragment, XRayView, shape_gradient
from multifragreg.metrics.image import METRICS
from multifragreg.metrics.vertex import VERTEX_METRICS, VertexMetric
from multifragreg.observer import Observer, timed
from multifragreg.render.base import Renderer
from multifragreg.solver import LeastSquaresResult, ObjectiveDeltaStopStrategy, solve_least_squares_lm

logger = logging.getLogger(__name__)


class SamplePoint(NamedTuple):
    index: int
    target: float


@dataclass(frozen=True)
class OptimizationMode:
    """Everything the solver needs for one optimisation mode."""

    name: str
    sample_points: Callable[[], list[SamplePoint]]
    values: Callable[[], np.ndarray]
    jacobian: Callable[[], np.ndarray]
    to_vector: Callable[[], np.ndarray]
    from_vector: Callable[[np.ndarray], None]
    changed: Callable[[], None]


class ResidualCache:
    """
    Residuals of the last evaluated parameter vector.

    `residuals(x)` applies x, evaluates the whole value vector and caches it;
    `residual(i)` is a lookup into that cache.
    """

    def __init__(self, mode: OptimizationMode, points: Sequence[SamplePoint]) -> None:
        self.mode = mode
        self.targets = np.array([p.target for p in points], dtype=np.float64)
        self.x: np.ndarray | None = None
        self.values: np.ndarray | None = None

    def residuals(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        self.mode.from_vector(x)
        values = np.asarray(self.mode.values(), dtype=np.float64).reshape(-1)
        if values.size != self.targets.size:
            raise ValueError(f"mode {self.mode.name} produced {values.size} values for {self.targets.size} samples")
        self.x = x.copy()
        self.values = values
        return values - self.targets

    def residual(self, index: int) -> float:
        assert self.values is not None, "residuals(x) must be evaluated first"
        return float(self.values[index] - self.targets[index])

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        self.mode.from_vector(np.asarray(x, dtype=np.float64).reshape(-1))
        return self.mode.jacobian()


def _per_item(value, count: int, name: str) -> list[np.ndarray]:
    """A list of `count` 3-vectors, or one 3-vector used for every item."""
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 3:
        return [as_vec3(arr) for _ in range(count)]
    arr = arr.reshape(-1, 3)
    if arr.shape[0] != count:
        raise ValueError(f"expected {count} {name} vectors, got {arr.shape[0]}")
    return [as_vec3(a) for a in arr]


class MultiFragmentRegistration:
    """
    Joint 2D-3D registration of several bone fragments against several radiographs each.

    Every fragment has `views_count` views (renderer + image metric). Poses are per
    fragment; the statistical shape model is shared by all fragments. The registration is
    a nonlinear least-squares problem solved with Levenberg-Marquardt; its parameter
    vector is

      [r_0 (3), t_0 (3), r_1, t_1, ...,  standardized shape (k)]

    and its samples are the image-metric values of every view (fragment order), followed
    in vertex modes by the vertex-metric values.
    """

    def __init__(
        self,
        fragments_count: int,
        views_count: int,
        renderer_factory: Callable[[], Renderer],
        *,
        metric: str = "pixel_difference",
        vertex_metric: str = "simple",
        observer: Observer | None = None,
    ) -> None:
        if fragments_count < 1 or views_count < 1:
            raise ValueError("fragments and views counts must be >= 1")
        if metric not in METRICS:
            raise ValueError(f"unknown metric: {metric}")
        if vertex_metric not in VERTEX_METRICS:
            raise ValueError(f"unknown vertex metric: {vertex_metric}")

        self.fragments_count = int(fragments_count)
        self.views_count = int(views_count)
        self.observer = observer
        self.min_delta = 1e-7
        self.max_iter = 150
        self.radius = 1.0
        self.last_result: LeastSquaresResult | None = None

        self.fragments: list[BoneFragment] = []
        for _ in range(self.fragments_count):
            views = []
            for _ in range(self.views_count):
                renderer = renderer_factory()
                views.append(XRayView(renderer, METRICS[metric](renderer, observer), observer))
            self.fragments.append(BoneFragment(views))

        self.vertex_metric: VertexMetric = VERTEX_METRICS[vertex_metric]()
        self.vertex_metric.set_views_number(self.views_count)
        self.mesh: Mesh | None = None
        self.shape_model: StatisticalShapeModel | None = None

    # ------------------------------------------------------------------
    # setup

    @property
    def views(self) -> list[XRayView]:
        return [v for f in self.fragments for v in f.views]

    @property
    def renderers(self) -> list[Renderer]:
        return [v.renderer for v in self.views]

    def _per_view(self, items: Sequence, name: str) -> list:
        items = list(items)
        if len(items) != len(self.views):
            raise ValueError(f"expected {len(self.views)} {name}, got {len(items)}")
        return items

    def set_mesh(self, mesh: Mesh) -> None:
        if self.shape_model is not None and self.shape_model.n_vertices != mesh.n_vertices:
            raise ValueError("shape model and mesh vertex counts differ")
        self.mesh = mesh
        if self.shape_model is None:
            self.set_shape_model(StatisticalShapeModel.rigid(mesh.vertices))
        for r in self.renderers:
            r.set_mesh(mesh)
        self.vertex_metric.set_mesh(mesh)

    def set_shape_model(self, model: StatisticalShapeModel) -> None:
        if self.mesh is not None and model.n_vertices != self.mesh.n_vertices:
            raise ValueError("shape model and mesh vertex counts differ")
        self.shape_model = model
        for f in self.fragments:
            f.shape_model = model
        for r in self.renderers:
            r.set_shape_model(model)

    def set_perspectives(self, perspectives: Sequence[Perspective]) -> None:
        for r, p in zip(self.renderers, self._per_view(perspectives, "perspectives")):
            r.set_perspective(p)
            r.set_render_size(p.width_px, p.height_px)

    def set_sizes(self, sizes: Sequence[tuple[int, int]]) -> None:
        for r, (w, h) in zip(self.renderers, self._per_view(sizes, "sizes")):
            r.set_render_size(int(w), int(h))

    def set_crops(self, crops: Sequence[CropWindow | None]) -> None:
        for v, c in zip(self.views, self._per_view(crops, "crop windows")):
            v.set_crop_window(c)
        self.init_values_count()

    def set_vertex_crops(self, crops_ndc: Sequence[tuple[float, float, float, float]]) -> None:
        for v, c in zip(self.views, self._per_view(crops_ndc, "vertex crops")):
            c = tuple(float(x) for x in c)
            if len(c) != 4:
                raise ValueError("vertex crop must be (x, y, w, h)")
            v.crop_ndc = c

    def set_angles(self, angles_deg: Sequence[float]) -> None:
        for v, a in zip(self.views, self._per_view(angles_deg, "angles")):
            v.angle_deg = float(a)

    def set_images(self, images: Sequence[np.ndarray]) -> None:
        for v, im in zip(self.views, self._per_view(images, "images")):
            v.set_image(im)
        self.init_values_count()

    def set_masks(self, masks: Sequence[np.ndarray | None]) -> None:
        for v, m in zip(self.views, self._per_view(masks, "masks")):
            v.set_mask(m)
        self.init_values_count()

    def set_histogram_bins(self, bins: int) -> None:
        for v in self.views:
            v.metric.set_histogram_bins(bins)

    def enable_mirroring(self, enable: bool) -> None:
        for r in self.renderers:
            r.enable_x_mirroring(enable)

    def set_observer(self, observer: Observer | None) -> None:
        self.observer = observer
        for f in self.fragments:
            f.set_observer(observer)

    def set_solver_params(self, min_delta: float = 1e-7, max_iter: int = 150, radius: float = 1.0) -> None:
        self.min_delta = float(min_delta)
        self.max_iter = int(max_iter)
        self.radius = float(radius)

    def init_values_count(self) -> int:
        return int(sum(f.init_values_count() for f in self.fragments))

    # ------------------------------------------------------------------
    # pose / shape accessors

    def set_rotations(self, rotations) -> None:
        for f, r in zip(self.fragments, _per_item(rotations, self.fragments_count, "rotation")):
            f.set_rotation(r)

    def set_translations(self, translations) -> None:
        for f, t in zip(self.fragments, _per_item(translations, self.fragments_count, "translation")):
            f.set_translation(t)

    def get_rotations(self) -> list[np.ndarray]:
        return [f.get_rotation() for f in self.fragments]

    def get_translations(self) -> list[np.ndarray]:
        return [f.get_translation() for f in self.fragments]

    def get_transformations(self) -> list[np.ndarray]:
        return [f.get_transformation() for f in self.fragments]

    def get_mean_rotation(self) -> np.ndarray:
        return np.mean(np.stack(self.get_rotations()), axis=0)

    def get_mean_translation(self) -> np.ndarray:
        return np.mean(np.stack(self.get_translations()), axis=0)

    def _require_shape(self) -> StatisticalShapeModel:
        if self.shape_model is None:
            raise RuntimeError("no shape model: call set_mesh() or set_shape_model() first")
        return self.shape_model

    def get_shape_params(self) -> np.ndarray:
        return self._require_shape().get_shape_params()

    def set_shape_params(self, params: np.ndarray) -> None:
        self._require_shape().set_shape_params(params)

    def get_standardized_shape_params(self) -> np.ndarray:
        return self._require_shape().get_standardized_shape_params()

    def set_standardized_shape_params(self, params: np.ndarray) -> None:
        self._require_shape().set_standardized_shape_params(params)

    def set_density_params(self, params: np.ndarray) -> None:
        logger.error("density parameters are not supported by polygonal fragments")
        raise NotImplementedError("density parameters can't be set on polygonal fragments")

    def set_standardized_density_params(self, params: np.ndarray) -> None:
        logger.error("density parameters are not supported by polygonal fragments")
        raise NotImplementedError("density parameters can't be set on polygonal fragments")

    # ------------------------------------------------------------------
    # parameter vectors

    def poses_to_vector(self) -> np.ndarray:
        return np.concatenate([np.concatenate([f.get_rotation(), f.get_translation()]) for f in self.fragments])

    def vector_to_poses(self, x: np.ndarray) -> None:
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        n = 6 * self.fragments_count
        if x.size < n:
            raise ValueError(f"pose vector needs {n} values, got {x.size}")
        for i, f in enumerate(self.fragments):
            f.set_rotation(x[6 * i : 6 * i + 3])
            f.set_translation(x[6 * i + 3 : 6 * i + 6])

    def _shape_count(self, count: int) -> int:
        k = self._require_shape().n_params
        if count < 0:
            raise ValueError("shape parameter count can't be negative")
        return k if count == 0 else min(int(count), k)

    def poses_shape_to_vector(self, count: int) -> np.ndarray:
        k = self._shape_count(count)
        return np.concatenate([self.poses_to_vector(), self.get_standardized_shape_params()[:k]])

    def vector_to_poses_shape(self, x: np.ndarray, count: int) -> None:
        k = self._shape_count(count)
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        n = 6 * self.fragments_count
        if x.size != n + k:
            raise ValueError(f"pose+shape vector needs {n + k} values, got {x.size}")
        self.vector_to_poses(x[:n])
        self.set_standardized_shape_params(x[n:])

    # ------------------------------------------------------------------
    # values

    def render_now(self) -> None:
        for f in self.fragments:
            f.render()

    def get_values(self) -> np.ndarray:
        return np.concatenate([f.get_values() for f in self.fragments])

    def get_target_values(self) -> np.ndarray:
        return np.concatenate([f.get_target_values() for f in self.fragments])

    def update_masks(self) -> None:
        for f in self.fragments:
            f.update_masks()

    def get_vertex_values(self) -> np.ndarray:
        self.update_masks()
        return self.vertex_metric.get_values([v.mask for v in self.views])

    def get_target_vertex_values(self) -> np.ndarray:
        return self.vertex_metric.get_target_values()

    def get_wrong_vertices_count(self) -> int:
        return self.vertex_metric.get_wrong_vertices_count()

    def get_images(self) -> list[np.ndarray]:
        self.render_now()
        return [im for f in self.fragments for im in f.get_images()]

    def get_reference_images(self) -> list[np.ndarray | None]:
        return [v.reference_image() for v in self.views]

    def _image_values(self) -> np.ndarray:
        return self.get_values()

    def _image_vertex_values(self) -> np.ndarray:
        return np.concatenate([self.get_values(), self.get_vertex_values()])

    def _image_points(self) -> list[SamplePoint]:
        targets = self.get_target_values()
        return [SamplePoint(i, float(t)) for i, t in enumerate(targets)]

    def _image_vertex_points(self) -> list[SamplePoint]:
        targets = np.concatenate([self.get_target_values(), self.get_target_vertex_values()])
        return [SamplePoint(i, float(t)) for i, t in enumerate(targets)]

    # ------------------------------------------------------------------
    # jacobians

    def _pose_jacobian(self) -> np.ndarray:
        n_rows = self.init_values_count()
        J = np.zeros((n_rows, 6 * self.fragments_count), dtype=np.float64)
        row = 0
        for i, f in enumerate(self.fragments):
            n = f.values_count()
            J[row : row + n, 6 * i : 6 * i + 3] = f.rotation_gradient()
            J[row : row + n, 6 * i + 3 : 6 * i + 6] = f.translation_gradient()
            row += n
        return J

    def _pose_shape_jacobian(self, count: int) -> np.ndarray:
        k = self._shape_count(count)
        J_pose = self._pose_jacobian()
        J_shape = shape_gradient(self.fragments, self._require_shape(), k)
        return np.concatenate([J_pose, J_shape], axis=1)

    def _vertex_column(self, column: int, eps: float) -> np.ndarray:
        plus = self.vertex_metric.get_values([v.plus_masks[column] for v in self.views])
        minus = self.vertex_metric.get_values([v.minus_masks[column] for v in self.views])
        return (plus - minus) / (2.0 * eps)

    def _pose_vertex_jacobian(self) -> np.ndarray:
        """
        Image rows as in pose mode plus vertex-metric rows. A fragment's pose moves only
        its own views' masks, so the other views keep their current masks for its columns.
        """
        self.update_masks()
        n_img = self.init_values_count()
        n_vtx = self.vertex_metric.values_count()
        J = np.zeros((n_img + n_vtx, 6 * self.fragments_count), dtype=np.float64)
        row = 0
        for i, f in enumerate(self.fragments):
            n = f.values_count()
            for c0, gradient in ((6 * i, f.rotation_gradient), (6 * i + 3, f.translation_gradient)):
                for v in self.views:
                    v.reset_masks(3)
                J[row : row + n, c0 : c0 + 3] = gradient(record_masks=True)
                for p in range(3):
                    J[n_img:, c0 + p] = self._vertex_column(p, POSE_EPS)
            row += n
        return J

    def _pose_shape_vertex_jacobian(self, count: int) -> np.ndarray:
        k = self._shape_count(count)
        J_pose = self._pose_vertex_jacobian()
        n_img = self.init_values_count()
        for v in self.views:
            v.reset_masks(k)
        J_img = shape_gradient(self.fragments, self._require_shape(), k, record_masks=True)
        J_vtx = np.zeros((J_pose.shape[0] - n_img, k), dtype=np.float64)
        for p in range(k):
            J_vtx[:, p] = self._vertex_column(p, SHAPE_EPS)
        return np.concatenate([J_pose, np.concatenate([J_img, J_vtx], axis=0)], axis=1)

    # ------------------------------------------------------------------
    # optimisation

    def params_changed(self) -> None:
        if self.observer is None:
            return
        self.observer.rotations_changed(self.get_rotations())
        self.observer.translations_changed(self.get_translations())

    def _pose_shape_changed(self) -> None:
        self.params_changed()
        if self.observer is not None and self.shape_model is not None:
            self.observer.shape_changed(self.get_standardized_shape_params())

    def _mode(self, name: str, count: int = 0) -> OptimizationMode:
        if name == "pose":
            return OptimizationMode(
                name, self._image_points, self._image_values, self._pose_jacobian,
                self.poses_to_vector, self.vector_to_poses, self.params_changed,
            )
        if name == "pose_shape":
            return OptimizationMode(
                name, self._image_points, self._image_values, lambda: self._pose_shape_jacobian(count),
                lambda: self.poses_shape_to_vector(count), lambda x: self.vector_to_poses_shape(x, count),
                self._pose_shape_changed,
            )
        if name == "pose_vertex":
            return OptimizationMode(
                name, self._image_vertex_points, self._image_vertex_values, self._pose_vertex_jacobian,
                self.poses_to_vector, self.vector_to_poses, self.params_changed,
            )
        if name == "pose_shape_vertex":
            return OptimizationMode(
                name, self._image_vertex_points, self._image_vertex_values,
                lambda: self._pose_shape_vertex_jacobian(count),
                lambda: self.poses_shape_to_vector(count), lambda x: self.vector_to_poses_shape(x, count),
                self._pose_shape_changed,
            )
        raise ValueError(f"unknown optimisation mode: {name}")

    def jacobian(self, name: str, count: int = 0) -> np.ndarray:
        """Jacobian of a mode at the current parameters (columns as in its parameter vector)."""
        self.init_values_count()
        return self._mode(name, count).jacobian()

    def _on_iteration(self, mode: OptimizationMode, index: int, x: np.ndarray, value: float) -> None:
        logger.debug("%s iteration %d: objective=%.6g", mode.name, index, value)
        if self.observer is None:
            return
        # The last trial point may have been rejected: show the accepted one.
        mode.from_vector(x)
        self.observer.iteration(index, value)
        mode.changed()
        if self.observer.images:
            self.observer.download_images(self.get_images(), self.get_reference_images())

    def optimize(self, name: str, count: int = 0) -> LeastSquaresResult:
        """Run one optimisation mode; the final parameters are applied to the fragments."""
        if self.mesh is None:
            raise RuntimeError("no mesh: call set_mesh() first")
        mode = self._mode(name, count)
        with timed(self.observer, "registration"):
            self.init_values_count()
            if name in ("pose_vertex", "pose_shape_vertex"):
                self.update_masks()
            points = mode.sample_points()
            x0 = mode.to_vector()
            logger.info("%s: %d parameters, %d samples", name, x0.size, len(points))

            cache = ResidualCache(mode, points)
            stop = ObjectiveDeltaStopStrategy(
                self.min_delta,
                self.max_iter,
                on_iteration=lambda i, x, f: self._on_iteration(mode, i, x, f),
            )
            result = solve_least_squares_lm(stop, cache.residuals, cache.jacobian, x0, radius=self.radius)
            mode.from_vector(result.x)
            mode.changed()
        logger.info(
            "%s: objective=%.6g after %d iterations (%s)", name, result.objective, result.iterations, result.reason
        )
        self.last_result = result
        return result

    def optimize_pose(self) -> LeastSquaresResult:
        return self.optimize("pose")

    def optimize_pose_shape(self, count: int = 0) -> LeastSquaresResult:
        return self.optimize("pose_shape", count)

    def optimize_pose_vertex(self) -> LeastSquaresResult:
        return self.optimize("pose_vertex")

    def optimize_pose_shape_vertex(self, count: int = 0) -> LeastSquaresResult:
        return self.optimize("pose_shape_vertex", count)

    # ------------------------------------------------------------------
    # geometry and export

    def vertices(self, rotation: np.ndarray | None = None, translation: np.ndarray | None = None) -> np.ndarray:
        """Current model vertices (shape applied), placed at the given pose (identity by default)."""
        v = self.renderers[0].get_recomputed_vertices(transform=False)
        r = np.zeros((3,)) if rotation is None else rotation
        t = np.zeros((3,)) if translation is None else translation
        return transform_vertices(v, r, t)

    def triangles(self) -> np.ndarray:
        if self.mesh is None:
            raise RuntimeError("no mesh: call set_mesh() first")
        return self.mesh.triangles[:, (1, 0, 2)].copy()

    def get_bounding_box(self) -> tuple[np.ndarray, np.ndarray]:
        return bounding_box(self.renderers[0].get_recomputed_vertices(transform=False))

    def get_bounding_box_size(self) -> np.ndarray:
        lo, hi = self.get_bounding_box()
        return hi - lo

    def export_single_stl(self, basename: Path) -> Path:
        """First fragment, model space, uncropped: `<basename>.0.stl`."""
        return self.renderers[0].export_stl(Path(f"{basename}.0.stl"), transform=False)

    def export_stl(self, basename: Path) -> Path:
        """First fragment in scene space, restricted to the vertices visible in its first view."""
        r = self.renderers[0]
        mask = r.get_vertices_mask(r.get_recomputed_vertices(transform=False))
        return r.export_stl(Path(f"{basename}.stl"), transform=True, mask=mask)

    def export_stl_at_pose(self, path: Path, rotation: np.ndarray, translation: np.ndarray) -> Path:
        rotations = self.get_rotations()
        translations = self.get_translations()
        try:
            self.set_rotations(rotation)
            self.set_translations(translation)
            self.render_now()
            return self.renderers[0].export_stl(Path(path), transform=True)
        finally:
            self.set_rotations(rotations)
            self.set_translations(translations)

    def export_each_stl(
        self,
        basename: Path,
        transform: bool = True,
        crop: bool = False,
        length_fix: bool = False,
        planes: Sequence[tuple[np.ndarray, float, float]] | None = None,
    ) -> list[Path]:
        """
        One STL per fragment, `<basename>.<i>.stl`.

        With `crop`, a fragment keeps the vertices its first view covers; with `length_fix`
        it keeps instead the side of its fracture plane `(normal, d, sign)`. Cropped
        model-space exports of several fragments also write the uncovered remainder as
        `<basename>.<fragments>.stl`.
        """
        if length_fix and (planes is None or len(planes) != self.fragments_count):
            raise ValueError("length_fix needs one (normal, d, sign) plane per fragment")
        written: list[Path] = []
        masks: list[np.ndarray] = []
        for i, f in enumerate(self.fragments):
            view = f.views[0]
            path = Path(f"{basename}.{i}.stl")
            if not crop:
                written.append(view.renderer.export_stl(path, transform=transform))
                continue
            if length_fix:
                normal, d, sign = planes[i]
                mask = half_space_mask(view.renderer.get_recomputed_vertices(transform=True), normal, d, sign)
            else:
                mask = view.vertices_mask()
            masks.append(mask)
            written.append(view.renderer.export_stl(path, transform=transform, mask=mask))

        if crop and not transform and len(masks) >= 2:
            rest = ~np.any(np.stack(masks), axis=0)
            path = Path(f"{basename}.{self.fragments_count}.stl")
            written.append(self.renderers[0].export_stl(path, transform=False, mask=rest))
        return written
