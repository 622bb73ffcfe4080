from __future__ import annotations

import numpy as np
import pytest

from fakes import AnalyticRenderer, make_mesh, make_shape_model
from multifragreg.core.geometry import CropWindow
from multifragreg.fragment import BoneFragment, XRayView, shape_gradient
from multifragreg.metrics.image import MaskedPixelDifferenceMetric, PixelDifferenceMetric


def _fragment(renderer_cls=AnalyticRenderer, n_views: int = 2):
    mesh = make_mesh()
    model = make_shape_model(mesh)
    views = []
    for seed in range(n_views):
        r = renderer_cls(seed)
        r.set_mesh(mesh)
        r.set_shape_model(model)
        v = XRayView(r, PixelDifferenceMetric(r))
        v.set_image(np.zeros(r.shape_hw))
        views.append(v)
    frag = BoneFragment(views, model)
    frag.set_rotation([5.0, -3.0, 2.0])
    frag.set_translation([1.0, 2.0, -1.0])
    frag.init_values_count()
    return frag, model


def _analytic(frag: BoneFragment) -> np.ndarray:
    return np.concatenate([v.renderer.jacobian_at(v.renderer.features()) for v in frag.views], axis=0)


def test_values_count_sums_views():
    frag, _ = _fragment()
    assert frag.values_count() == 2 * 36
    assert frag.get_values().shape == (72,)
    assert frag.get_target_values().shape == (72,)


def test_pose_gradients_match_analytic_derivative():
    frag, _ = _fragment()
    J_rot = frag.rotation_gradient()
    J_trans = frag.translation_gradient()
    expected = _analytic(frag)
    assert np.allclose(J_rot, expected[:, 0:3], rtol=0, atol=1e-8)
    assert np.allclose(J_trans, expected[:, 3:6], rtol=0, atol=1e-8)


def test_pose_gradient_restores_pose():
    frag, _ = _fragment()
    r0, t0 = frag.get_rotation(), frag.get_translation()
    frag.rotation_gradient()
    frag.translation_gradient()
    assert np.array_equal(frag.get_rotation(), r0)
    assert np.array_equal(frag.get_translation(), t0)
    for v in frag.views:
        assert np.array_equal(v.renderer.get_rotation(), r0)


class _FailingRenderer(AnalyticRenderer):
    def render_now(self) -> None:
        if self.render_calls >= 2:
            raise RuntimeError("render failed")
        super().render_now()


def test_pose_gradient_restores_pose_on_error():
    frag, _ = _fragment(_FailingRenderer)
    r0 = frag.get_rotation()
    with pytest.raises(RuntimeError):
        frag.rotation_gradient()
    assert np.array_equal(frag.get_rotation(), r0)
    for v in frag.views:
        assert np.array_equal(v.renderer.get_rotation(), r0)


def test_shape_gradient_matches_analytic_and_restores():
    frag, model = _fragment()
    model.set_standardized_shape_params([0.3, -0.2])
    s0 = model.get_standardized_shape_params()

    J = shape_gradient([frag], model, 2)

    full = _analytic(frag)
    comps = model._components.reshape(model.n_params, -1, 3)
    expected = np.stack(
        [full[:, 6:9] @ (model.std[k] * comps[k].mean(axis=0)) for k in range(2)],
        axis=1,
    )
    assert np.allclose(J, expected, rtol=0, atol=1e-8)
    assert np.array_equal(model.get_standardized_shape_params(), s0)


def test_pose_gradient_records_perturbed_masks():
    frag, _ = _fragment()
    frag.update_masks()
    for v in frag.views:
        v.reset_masks(3)
    frag.rotation_gradient(record_masks=True)

    base = frag.get_rotation()
    frag.set_rotation(base + np.array([0.0, 0.0, 1.0]))
    expected_plus = [v.vertices_mask() for v in frag.views]
    frag.set_rotation(base)

    for v, m in zip(frag.views, expected_plus):
        assert np.array_equal(v.plus_masks[2], m)
        assert v.plus_masks[2].shape == v.mask.shape


def test_view_crop_applies_to_reference():
    r = AnalyticRenderer(0)
    r.set_mesh(make_mesh())
    v = XRayView(r, PixelDifferenceMetric(r))
    v.set_image(np.arange(36, dtype=np.uint8).reshape(6, 6))
    v.set_crop_window(CropWindow(1, 2, 3, 2))
    assert v.metric.values_count() == 6
    assert v.reference_image().tolist() == [[13, 14, 15], [19, 20, 21]]
    r.render_now()
    assert v.values().shape == (6,)


def test_view_mask_then_crop_keeps_masked_metric_consistent():
    r = AnalyticRenderer(0)
    r.set_mesh(make_mesh())
    v = XRayView(r, MaskedPixelDifferenceMetric(r))
    mask = np.zeros((6, 6), dtype=np.uint8)
    mask[:, 0:2] = 255
    v.set_image(np.zeros((6, 6), dtype=np.uint8))
    v.set_mask(mask)
    assert v.metric.values_count() == 24

    v.set_crop_window(CropWindow(1, 1, 4, 4))
    # Column 1 is still masked inside the crop.
    assert v.metric.values_count() == 12
    r.render_now()
    assert v.values().shape == (12,)

    v.set_crop_window(None)
    assert v.metric.values_count() == 24
    assert v.values().shape == (24,)
