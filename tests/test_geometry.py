import numpy as np
import pytest

from multifragreg.core.geometry import (
    CropWindow,
    Perspective,
    bounding_box,
    half_space_mask,
    ndc_crop_mask,
    pixel_to_ndc,
    pose_matrix,
    project_points,
    rotation_matrix,
    transform_vertices,
)


def _perspective(width: int = 64, height: int = 48, f: float = 200.0) -> Perspective:
    P = np.array(
        [
            [f, 0.0, width / 2.0, 0.0],
            [0.0, f, height / 2.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
        ]
    )
    return Perspective.from_values(P.reshape(-1), width, height)


def test_rotation_matrix_is_orthonormal():
    rng = np.random.default_rng(0)
    for _ in range(10):
        R = rotation_matrix(rng.uniform(-180.0, 180.0, size=(3,)))
        assert np.allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert np.linalg.det(R) == pytest.approx(1.0)


def test_rotation_about_z_in_degrees():
    R = rotation_matrix([0.0, 0.0, 90.0])
    assert np.allclose(R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0], atol=1e-12)


def test_transform_vertices_matches_pose_matrix():
    rng = np.random.default_rng(1)
    v = rng.normal(size=(20, 3))
    r = np.array([10.0, -20.0, 30.0])
    t = np.array([1.0, 2.0, 3.0])
    T = pose_matrix(r, t)
    vh = np.concatenate([v, np.ones((20, 1))], axis=1) @ T.T
    assert np.allclose(transform_vertices(v, r, t), vh[:, :3])


def test_project_points_centre_and_behind():
    p = _perspective()
    uv, w = project_points(p, np.array([[0.0, 0.0, 100.0], [0.0, 0.0, -5.0]]))
    assert np.allclose(uv[0], [32.0, 24.0])
    assert w[0] == pytest.approx(100.0)
    assert np.all(np.isnan(uv[1]))


def test_perspective_with_size_scales_pixels():
    p = _perspective(64, 48)
    q = p.with_size(32, 24)
    X = np.array([[3.0, -2.0, 50.0]])
    uv_p, _ = project_points(p, X)
    uv_q, _ = project_points(q, X)
    assert np.allclose(uv_q, uv_p * 0.5)


def test_perspective_needs_twelve_values():
    with pytest.raises(ValueError):
        Perspective.from_values(np.zeros((11,)), 10, 10)


def test_ndc_crop_mask_with_rotation():
    p = _perspective(100, 100)
    ndc = pixel_to_ndc(p, np.array([[75.0, 50.0], [25.0, 50.0], [np.nan, np.nan]]))
    assert np.allclose(ndc[:2], [[0.5, 0.0], [-0.5, 0.0]])

    right_half = (0.0, -1.0, 1.0, 2.0)
    assert ndc_crop_mask(ndc, right_half).tolist() == [True, False, False]
    # Rotating the points by 180 degrees swaps the halves.
    assert ndc_crop_mask(ndc, right_half, 180.0).tolist() == [False, True, False]


def test_crop_window_slices():
    img = np.arange(50).reshape(5, 10)
    c = CropWindow(2, 1, 3, 2)
    rows, cols = c.slices()
    assert img[rows, cols].tolist() == [[12, 13, 14], [22, 23, 24]]
    assert CropWindow.full(10, 5) == CropWindow(0, 0, 10, 5)


def test_bounding_box_and_half_space():
    v = np.array([[0.0, 1.0, 2.0], [-1.0, 5.0, 0.0], [3.0, -2.0, 1.0]])
    lo, hi = bounding_box(v)
    assert lo.tolist() == [-1.0, -2.0, 0.0]
    assert hi.tolist() == [3.0, 5.0, 2.0]

    mask = half_space_mask(v, normal=[1.0, 0.0, 0.0], d=-0.5, sign=1.0)
    assert mask.tolist() == [True, True, False]
    assert half_space_mask(v, [1.0, 0.0, 0.0], -0.5, -1.0).tolist() == [False, False, True]
