from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from multifragreg.core.shape_model import StatisticalShapeModel, load_shape_model


def _model(K: int = 4, V: int = 10, seed: int = 0) -> StatisticalShapeModel:
    rng = np.random.default_rng(seed)
    mean = rng.normal(size=(V, 3))
    components = rng.normal(size=(K, V * 3))
    std = rng.uniform(0.5, 3.0, size=(K,))
    return StatisticalShapeModel(mean, components, std)


def test_standardized_and_raw_stay_consistent():
    m = _model()
    rng = np.random.default_rng(1)
    for _ in range(20):
        s = rng.normal(size=(m.n_params,))
        m.set_standardized_shape_params(s)
        assert np.allclose(m.get_standardized_shape_params() * m.std, m.get_shape_params(), rtol=0, atol=1e-12)
        raw = rng.normal(size=(m.n_params,))
        m.set_shape_params(raw)
        assert np.allclose(m.get_standardized_shape_params() * m.std, raw, rtol=0, atol=1e-12)


def test_setting_params_recomputes_vertices():
    m = _model(K=2, V=5)
    v0 = m.vertices()
    m.set_shape_params([1.0, 0.0])
    v1 = m.vertices()
    assert np.allclose(v1 - v0, m._components[0].reshape(-1, 3))


def test_prefix_update_keeps_trailing_params():
    m = _model(K=3)
    m.set_shape_params([1.0, 2.0, 3.0])
    m.set_standardized_shape_params([0.5])
    raw = m.get_shape_params()
    assert raw[0] == pytest.approx(0.5 * m.std[0])
    assert raw[1:].tolist() == [2.0, 3.0]


def test_too_many_params_rejected():
    m = _model(K=2)
    with pytest.raises(ValueError):
        m.set_shape_params([0.0, 0.0, 0.0])


def test_vertices_are_owned_by_caller():
    m = _model()
    v = m.vertices()
    v[:] = 0.0
    assert not np.all(m.vertices() == 0.0)


def test_rigid_model_has_no_params():
    verts = np.arange(12, dtype=np.float64).reshape(4, 3)
    m = StatisticalShapeModel.rigid(verts)
    assert m.n_params == 0
    assert m.get_standardized_shape_params().size == 0
    m.set_standardized_shape_params(np.zeros((0,)))
    assert np.array_equal(m.vertices(), verts)


def test_non_positive_std_rejected():
    with pytest.raises(ValueError):
        StatisticalShapeModel(np.zeros((2, 3)), np.zeros((1, 6)), np.array([0.0]))


def test_load_shape_model_npz(tmp_path: Path) -> None:
    rng = np.random.default_rng(0)
    mean = rng.normal(size=(6, 3))
    comps = rng.normal(size=(2, 18))
    p = tmp_path / "shape.npz"
    np.savez(p, components=comps, std=np.array([1.0, 2.0]), coefficients=np.array([0.5, -1.0]))

    m = load_shape_model(p, mean_vertices=mean)
    assert m.n_vertices == 6
    assert np.allclose(m.get_shape_params(), [0.5, -1.0])
    assert np.allclose(m.vertices(), mean + (0.5 * comps[0] - comps[1]).reshape(-1, 3))

    with pytest.raises(ValueError):
        load_shape_model(p)
    with pytest.raises(FileNotFoundError):
        load_shape_model(tmp_path / "missing.npz")