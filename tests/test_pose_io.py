from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from multifragreg.api.pose_io import load_csv_values, load_perspective_csv, load_poses_xml, save_poses_xml


def test_poses_xml_roundtrip(tmp_path: Path) -> None:
    rotations = [np.array([1.5, -2.25, 0.1]), np.array([0.0, 90.0, -45.0])]
    translations = [np.array([10.0, 20.0, 30.0]), np.array([-1.0 / 3.0, 0.0, 1e-9])]
    p = save_poses_xml(tmp_path / "out" / "poses.xml", rotations, translations)
    assert p.read_text(encoding="utf-8").startswith("<?xml")

    r2, t2 = load_poses_xml(p)
    assert len(r2) == 2
    for a, b in zip(rotations + translations, r2 + t2):
        assert np.array_equal(a, b)


def test_save_poses_rejects_bad_input(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        save_poses_xml(tmp_path / "a.xml", [np.zeros(3)], [])
    with pytest.raises(ValueError):
        save_poses_xml(tmp_path / "a.xml", [np.array([np.nan, 0.0, 0.0])], [np.zeros(3)])


def test_load_poses_xml_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_poses_xml(tmp_path / "missing.xml")

    p = tmp_path / "bad_root.xml"
    p.write_text("<pose/>", encoding="utf-8")
    with pytest.raises(ValueError):
        load_poses_xml(p)

    p = tmp_path / "no_translation.xml"
    p.write_text('<poses><fragment><rotation x="0" y="0" z="0"/></fragment></poses>', encoding="utf-8")
    with pytest.raises(ValueError):
        load_poses_xml(p)

    p = tmp_path / "no_z.xml"
    p.write_text(
        '<poses><fragment><rotation x="0" y="0"/><translation x="0" y="0" z="0"/></fragment></poses>',
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        load_poses_xml(p)


def test_csv_values_and_perspective(tmp_path: Path) -> None:
    p = tmp_path / "P.csv"
    p.write_text("200;0;32;0\n0;200;32;0;\n\n0;0;1;0\n", encoding="utf-8")
    assert load_csv_values(p).size == 12

    persp = load_perspective_csv(p, 64, 64)
    assert persp.P.shape == (3, 4)
    assert persp.P[0, 0] == 200.0
    assert (persp.width_px, persp.height_px) == (64, 64)


def test_csv_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_csv_values(tmp_path / "missing.csv")
    p = tmp_path / "bad.csv"
    p.write_text("1;2\n3;x\n", encoding="utf-8")
    with pytest.raises(ValueError, match=":2:"):
        load_csv_values(p)
    p.write_text("1;2;3\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_perspective_csv(p, 10, 10)
