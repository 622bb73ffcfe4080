from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from multifragreg.api.pose_io import load_poses_xml
from multifragreg.cli.main import main
from multifragreg.cli.register import build_registration
from multifragreg.core.image_io import crop_image, load_gray_u8
from multifragreg.core.mesh import export_stl
from multifragreg.meta import load_registration_config
from multifragreg.render.cpu import SilhouetteRenderer
from test_renderer import cube_mesh, cube_perspective

pytestmark = pytest.mark.integration


def _write_case(tmp_path: Path) -> Path:
    pytest.importorskip("trimesh")
    mesh = cube_mesh()
    export_stl(tmp_path / "cube.stl", mesh.vertices, mesh.triangles)

    P = cube_perspective().P
    (tmp_path / "P.csv").write_text("\n".join(";".join(repr(float(x)) for x in row) for row in P), encoding="utf-8")

    r = SilhouetteRenderer()
    r.set_mesh(mesh)
    r.set_perspective(cube_perspective())
    r.set_render_size(64, 64)
    r.set_translation([0.0, 0.0, 100.0])
    r.render_now()
    Image.fromarray(r.get_rendered_image()).save(tmp_path / "xray.png")

    cfg = {
        "schema_version": "multifragreg.config.v0",
        "setup": {"fragments": 1, "views": 1},
        "model": {"mesh": "cube.stl"},
        "solver": {"max_iter": 3},
        "schedule": [{"mode": "pose"}],
        "views": [{"image": "xray.png", "perspective": "P.csv"}],
        "fragments": [{"translation": [1.0, 0.0, 100.0]}],
        "output": {"poses": "out/poses.xml", "surface": "out/bone", "measurement": "out/measurement.xml"},
    }
    p = tmp_path / "reg.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")
    return p


def test_validate_config(tmp_path: Path, capsys):
    cfg = _write_case(tmp_path)
    assert main(["validate-config", str(cfg)]) == 0
    assert "OK: 1 fragments x 1 views" in capsys.readouterr().out

    (tmp_path / "P.csv").unlink()
    with pytest.raises(FileNotFoundError):
        main(["validate-config", str(cfg)])


def test_register_writes_outputs(tmp_path: Path):
    cfg = _write_case(tmp_path)
    assert main(["register", str(cfg)]) == 0

    out = tmp_path / "out"
    assert (out / "bone.0.stl").exists()
    assert (out / "measurement.xml").read_text(encoding="utf-8").count("<noa") == 1
    rotations, translations = load_poses_xml(out / "poses.xml")
    assert len(rotations) == 1
    assert np.all(np.isfinite(translations[0]))
    assert abs(translations[0][0]) < 2.0


def test_render_writes_overlays(tmp_path: Path):
    cfg = _write_case(tmp_path)
    assert main(["render", str(cfg), "--out", str(tmp_path / "png")]) == 0
    rgb = np.asarray(Image.open(tmp_path / "png" / "0.png"))
    assert rgb.shape == (64, 64, 3)
    assert rgb[32, 32, 0] == 255


def test_build_registration_binarizes_and_auto_crops(tmp_path: Path):
    cfg_path = _write_case(tmp_path)
    # A dim radiograph: binarizing brings the bone back to 255.
    xray = tmp_path / "xray.png"
    dim = (np.asarray(Image.open(xray)) // 4).astype(np.uint8)
    Image.fromarray(dim).save(xray)
    data = json.loads(cfg_path.read_text(encoding="utf-8"))
    data["views"][0].update({"crop_xywh_px": "auto", "binarize": True})
    cfg_path.write_text(json.dumps(data), encoding="utf-8")

    engine = build_registration(load_registration_config(cfg_path))
    view = engine.views[0]
    assert view.crop == crop_image(load_gray_u8(xray))
    assert view.crop.width < 64 and view.crop.height < 64
    assert set(np.unique(view.reference).tolist()) == {0, 255}
    assert view.reference_image().shape == (view.crop.height, view.crop.width)
