from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from multifragreg.core.image_io import crop_image, load_gray_u8, mask_image, save_overlay


def _write_gray(path: Path, arr: np.ndarray) -> None:
    img = Image.fromarray(arr.astype(np.uint8))
    if path.suffix.lower() == ".webp":
        img.save(path, lossless=True)
    else:
        img.save(path)


def test_load_gray_u8_png_and_webp(tmp_path: Path) -> None:
    arr = (np.arange(64, dtype=np.uint8).reshape(8, 8) * 4) % 255

    p_png = tmp_path / "a.png"
    p_webp = tmp_path / "a.webp"
    _write_gray(p_png, arr)
    _write_gray(p_webp, arr)

    a = load_gray_u8(p_png)
    b = load_gray_u8(p_webp)

    assert a.shape == (8, 8)
    assert b.shape == (8, 8)
    assert a.dtype == np.uint8
    assert np.array_equal(a, arr)


def test_load_gray_u8_resizes(tmp_path: Path) -> None:
    p = tmp_path / "a.png"
    _write_gray(p, np.full((10, 20), 128, dtype=np.uint8))
    a = load_gray_u8(p, size_wh=(10, 5))
    assert a.shape == (5, 10)
    assert np.all(a == 128)


def test_mask_and_crop_image() -> None:
    img = np.zeros((20, 30), dtype=np.uint8)
    img[5:8, 10:14] = 200
    mask = mask_image(img)
    assert set(np.unique(mask).tolist()) == {0, 255}
    assert int(np.count_nonzero(mask)) == 12

    c = crop_image(img, margin_px=2)
    assert (c.x, c.y, c.width, c.height) == (8, 3, 8, 7)
    c = crop_image(np.zeros((4, 6), dtype=np.uint8))
    assert (c.x, c.y, c.width, c.height) == (0, 0, 6, 4)


def test_save_overlay_channels(tmp_path: Path) -> None:
    ref = np.full((4, 4), 100.0)
    rendered = np.full((4, 4), 300.0)
    p = save_overlay(tmp_path / "o" / "x.png", ref, rendered)
    rgb = np.asarray(Image.open(p))
    assert rgb.shape == (4, 4, 3)
    assert rgb[0, 0].tolist() == [100, 255, 0]
