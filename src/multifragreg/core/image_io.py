from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from multifragreg.core.geometry import CropWindow


def load_gray_u8(path: str | Path, size_wh: tuple[int, int] | None = None) -> np.ndarray:
    """Load a radiograph as grayscale uint8, optionally resampled to `size_wh`."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Missing {p}")
    with Image.open(p) as im:
        im = im.convert("L")
        if size_wh is not None and im.size != (int(size_wh[0]), int(size_wh[1])):
            im = im.resize((int(size_wh[0]), int(size_wh[1])), Image.BILINEAR)
        arr = np.asarray(im, dtype=np.uint8)
    return arr


def mask_image(image: np.ndarray, threshold: int = 10) -> np.ndarray:
    """Binarise a radiograph: any channel brighter than `threshold` becomes 255."""
    image = np.asarray(image)
    if image.ndim == 3:
        bright = np.any(image[..., :3] > threshold, axis=-1)
    else:
        bright = image > threshold
    return np.where(bright, 255, 0).astype(np.uint8)


def crop_image(image: np.ndarray, threshold: int = 10, margin_px: int = 8) -> CropWindow:
    """
    Bounding rectangle of the bright pixels, grown by `margin_px` and clipped to the image.
    """
    image = np.asarray(image)
    red = image[..., 0] if image.ndim == 3 else image
    h, w = red.shape
    ys, xs = np.nonzero(red > threshold)
    if xs.size == 0:
        return CropWindow.full(w, h)
    left = max(int(xs.min()) - margin_px, 0)
    top = max(int(ys.min()) - margin_px, 0)
    right = min(int(xs.max()) + margin_px, w - 1)
    bottom = min(int(ys.max()) + margin_px, h - 1)
    return CropWindow(left, top, right - left + 1, bottom - top + 1)


def save_overlay(path: str | Path, reference: np.ndarray, rendered: np.ndarray) -> Path:
    """Reference in the red channel, rendered image in the green channel."""
    reference = np.asarray(reference)
    rendered = np.asarray(rendered)
    if reference.ndim == 3:
        reference = reference[..., 0]
    if rendered.ndim == 3:
        rendered = rendered[..., 0]
    if reference.shape != rendered.shape:
        raise ValueError(f"overlay size mismatch: {reference.shape} vs {rendered.shape}")
    rgb = np.zeros(reference.shape + (3,), dtype=np.uint8)
    rgb[..., 0] = np.clip(reference, 0, 255).astype(np.uint8)
    rgb[..., 1] = np.clip(rendered, 0, 255).astype(np.uint8)
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(rgb).save(p)
    return p
