from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np

from multifragreg.observer import Observer, timed
from multifragreg.render.base import Renderer

logger = logging.getLogger(__name__)


def red_channel_f32(image: np.ndarray) -> np.ndarray:
    """Red (or only) channel of an image as float32 in [0,1]."""
    image = np.asarray(image)
    if image.ndim == 3:
        image = image[..., 0]
    if image.ndim != 2:
        raise ValueError(f"expected an image (H,W) or (H,W,C), got shape {image.shape}")
    if image.dtype == np.uint8:
        return image.astype(np.float32) / 255.0
    return image.astype(np.float32)


class ImageMetric(ABC):
    """
    Similarity between the image rendered by `renderer` and a reference radiograph.

    `set_image` ingests the reference; `get_values` reads back the current rendering and
    returns `values_count()` values to be compared with `get_target_values()`.
    """

    def __init__(self, renderer: Renderer, observer: Observer | None = None) -> None:
        self.renderer = renderer
        self.observer = observer
        self.histogram_bins = 64
        self._reference: np.ndarray | None = None

    def set_observer(self, observer: Observer | None) -> None:
        self.observer = observer

    def set_histogram_bins(self, bins: int) -> None:
        if bins < 2:
            raise ValueError("histogram bins must be >= 2")
        self.histogram_bins = int(bins)

    def set_mask(self, mask: np.ndarray | None) -> None:
        """Only masked metrics use a mask; the others ignore it."""

    def set_image(self, image: np.ndarray) -> None:
        self._reference = red_channel_f32(image)

    @property
    def reference(self) -> np.ndarray | None:
        return self._reference

    def _rendered(self) -> np.ndarray:
        assert self._reference is not None, "set_image() must be called before get_values()"
        rendered = self.renderer.get_rendered_red_channel()
        if rendered.shape != self._reference.shape:
            raise ValueError(f"rendered image {rendered.shape} and reference {self._reference.shape} differ in size")
        return rendered

    def get_values(self) -> np.ndarray:
        with timed(self.observer, "metric"):
            return self._compute(self._rendered())

    @abstractmethod
    def _compute(self, rendered: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def get_target_values(self) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def values_count(self) -> int:
        raise NotImplementedError


class PixelDifferenceMetric(ImageMetric):
    """Per-pixel comparison: one value per pixel of the (cropped) view."""

    def _compute(self, rendered: np.ndarray) -> np.ndarray:
        return rendered.reshape(-1).astype(np.float64)

    def get_target_values(self) -> np.ndarray:
        assert self._reference is not None
        return self._reference.reshape(-1).astype(np.float64)

    def values_count(self) -> int:
        return 0 if self._reference is None else int(self._reference.size)


class MaskedPixelDifferenceMetric(PixelDifferenceMetric):
    """
    Per-pixel comparison restricted to pixels where the mask is zero.
    Without a mask every pixel contributes.
    """

    def __init__(self, renderer: Renderer, observer: Observer | None = None) -> None:
        super().__init__(renderer, observer)
        self._mask: np.ndarray | None = None
        self._keep: np.ndarray | None = None

    def set_mask(self, mask: np.ndarray | None) -> None:
        self._mask = None if mask is None else red_channel_f32(mask)
        self._update_keep()

    def set_image(self, image: np.ndarray) -> None:
        super().set_image(image)
        self._update_keep()

    def _update_keep(self) -> None:
        if self._reference is None:
            self._keep = None
            return
        if self._mask is None:
            self._keep = np.ones((self._reference.size,), dtype=bool)
            return
        if self._mask.shape != self._reference.shape:
            raise ValueError(f"mask {self._mask.shape} and reference {self._reference.shape} differ in size")
        self._keep = (self._mask <= 0.0).reshape(-1)

    def _compute(self, rendered: np.ndarray) -> np.ndarray:
        assert self._keep is not None
        return rendered.reshape(-1)[self._keep].astype(np.float64)

    def get_target_values(self) -> np.ndarray:
        assert self._reference is not None and self._keep is not None
        return self._reference.reshape(-1)[self._keep].astype(np.float64)

    def values_count(self) -> int:
        return 0 if self._keep is None else int(np.count_nonzero(self._keep))


def _entropy(p: np.ndarray) -> float:
    p = p[p > 0]
    return float(-np.sum(p * np.log(p)))


def normalized_mutual_information(a: np.ndarray, b: np.ndarray, bins: int = 64) -> float:
    """(H(A) + H(B)) / H(A,B) over intensities in [0,1]; NaN when H(A,B) is 0."""
    hist, _, _ = np.histogram2d(
        np.asarray(a, dtype=np.float64).reshape(-1),
        np.asarray(b, dtype=np.float64).reshape(-1),
        bins=int(bins),
        range=[[0.0, 1.0], [0.0, 1.0]],
    )
    total = float(hist.sum())
    if total <= 0.0:
        return float("nan")
    pab = hist / total
    h_ab = _entropy(pab)
    if h_ab <= 0.0:
        return float("nan")
    return (_entropy(pab.sum(axis=1)) + _entropy(pab.sum(axis=0))) / h_ab


class NormalizedMutualInformationMetric(ImageMetric):
    """Single value, 2.0 for identical images; degenerate histograms are clamped to the target."""

    TARGET = 2.0

    def _compute(self, rendered: np.ndarray) -> np.ndarray:
        assert self._reference is not None
        nmi = normalized_mutual_information(rendered, self._reference, self.histogram_bins)
        if not np.isfinite(nmi):
            logger.warning("normalized mutual information is not finite, clamping to %.1f", self.TARGET)
            nmi = self.TARGET
        return np.array([nmi], dtype=np.float64)

    def get_target_values(self) -> np.ndarray:
        return np.array([self.TARGET], dtype=np.float64)

    def values_count(self) -> int:
        return 1


class SquaredDifferencesMetric(ImageMetric):
    """Single value: sum of squared pixel differences."""

    def _compute(self, rendered: np.ndarray) -> np.ndarray:
        assert self._reference is not None
        d = rendered.astype(np.float64) - self._reference.astype(np.float64)
        return np.array([float(np.sum(d * d))], dtype=np.float64)

    def get_target_values(self) -> np.ndarray:
        return np.zeros((1,), dtype=np.float64)

    def values_count(self) -> int:
        return 1


METRICS: dict[str, type[ImageMetric]] = {
    "pixel_difference": PixelDifferenceMetric,
    "masked_pixel_difference": MaskedPixelDifferenceMetric,
    "normalized_mutual_information": NormalizedMutualInformationMetric,
    "squared_differences": SquaredDifferencesMetric,
}
