from __future__ import annotations

import logging
import time
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Sequence, TextIO

import numpy as np

from multifragreg.core.image_io import save_overlay

logger = logging.getLogger(__name__)

SECTIONS = ("rendering", "metric", "registration")


class Observer:
    """
    Event sink of a registration. Every hook is a no-op; subclasses override what they need.

    `images` tells the engine whether freshly rendered images should be forwarded to
    `download_images` after every iteration.
    """

    def __init__(self) -> None:
        self._images = False

    @property
    def images(self) -> bool:
        return self._images

    def enable_images(self, enable: bool = True) -> None:
        self._images = bool(enable)

    def before_rendering(self) -> None:
        pass

    def after_rendering(self) -> None:
        pass

    def before_metric(self) -> None:
        pass

    def after_metric(self) -> None:
        pass

    def before_registration(self) -> None:
        pass

    def after_registration(self) -> None:
        pass

    def iteration(self, index: int, value: float) -> None:
        pass

    def download_images(self, images: Sequence[np.ndarray], references: Sequence[np.ndarray] | None = None) -> None:
        pass

    def rotations_changed(self, rotations: Sequence[np.ndarray]) -> None:
        pass

    def translations_changed(self, translations: Sequence[np.ndarray]) -> None:
        pass

    def shape_changed(self, params: np.ndarray) -> None:
        pass

    @contextmanager
    def timed(self, section: str) -> Iterator[None]:
        """Bracket a block with the `before_<section>` / `after_<section>` hooks."""
        if section not in SECTIONS:
            raise ValueError(f"unknown section: {section}")
        getattr(self, f"before_{section}")()
        try:
            yield
        finally:
            getattr(self, f"after_{section}")()


def timed(observer: Observer | None, section: str) -> ContextManager[None]:
    if observer is None:
        return nullcontext()
    return observer.timed(section)


class DefaultObserver(Observer):
    """
    Observer collecting timings and counters of a registration run.

    - wall time of rendering, metric evaluation and whole registrations
    - number of rendered images and metric evaluations
    - objective value at the start and after every iteration (optionally streamed as `value;`)
    - overlay PNGs `<view>_<iteration>.png` when `images_path` is set
    """

    def __init__(
        self,
        *,
        stream: TextIO | None = None,
        images_path: Path | None = None,
        verbose: bool = False,
        on_rotations: Callable[[Sequence[np.ndarray]], None] | None = None,
        on_translations: Callable[[Sequence[np.ndarray]], None] | None = None,
        on_shape: Callable[[np.ndarray], None] | None = None,
    ) -> None:
        super().__init__()
        self.stream = stream
        self.images_path = None if images_path is None else Path(images_path)
        self.verbose = bool(verbose)
        self.on_rotations = on_rotations
        self.on_translations = on_translations
        self.on_shape = on_shape
        if self.images_path is not None:
            self.enable_images(True)

        self.rendering_time = 0.0
        self.metric_time = 0.0
        self.registration_time = 0.0
        self.rendered_count = 0
        self.metric_count = 0
        self.iterations = 0
        self.values: list[float] = []
        self._started: dict[str, float] = {}
        self._last_iteration = 0

    def _start(self, section: str) -> None:
        self._started[section] = time.perf_counter()

    def _stop(self, section: str) -> float:
        t0 = self._started.pop(section, None)
        if t0 is None:
            return 0.0
        return time.perf_counter() - t0

    def before_rendering(self) -> None:
        self._start("rendering")

    def after_rendering(self) -> None:
        self.rendering_time += self._stop("rendering")
        self.rendered_count += 1

    def before_metric(self) -> None:
        self._start("metric")

    def after_metric(self) -> None:
        self.metric_time += self._stop("metric")
        self.metric_count += 1

    def before_registration(self) -> None:
        self._start("registration")

    def after_registration(self) -> None:
        self.registration_time += self._stop("registration")

    def iteration(self, index: int, value: float) -> None:
        # Index 0 reports the starting point, not a completed iteration.
        if index > 0:
            self.iterations += 1
        self._last_iteration = int(index)
        self.values.append(float(value))
        if self.stream is not None:
            self.stream.write(f"{value};")
        if self.verbose:
            logger.info("iteration %d: objective=%.6g", index, value)

    def download_images(self, images: Sequence[np.ndarray], references: Sequence[np.ndarray] | None = None) -> None:
        if self.images_path is None:
            return
        for i, rendered in enumerate(images):
            reference = references[i] if references is not None else np.zeros_like(rendered)
            save_overlay(self.images_path / f"{i}_{self._last_iteration}.png", reference, rendered)

    def rotations_changed(self, rotations: Sequence[np.ndarray]) -> None:
        if self.on_rotations is not None:
            self.on_rotations(rotations)

    def translations_changed(self, translations: Sequence[np.ndarray]) -> None:
        if self.on_translations is not None:
            self.on_translations(translations)

    def shape_changed(self, params: np.ndarray) -> None:
        if self.on_shape is not None:
            self.on_shape(params)

    @property
    def time_per_render(self) -> float:
        return self.rendering_time / self.rendered_count if self.rendered_count else 0.0

    @property
    def time_per_metric(self) -> float:
        return self.metric_time / self.metric_count if self.metric_count else 0.0
