from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from multifragreg.observer import DefaultObserver
from multifragreg.registration import MultiFragmentRegistration

logger = logging.getLogger(__name__)

# Area of one pixel in mm^2 for 0.5 mm detector pixels.
PIXEL_AREA = 0.5 * 0.5


def _ratio(a: int, b: int) -> float:
    return float(a) / float(b) if b else float("nan")


def pixel_overlap(values: np.ndarray, targets: np.ndarray) -> dict[str, int]:
    """
    Overlap counts between rendered values and reference targets:

    - `noa`: non-overlapping samples (value != target)
    - `oa`: samples non-zero in both
    - `joint`: samples non-zero in either
    - `ref`: samples non-zero in the reference
    """
    values = np.asarray(values).reshape(-1)
    targets = np.asarray(targets).reshape(-1)
    if values.shape != targets.shape:
        raise ValueError("values and targets differ in length")
    v = values != 0
    t = targets != 0
    return {
        "noa": int(np.count_nonzero(values != targets)),
        "oa": int(np.count_nonzero(v & t)),
        "joint": int(np.count_nonzero(v | t)),
        "ref": int(np.count_nonzero(t)),
    }


def vertex_statistics(values: np.ndarray, targets: np.ndarray) -> dict[str, int]:
    """Vertices off target, and how many renders they missed (absolute and signed)."""
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    targets = np.asarray(targets, dtype=np.float64).reshape(-1)
    d = (values - targets)[values != targets] / 2.0
    return {
        "missed": int(d.size),
        "wrong_renders": int(np.sum(np.abs(d))),
        "sum": int(np.sum(d)),
    }


def measure_registration(
    engine: MultiFragmentRegistration,
    observer: DefaultObserver,
    stages: Sequence[tuple[int, int]] = (),
) -> dict[str, Any]:
    """
    Final-state report of a registration.

    `stages` lists (iterations, rendered images) of each schedule stage. Counters and
    timers are read before the final state is evaluated, so the report excludes the
    renders and metric evaluations made while measuring.
    """
    iterations = observer.iterations
    rendered_count = observer.rendered_count
    rendering_time = observer.rendering_time
    metric_count = observer.metric_count
    metric_time = observer.metric_time
    registration_time = observer.registration_time

    values = engine.get_values()
    targets = engine.get_target_values()
    overlap = pixel_overlap(values, targets)
    vstats = vertex_statistics(engine.get_vertex_values(), engine.get_target_vertex_values())
    n_vertices = engine.mesh.n_vertices if engine.mesh is not None else 0

    return {
        "noa": {
            "pixels": overlap["noa"],
            "area": overlap["noa"] * PIXEL_AREA,
            "n": int(values.size),
            "components": int(engine.get_standardized_shape_params().size),
        },
        "oa": {"pixels": overlap["oa"], "area": overlap["oa"] * PIXEL_AREA, "ratio": _ratio(overlap["noa"], overlap["oa"])},
        "joint": {
            "pixels": overlap["joint"],
            "area": overlap["joint"] * PIXEL_AREA,
            "ratio": _ratio(overlap["noa"], overlap["joint"]),
        },
        "ref": {"pixels": overlap["ref"], "area": overlap["ref"] * PIXEL_AREA, "ratio": _ratio(overlap["noa"], overlap["ref"])},
        "vertices": {**vstats, "vertices": n_vertices},
        "iterations": {"stages": [int(s[0]) for s in stages], "sum": iterations},
        "images": {"stages": [int(s[1]) for s in stages], "overall": rendered_count},
        "rendering": {
            "time": rendering_time,
            "count": rendered_count,
            "time_per_unit": rendering_time / rendered_count if rendered_count else 0.0,
        },
        "metric": {
            "time": metric_time,
            "count": metric_count,
            "time_per_unit": metric_time / metric_count if metric_count else 0.0,
        },
        "time": {
            "overhead": registration_time - (metric_time + rendering_time),
            "overall": registration_time,
        },
        "length": {"final": float(engine.get_bounding_box_size()[2])},
    }


def write_measurement_xml(path: Path, report: dict[str, Any]) -> Path:
    """One element per report section, scalar entries as attributes."""
    root = ET.Element("measurement")
    for section, entries in report.items():
        attrs: dict[str, str] = {}
        for key, value in entries.items():
            if isinstance(value, (list, tuple)):
                for i, v in enumerate(value):
                    attrs[f"stage{i}"] = str(v)
            else:
                attrs[key] = str(value)
        ET.SubElement(root, section, attrs)
    ET.indent(root)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
    logger.info("Wrote %s", path)
    return path
