from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Sequence

import numpy as np

from multifragreg.core.geometry import Perspective, as_vec3

logger = logging.getLogger(__name__)


def _to_finite_vec3(x: np.ndarray) -> np.ndarray:
    x = as_vec3(x)
    if not np.all(np.isfinite(x)):
        raise ValueError("non-finite values")
    return x


def load_csv_values(path: Path) -> np.ndarray:
    """Semicolon-delimited numbers (any number of rows) as a flat float array."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing {path}")
    values: list[float] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        for tok in line.split(";"):
            tok = tok.strip()
            if not tok:
                continue
            try:
                values.append(float(tok))
            except ValueError as exc:
                raise ValueError(f"{path}:{lineno}: not a number: {tok!r}") from exc
    return np.asarray(values, dtype=np.float64)


def load_perspective_csv(path: Path, width_px: int, height_px: int) -> Perspective:
    """A 3x4 projection matrix stored row-major as 12 semicolon-separated values."""
    return Perspective.from_values(load_csv_values(path), width_px, height_px)


def save_poses_xml(path: Path, rotations: Sequence[np.ndarray], translations: Sequence[np.ndarray]) -> Path:
    """
    Write one `<fragment>` per rigid body:

      <poses>
        <fragment>
          <rotation x=".." y=".." z=".."/>
          <translation x=".." y=".." z=".."/>
        </fragment>
      </poses>
    """
    if len(rotations) != len(translations):
        raise ValueError("rotations and translations differ in length")
    root = ET.Element("poses")
    for r, t in zip(rotations, translations):
        frag = ET.SubElement(root, "fragment")
        for tag, v in (("rotation", _to_finite_vec3(r)), ("translation", _to_finite_vec3(t))):
            ET.SubElement(frag, tag, {"x": repr(float(v[0])), "y": repr(float(v[1])), "z": repr(float(v[2]))})
    ET.indent(root)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
    logger.info("Wrote %s (%d fragments)", path, len(rotations))
    return path


def load_poses_xml(path: Path) -> tuple[list[np.ndarray], list[np.ndarray]]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing {path}")
    root = ET.parse(path).getroot()
    if root.tag != "poses":
        raise ValueError(f"{path}: expected <poses> root, got <{root.tag}>")
    rotations: list[np.ndarray] = []
    translations: list[np.ndarray] = []
    for frag in root.findall("fragment"):
        vecs = []
        for tag in ("rotation", "translation"):
            el = frag.find(tag)
            if el is None:
                raise ValueError(f"{path}: <fragment> without <{tag}>")
            try:
                vecs.append(_to_finite_vec3([float(el.attrib[k]) for k in ("x", "y", "z")]))
            except KeyError as exc:
                raise ValueError(f"{path}: <{tag}> missing attribute {exc}") from exc
        rotations.append(vecs[0])
        translations.append(vecs[1])
    return rotations, translations
