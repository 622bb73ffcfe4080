from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SCHEMA_VERSION = "multifragreg.config.v0"

METRIC_NAMES = ("pixel_difference", "masked_pixel_difference", "normalized_mutual_information", "squared_differences")
VERTEX_METRIC_NAMES = ("simple", "squared_differences")
MODE_NAMES = ("pose", "pose_shape", "pose_vertex", "pose_shape_vertex")


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class SetupConfig:
    fragments: int
    views: int
    metric: str = "pixel_difference"
    vertex_metric: str = "simple"
    histogram_bins: int = 64


@dataclass(frozen=True)
class ModelConfig:
    mesh: Path
    shape: Path | None = None
    mirror: bool = False


@dataclass(frozen=True)
class SolverConfig:
    min_delta: float = 1e-7
    max_iter: int = 150
    radius: float = 1.0


@dataclass(frozen=True)
class StageConfig:
    mode: str
    count: int = 0


@dataclass(frozen=True)
class ViewConfig:
    image: Path
    perspective: Path
    mask: Path | None = None
    size_wh: tuple[int, int] | None = None
    crop_xywh_px: tuple[int, int, int, int] | None = None
    crop_ndc: tuple[float, float, float, float] = (-1.0, -1.0, 2.0, 2.0)
    angle_deg: float = 0.0
    auto_crop: bool = False
    binarize: bool = False


@dataclass(frozen=True)
class FragmentConfig:
    rotation: tuple[float, float, float] = (0.0, 0.0, 0.0)
    translation: tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass(frozen=True)
class OutputConfig:
    poses: Path | None = None
    surface: Path | None = None
    transform: bool = True
    crop: bool = False
    measurement: Path | None = None
    images: Path | None = None


@dataclass(frozen=True)
class RegistrationConfig:
    schema_version: str
    setup: SetupConfig
    model: ModelConfig
    solver: SolverConfig
    schedule: tuple[StageConfig, ...]
    views: tuple[ViewConfig, ...]
    fragments: tuple[FragmentConfig, ...]
    output: OutputConfig

    def view(self, fragment: int, view: int) -> ViewConfig:
        return self.views[fragment * self.setup.views + view]


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _path(value: Any, base_dir: Path) -> Path:
    p = Path(str(value))
    return p if p.is_absolute() else base_dir / p


def _opt_path(value: Any, base_dir: Path) -> Path | None:
    return None if value is None else _path(value, base_dir)


def _vec3(value: Any, name: str) -> tuple[float, float, float]:
    _require(isinstance(value, (list, tuple)) and len(value) == 3, f"{name} must be [x,y,z]")
    return float(value[0]), float(value[1]), float(value[2])


def load_registration_config(path: Path) -> RegistrationConfig:
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    return parse_registration_config(data, base_dir=path.resolve().parent)


def parse_registration_config(data: dict[str, Any], base_dir: Path | None = None) -> RegistrationConfig:
    """
    Validate a registration description and resolve its file references.

    Relative paths are resolved against `base_dir` (the config file directory when
    loaded from disk, the current directory otherwise).
    """
    base_dir = Path(".") if base_dir is None else Path(base_dir)

    schema_version = data.get("schema_version")
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    setup_raw = data.get("setup", {})
    n_frag_raw = setup_raw.get("fragments")
    n_view_raw = setup_raw.get("views")
    _require(n_frag_raw is not None and n_view_raw is not None, "setup.fragments and setup.views are required")
    n_frag = int(n_frag_raw)
    n_view = int(n_view_raw)
    _require(n_frag >= 1, "setup.fragments must be >= 1")
    _require(n_view >= 1, "setup.views must be >= 1")

    metric = str(setup_raw.get("metric", "pixel_difference"))
    _require(metric in METRIC_NAMES, f"setup.metric must be one of {METRIC_NAMES}")
    vertex_metric = str(setup_raw.get("vertex_metric", "simple"))
    _require(vertex_metric in VERTEX_METRIC_NAMES, f"setup.vertex_metric must be one of {VERTEX_METRIC_NAMES}")
    bins = int(setup_raw.get("histogram_bins", 64))
    _require(bins >= 2, "setup.histogram_bins must be >= 2")
    setup = SetupConfig(fragments=n_frag, views=n_view, metric=metric, vertex_metric=vertex_metric, histogram_bins=bins)

    model_raw = data.get("model", {})
    _require("mesh" in model_raw, "model.mesh is required")
    model = ModelConfig(
        mesh=_path(model_raw["mesh"], base_dir),
        shape=_opt_path(model_raw.get("shape"), base_dir),
        mirror=bool(model_raw.get("mirror", False)),
    )

    solver_raw = data.get("solver", {})
    solver = SolverConfig(
        min_delta=float(solver_raw.get("min_delta", 1e-7)),
        max_iter=int(solver_raw.get("max_iter", 150)),
        radius=float(solver_raw.get("radius", 1.0)),
    )
    _require(solver.min_delta >= 0.0, "solver.min_delta can't be negative")
    _require(solver.max_iter >= 1, "solver.max_iter must be >= 1")
    _require(solver.radius > 0.0, "solver.radius must be > 0")

    schedule_raw = data.get("schedule", [{"mode": "pose"}])
    _require(isinstance(schedule_raw, list) and len(schedule_raw) > 0, "schedule must be a non-empty list")
    stages: list[StageConfig] = []
    for st in schedule_raw:
        mode = str(st.get("mode"))
        _require(mode in MODE_NAMES, f"schedule mode must be one of {MODE_NAMES}, got {mode}")
        count = int(st.get("count", 0))
        _require(count >= 0, "schedule count must be >= 0")
        _require(count == 0 or "shape" in mode, f"schedule count only applies to shape modes, got {mode}")
        stages.append(StageConfig(mode=mode, count=count))
    if any("shape" in st.mode for st in stages):
        _require(model.shape is not None, "model.shape is required for shape modes")

    views_raw = data.get("views", [])
    _require(
        isinstance(views_raw, list) and len(views_raw) == n_frag * n_view,
        f"views must list fragments*views = {n_frag * n_view} entries",
    )
    views: list[ViewConfig] = []
    for i, v in enumerate(views_raw):
        _require("image" in v and "perspective" in v, f"views[{i}] needs image and perspective")
        size = v.get("size_wh")
        if size is not None:
            _require(isinstance(size, (list, tuple)) and len(size) == 2, f"views[{i}].size_wh must be [w,h]")
            size = (int(size[0]), int(size[1]))
            _require(size[0] > 0 and size[1] > 0, f"views[{i}].size_wh must be > 0")
        crop = v.get("crop_xywh_px")
        auto_crop = crop == "auto"
        if auto_crop:
            crop = None
        elif crop is not None:
            _require(isinstance(crop, (list, tuple)) and len(crop) == 4, f"views[{i}].crop_xywh_px must be [x,y,w,h]")
            crop = tuple(int(c) for c in crop)
            _require(crop[2] > 0 and crop[3] > 0, f"views[{i}] crop w/h must be > 0")
        crop_ndc = v.get("crop_ndc", [-1.0, -1.0, 2.0, 2.0])
        _require(isinstance(crop_ndc, (list, tuple)) and len(crop_ndc) == 4, f"views[{i}].crop_ndc must be [x,y,w,h]")
        views.append(
            ViewConfig(
                image=_path(v["image"], base_dir),
                perspective=_path(v["perspective"], base_dir),
                mask=_opt_path(v.get("mask"), base_dir),
                size_wh=size,
                crop_xywh_px=crop,
                crop_ndc=tuple(float(c) for c in crop_ndc),
                angle_deg=float(v.get("angle_deg", 0.0)),
                auto_crop=auto_crop,
                binarize=bool(v.get("binarize", False)),
            )
        )
    if metric == "masked_pixel_difference":
        _require(all(v.mask is not None for v in views), "masked_pixel_difference needs a mask for every view")

    fragments_raw = data.get("fragments", [{} for _ in range(n_frag)])
    _require(isinstance(fragments_raw, list) and len(fragments_raw) == n_frag, f"fragments must list {n_frag} entries")
    fragments = tuple(
        FragmentConfig(
            rotation=_vec3(f.get("rotation", [0.0, 0.0, 0.0]), f"fragments[{i}].rotation"),
            translation=_vec3(f.get("translation", [0.0, 0.0, 0.0]), f"fragments[{i}].translation"),
        )
        for i, f in enumerate(fragments_raw)
    )

    out_raw = data.get("output", {})
    output = OutputConfig(
        poses=_opt_path(out_raw.get("poses"), base_dir),
        surface=_opt_path(out_raw.get("surface"), base_dir),
        transform=bool(out_raw.get("transform", True)),
        crop=bool(out_raw.get("crop", False)),
        measurement=_opt_path(out_raw.get("measurement"), base_dir),
        images=_opt_path(out_raw.get("images"), base_dir),
    )

    return RegistrationConfig(
        schema_version=str(schema_version),
        setup=setup,
        model=model,
        solver=solver,
        schedule=tuple(stages),
        views=tuple(views),
        fragments=fragments,
        output=output,
    )
