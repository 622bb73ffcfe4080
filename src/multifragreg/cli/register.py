from __future__ import annotations

from pathlib import Path

import numpy as np

from multifragreg.api.measurement import measure_registration, write_measurement_xml
from multifragreg.api.pose_io import load_perspective_csv, save_poses_xml
from multifragreg.core.geometry import CropWindow
from multifragreg.core.image_io import crop_image, load_gray_u8, mask_image, save_overlay
from multifragreg.core.mesh import load_mesh
from multifragreg.core.shape_model import load_shape_model
from multifragreg.meta import RegistrationConfig, load_registration_config
from multifragreg.observer import DefaultObserver
from multifragreg.registration import MultiFragmentRegistration
from multifragreg.render.cpu import SilhouetteRenderer


def check_config_files(cfg: RegistrationConfig) -> list[Path]:
    """Every file the config refers to; raises FileNotFoundError on the first missing one."""
    paths = [cfg.model.mesh]
    if cfg.model.shape is not None:
        paths.append(cfg.model.shape)
    for v in cfg.views:
        paths.extend([v.image, v.perspective])
        if v.mask is not None:
            paths.append(v.mask)
    for p in paths:
        if not p.exists():
            raise FileNotFoundError(f"Missing {p}")
    return paths


def build_registration(cfg: RegistrationConfig, observer: DefaultObserver | None = None) -> MultiFragmentRegistration:
    engine = MultiFragmentRegistration(
        cfg.setup.fragments,
        cfg.setup.views,
        SilhouetteRenderer,
        metric=cfg.setup.metric,
        vertex_metric=cfg.setup.vertex_metric,
        observer=observer,
    )
    mesh = load_mesh(cfg.model.mesh)
    if cfg.model.shape is not None:
        engine.set_shape_model(load_shape_model(cfg.model.shape, mean_vertices=mesh.vertices))
    engine.set_mesh(mesh)
    engine.enable_mirroring(cfg.model.mirror)

    perspectives = []
    sizes = []
    images = []
    masks = []
    crops = []
    for v in cfg.views:
        native = load_gray_u8(v.image)
        h_native, w_native = native.shape
        perspectives.append(load_perspective_csv(v.perspective, w_native, h_native))
        size = v.size_wh if v.size_wh is not None else (w_native, h_native)
        sizes.append(size)
        image = native if size == (w_native, h_native) else load_gray_u8(v.image, size)
        if v.binarize:
            image = mask_image(image)
        images.append(image)
        if v.crop_xywh_px is not None:
            crops.append(CropWindow(*v.crop_xywh_px))
        else:
            crops.append(crop_image(image) if v.auto_crop else None)
        masks.append(None if v.mask is None else load_gray_u8(v.mask, size))

    engine.set_perspectives(perspectives)
    engine.set_sizes(sizes)
    engine.set_crops(crops)
    engine.set_vertex_crops([v.crop_ndc for v in cfg.views])
    engine.set_angles([v.angle_deg for v in cfg.views])
    engine.set_images(images)
    if any(m is not None for m in masks):
        engine.set_masks(masks)
    engine.set_histogram_bins(cfg.setup.histogram_bins)

    engine.set_rotations([f.rotation for f in cfg.fragments])
    engine.set_translations([f.translation for f in cfg.fragments])
    engine.set_solver_params(cfg.solver.min_delta, cfg.solver.max_iter, cfg.solver.radius)
    return engine


def run_registration(config_path: Path, verbose: bool = False) -> list[Path]:
    """Run the configured schedule and write every requested output. Returns written paths."""
    cfg = load_registration_config(config_path)
    check_config_files(cfg)
    observer = DefaultObserver(images_path=cfg.output.images, verbose=verbose)
    engine = build_registration(cfg, observer)

    stages: list[tuple[int, int]] = []
    for stage in cfg.schedule:
        it0, im0 = observer.iterations, observer.rendered_count
        engine.optimize(stage.mode, stage.count)
        stages.append((observer.iterations - it0, observer.rendered_count - im0))

    written: list[Path] = []
    if cfg.output.poses is not None:
        written.append(save_poses_xml(cfg.output.poses, engine.get_rotations(), engine.get_translations()))
    if cfg.output.surface is not None:
        written.extend(engine.export_each_stl(cfg.output.surface, transform=cfg.output.transform, crop=cfg.output.crop))
    if cfg.output.measurement is not None:
        report = measure_registration(engine, observer, stages)
        written.append(write_measurement_xml(cfg.output.measurement, report))
    return written


def render_views(config_path: Path, out_dir: Path) -> list[Path]:
    """Render every view at the configured poses as `<view>.png` overlays."""
    cfg = load_registration_config(config_path)
    check_config_files(cfg)
    engine = build_registration(cfg)
    images = engine.get_images()
    references = engine.get_reference_images()
    written = []
    for i, (rendered, ref) in enumerate(zip(images, references)):
        written.append(save_overlay(Path(out_dir) / f"{i}.png", ref, np.asarray(rendered)))
    return written
