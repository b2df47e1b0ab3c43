from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from refracam.scene.camera import Camera
from refracam.sensor.models import CameraModelError, camera_model_from_name
from refracam.sensor.refraction import refraction_model_from_name

EXPERIMENT_SCHEMA_VERSION = "refracam.experiment.v0"

DEFAULT_NOISE_LEVELS: tuple[float, ...] = (0.0, 0.2, 0.5, 0.8, 1.2, 1.5, 1.8, 2.0)


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class CameraConfig:
    model: str
    width: int
    height: int
    params: tuple[float, ...]
    refrac_model: str | None = None
    refrac_params: tuple[float, ...] = ()
    camera_id: int = 1
    has_prior_focal_length: bool = False


@dataclass(frozen=True)
class ExperimentConfig:
    schema_version: str
    camera: CameraConfig
    noise_levels: tuple[float, ...] = DEFAULT_NOISE_LEVELS
    num_points: int = 100
    num_trials: int = 20
    inlier_ratios: tuple[float, ...] = (1.0,)
    seed: int = 0
    outlier_noise_std: float = 200.0
    depth_range: tuple[float, float] = (0.5, 10.0)
    max_error_px: float = 4.0
    randomize_interface_normal: bool = False
    rotation_range_deg: float = 15.0
    translation_range: tuple[float, float, float] = (1.0, 0.2, 0.2)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _float_list(value: Any, name: str) -> tuple[float, ...]:
    _require(isinstance(value, (list, tuple)), f"{name} must be a list of numbers")
    try:
        out = tuple(float(v) for v in value)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{name} must be a list of numbers") from None
    _require(all(np.isfinite(out)), f"{name} must be finite")
    return out


def parse_camera_config(data: dict[str, Any]) -> CameraConfig:
    _require(isinstance(data, dict), "camera must be an object")

    model = data.get("model")
    _require(isinstance(model, str) and bool(model), "camera.model is required")
    try:
        model_spec = camera_model_from_name(model)
    except CameraModelError as exc:
        raise ConfigValidationError(str(exc)) from None

    w_raw = data.get("width")
    h_raw = data.get("height")
    _require(w_raw is not None and h_raw is not None, "camera.width and camera.height are required")
    width = int(w_raw)
    height = int(h_raw)
    _require(width > 0 and height > 0, "camera.width and camera.height must be > 0")

    params = _float_list(data.get("params"), "camera.params")
    _require(
        len(params) == model_spec.num_params,
        f"camera.params must have {model_spec.num_params} values for {model_spec.name}",
    )

    refrac_model = data.get("refrac_model")
    refrac_params: tuple[float, ...] = ()
    if refrac_model is not None:
        _require(isinstance(refrac_model, str), "camera.refrac_model must be a string")
        try:
            refrac_spec = refraction_model_from_name(refrac_model)
        except CameraModelError as exc:
            raise ConfigValidationError(str(exc)) from None
        refrac_params = _float_list(data.get("refrac_params"), "camera.refrac_params")
        _require(
            len(refrac_params) == refrac_spec.num_params,
            f"camera.refrac_params must have {refrac_spec.num_params} values for {refrac_spec.name}",
        )
        refrac_model = refrac_spec.name

    return CameraConfig(
        model=model_spec.name,
        width=width,
        height=height,
        params=params,
        refrac_model=refrac_model,
        refrac_params=refrac_params,
        camera_id=int(data.get("camera_id", 1)),
        has_prior_focal_length=bool(data.get("has_prior_focal_length", False)),
    )


def build_camera(cfg: CameraConfig) -> Camera:
    camera = Camera(
        camera_id=cfg.camera_id,
        width=cfg.width,
        height=cfg.height,
        has_prior_focal_length=cfg.has_prior_focal_length,
    )
    camera.set_model_id_from_name(cfg.model)
    _require(camera.set_params(np.asarray(cfg.params)), f"invalid camera.params for {cfg.model}: {list(cfg.params)}")
    if cfg.refrac_model is not None:
        camera.set_refrac_model_id_from_name(cfg.refrac_model)
        _require(
            camera.set_refrac_params(np.asarray(cfg.refrac_params)),
            f"invalid camera.refrac_params for {cfg.refrac_model}: {list(cfg.refrac_params)}",
        )
    return camera


def load_camera_config(path: Path) -> CameraConfig:
    data = json.loads(path.read_text(encoding="utf-8"))
    return parse_camera_config(data)


def load_experiment_config(path: Path) -> ExperimentConfig:
    data = json.loads(path.read_text(encoding="utf-8"))
    return parse_experiment_config(data)


def parse_experiment_config(data: dict[str, Any]) -> ExperimentConfig:
    schema_version = data.get("schema_version")
    _require(schema_version == EXPERIMENT_SCHEMA_VERSION, f"schema_version must be {EXPERIMENT_SCHEMA_VERSION}")

    camera = parse_camera_config(data.get("camera", {}))
    # Range checks (e.g. negative focal length).
    build_camera(camera)

    noise_levels = _float_list(data.get("noise_levels", list(DEFAULT_NOISE_LEVELS)), "noise_levels")
    _require(len(noise_levels) > 0, "noise_levels must not be empty")
    _require(all(n >= 0.0 for n in noise_levels), "noise_levels must be >= 0")

    num_points = int(data.get("num_points", 100))
    num_trials = int(data.get("num_trials", 20))
    _require(num_points >= 5, "num_points must be >= 5")
    _require(num_trials >= 1, "num_trials must be >= 1")

    inlier_ratios = _float_list(data.get("inlier_ratios", [1.0]), "inlier_ratios")
    _require(len(inlier_ratios) > 0, "inlier_ratios must not be empty")
    _require(all(0.0 <= r <= 1.0 for r in inlier_ratios), "inlier_ratios must be in [0,1]")

    outlier_noise_std = float(data.get("outlier_noise_std", 200.0))
    _require(outlier_noise_std >= 0.0, "outlier_noise_std must be >= 0")

    depth_range = _float_list(data.get("depth_range", [0.5, 10.0]), "depth_range")
    _require(len(depth_range) == 2, "depth_range must be [min,max]")
    _require(0.0 < depth_range[0] < depth_range[1], "depth_range must satisfy 0 < min < max")

    max_error_px = float(data.get("max_error_px", 4.0))
    _require(max_error_px > 0.0, "max_error_px must be > 0")

    rotation_range_deg = float(data.get("rotation_range_deg", 15.0))
    _require(0.0 <= rotation_range_deg <= 180.0, "rotation_range_deg must be in [0,180]")

    translation_range = _float_list(data.get("translation_range", [1.0, 0.2, 0.2]), "translation_range")
    _require(len(translation_range) == 3, "translation_range must be [tx,ty,tz]")
    _require(all(t >= 0.0 for t in translation_range), "translation_range values must be >= 0")
    _require(any(t > 0.0 for t in translation_range), "translation_range must allow a non-zero baseline")

    randomize = bool(data.get("randomize_interface_normal", False))
    _require(
        not randomize or camera.refrac_model == "FLATPORT",
        "randomize_interface_normal requires a FLATPORT camera",
    )

    return ExperimentConfig(
        schema_version=schema_version,
        camera=camera,
        noise_levels=noise_levels,
        num_points=num_points,
        num_trials=num_trials,
        inlier_ratios=inlier_ratios,
        seed=int(data.get("seed", 0)),
        outlier_noise_std=outlier_noise_std,
        depth_range=(depth_range[0], depth_range[1]),
        max_error_px=max_error_px,
        randomize_interface_normal=randomize,
        rotation_range_deg=rotation_range_deg,
        translation_range=(translation_range[0], translation_range[1], translation_range[2]),
    )
