from refracam.config import (
    CameraConfig,
    ConfigValidationError,
    ExperimentConfig,
    build_camera,
    load_experiment_config,
    parse_experiment_config,
)
from refracam.core.geometry import Ray3D, Rigid3
from refracam.eval.refrac_rel_pose import run_experiment
from refracam.scene.camera import Camera
from refracam.sensor.models import CameraModelError, CameraModelId
from refracam.sensor.refraction import RefractionModelId

__all__ = [
    "Camera",
    "CameraConfig",
    "CameraModelError",
    "CameraModelId",
    "ConfigValidationError",
    "ExperimentConfig",
    "Ray3D",
    "RefractionModelId",
    "Rigid3",
    "build_camera",
    "load_experiment_config",
    "parse_experiment_config",
    "run_experiment",
]
