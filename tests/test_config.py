import json

import numpy as np
import pytest

from refracam.config import (
    DEFAULT_NOISE_LEVELS,
    ConfigValidationError,
    build_camera,
    load_experiment_config,
    parse_camera_config,
    parse_experiment_config,
)


def _camera_dict(**overrides):
    data = {
        "model": "PINHOLE",
        "width": 1113,
        "height": 835,
        "params": [340.514, 340.514, 556.5, 417.5],
        "refrac_model": "FLATPORT",
        "refrac_params": [0.0, 0.0, 1.0, 0.05, 0.02, 1.0, 1.52, 1.334],
    }
    data.update(overrides)
    return data


def test_parse_experiment_config_defaults():
    cfg = parse_experiment_config({"schema_version": "refracam.experiment.v0", "camera": _camera_dict()})
    assert cfg.noise_levels == DEFAULT_NOISE_LEVELS
    assert cfg.num_points == 100
    assert cfg.num_trials == 20
    assert cfg.inlier_ratios == (1.0,)
    assert cfg.depth_range == (0.5, 10.0)
    assert cfg.max_error_px == 4.0
    assert cfg.camera.refrac_model == "FLATPORT"


def test_build_camera_from_config():
    cam = build_camera(parse_camera_config(_camera_dict(model="pinhole", camera_id=3)))
    assert cam.camera_id == 3
    assert cam.model_name == "PINHOLE"
    assert cam.is_refractive
    assert np.allclose(cam.refraction_axis(), [0.0, 0.0, 1.0])

    plain = build_camera(parse_camera_config(_camera_dict(refrac_model=None)))
    assert not plain.is_refractive


@pytest.mark.parametrize(
    "overrides",
    [
        {"model": "KANNALA"},
        {"params": [340.514, 556.5, 417.5]},
        {"params": [-340.514, 340.514, 556.5, 417.5]},
        {"width": 0},
        {"refrac_model": "BOWLPORT"},
        {"refrac_params": [0.0, 0.0, 1.0, 0.05]},
        {"refrac_model": "DOMEPORT", "refrac_params": [0.5, 0.0, 0.0, 0.1, 0.01, 1.0, 1.49, 1.334]},
    ],
)
def test_parse_experiment_config_rejects_bad_camera(overrides):
    with pytest.raises(ConfigValidationError):
        parse_experiment_config({"schema_version": "refracam.experiment.v0", "camera": _camera_dict(**overrides)})


@pytest.mark.parametrize(
    "overrides",
    [
        {"schema_version": "refracam.experiment.v1"},
        {"noise_levels": []},
        {"noise_levels": [0.0, -1.0]},
        {"inlier_ratios": [1.5]},
        {"num_trials": 0},
        {"depth_range": [2.0, 1.0]},
        {"translation_range": [0.0, 0.0, 0.0]},
        {"max_error_px": 0.0},
    ],
)
def test_parse_experiment_config_rejects_bad_values(overrides):
    data = {"schema_version": "refracam.experiment.v0", "camera": _camera_dict()}
    data.update(overrides)
    with pytest.raises(ConfigValidationError):
        parse_experiment_config(data)


def test_randomized_normal_requires_flatport():
    data = {
        "schema_version": "refracam.experiment.v0",
        "camera": _camera_dict(refrac_model=None),
        "randomize_interface_normal": True,
    }
    with pytest.raises(ConfigValidationError):
        parse_experiment_config(data)


def test_load_experiment_config(tmp_path):
    path = tmp_path / "experiment.json"
    path.write_text(
        json.dumps(
            {
                "schema_version": "refracam.experiment.v0",
                "camera": _camera_dict(),
                "noise_levels": [0, 0.5],
                "inlier_ratios": [1.0, 0.5],
                "seed": 12,
            }
        ),
        encoding="utf-8",
    )
    cfg = load_experiment_config(path)
    assert cfg.noise_levels == (0.0, 0.5)
    assert cfg.inlier_ratios == (1.0, 0.5)
    assert cfg.seed == 12
