import json

import numpy as np
import pytest

from refracam.config import DEFAULT_NOISE_LEVELS, parse_experiment_config
from refracam.core.geometry import Rigid3, normalize, rotation_angle_deg
from refracam.estimators.two_view import generalized_epipolar_error, rays_from_virtual_cameras
from refracam.eval.refrac_rel_pose import (
    REPORT_COLUMNS,
    DatasetGenerationError,
    estimate_relative_pose,
    evaluate,
    generate_random_2d2d_points,
    random_cam2_from_cam1,
    random_flatport_normal,
    relative_pose_error,
    report_basename,
    run_experiment,
)
from refracam.scene.camera import Camera


def _scenario_camera() -> Camera:
    cam = Camera(camera_id=1, width=1113, height=835)
    cam.set_model_id_from_name("PINHOLE")
    assert cam.set_params(np.array([340.514, 340.514, 556.5, 417.5]))
    cam.set_refrac_model_id_from_name("FLATPORT")
    n = normalize(np.array([0.02, -0.01, 1.0]))
    assert cam.set_refrac_params(np.array([n[0], n[1], n[2], 0.05, 0.02, 1.0, 1.52, 1.334]))
    return cam


def _experiment_dict(**overrides):
    data = {
        "schema_version": "refracam.experiment.v0",
        "camera": {
            "model": "PINHOLE",
            "width": 1113,
            "height": 835,
            "params": [340.514, 340.514, 556.5, 417.5],
            "refrac_model": "FLATPORT",
            "refrac_params": [0.0, 0.0, 1.0, 0.05, 0.02, 1.0, 1.52, 1.334],
        },
        "noise_levels": [0.0, 1.0],
        "num_points": 40,
        "num_trials": 2,
        "seed": 7,
    }
    data.update(overrides)
    return data


def test_random_pose_ranges():
    rng = np.random.default_rng(0)
    for _ in range(50):
        pose = random_cam2_from_cam1(rng)
        assert abs(pose.translation[0]) <= 1.0
        assert np.all(np.abs(pose.translation[1:]) <= 0.2)
        assert pose.rotvec().shape == (3,)
        n = random_flatport_normal(rng)
        assert abs(np.linalg.norm(n) - 1.0) < 1e-12
        assert n[2] > 0.9


def test_generate_points_noise_free_is_consistent():
    cam = _scenario_camera()
    rng = np.random.default_rng(1)
    gt = Rigid3.from_euler(0.1, -0.05, 0.02, np.array([0.5, 0.1, -0.05]))
    data = generate_random_2d2d_points(cam, 50, gt, rng, noise_level=0.0, inlier_ratio=0.6)

    assert data.num_points == 50
    assert data.num_inliers == 30
    assert len(data.virtual_cameras1) == len(data.virtual_from_reals2) == 50
    assert np.all(data.points2D2_refrac[: data.num_inliers, 0] >= 0.0)
    assert np.all(data.points2D2_refrac[: data.num_inliers, 0] <= cam.width)
    assert np.all(data.points2D2_refrac[: data.num_inliers, 1] >= 0.0)
    assert np.all(data.points2D2_refrac[: data.num_inliers, 1] <= cam.height)

    # Noise-free inliers: the refracted rays rebuilt from the virtual cameras are coplanar.
    c1, d1, _ = rays_from_virtual_cameras(data.points2D1_refrac, data.virtual_cameras1, data.virtual_from_reals1)
    c2, d2, _ = rays_from_virtual_cameras(data.points2D2_refrac, data.virtual_cameras2, data.virtual_from_reals2)
    err = generalized_epipolar_error(gt.rotation, gt.translation, c1, d1, c2, d2)
    assert np.max(np.abs(err[: data.num_inliers])) < 1e-9
    assert np.median(np.abs(err[data.num_inliers :])) > 1e-3


def test_generate_points_is_reproducible():
    cam = _scenario_camera()
    gt = Rigid3.from_euler(0.0, 0.1, 0.0, np.array([0.4, 0.0, 0.0]))
    a = generate_random_2d2d_points(cam, 20, gt, np.random.default_rng(5), noise_level=0.5)
    b = generate_random_2d2d_points(cam, 20, gt, np.random.default_rng(5), noise_level=0.5)
    assert np.array_equal(a.points2D1, b.points2D1)
    assert np.array_equal(a.points2D2_refrac, b.points2D2_refrac)


def test_generate_points_gives_up_after_max_attempts():
    cam = _scenario_camera()
    gt = Rigid3.from_euler(0.0, 0.0, 0.0, np.array([0.3, 0.0, 0.0]))
    with pytest.raises(DatasetGenerationError):
        generate_random_2d2d_points(cam, 10, gt, np.random.default_rng(0), max_attempts=3)
    # Every point lands behind the second camera.
    flipped = Rigid3(rotation=np.diag([1.0, -1.0, -1.0]), translation=np.zeros(3))
    with pytest.raises(DatasetGenerationError):
        generate_random_2d2d_points(cam, 5, flipped, np.random.default_rng(0), max_attempts=200)


def test_relative_pose_error():
    gt = Rigid3.from_euler(0.0, 0.0, 0.0, np.array([1.0, 0.0, 0.0]))
    est = Rigid3.from_rotvec(np.array([0.0, np.deg2rad(2.0), 0.0]), np.array([-2.0, 0.0, 0.0]))

    calibrated = relative_pose_error(gt, est, refractive=False)
    assert calibrated.rotation_deg == pytest.approx(2.0)
    assert calibrated.angular_deg == pytest.approx(0.0, abs=1e-6)
    assert calibrated.position == 0.0 and calibrated.scale == 0.0

    refractive = relative_pose_error(gt, gt, refractive=True)
    assert refractive.rotation_deg == pytest.approx(0.0, abs=1e-6)
    assert refractive.position == pytest.approx(0.0)

    scaled = Rigid3(rotation=gt.rotation, translation=np.array([1.5, 0.0, 0.0]))
    err = relative_pose_error(gt, scaled, refractive=True)
    assert err.scale == pytest.approx(0.5)
    assert err.position == pytest.approx(0.5)

    failed = relative_pose_error(gt, Rigid3.identity(), refractive=False)
    assert failed.angular_deg == 90.0


def test_estimate_relative_pose_accepts_custom_estimator():
    from refracam.estimators.two_view import TwoViewGeometry

    cam = _scenario_camera()
    gt = Rigid3.from_euler(0.0, 0.05, 0.0, np.array([0.4, 0.0, 0.0]))
    data = generate_random_2d2d_points(cam, 10, gt, np.random.default_rng(0))
    calls = []

    def oracle(*args):
        calls.append(len(args))
        matches = args[-2]
        return TwoViewGeometry(cam2_from_cam1=gt, inlier_matches=matches)

    pose, n_inl = estimate_relative_pose(cam, data, refractive=True, estimator=oracle)
    assert pose is gt and n_inl == 10
    pose, n_inl = estimate_relative_pose(cam, data, refractive=False, estimator=oracle)
    assert n_inl == 10
    assert calls == [8, 6]


@pytest.mark.integration
@pytest.mark.parametrize(
    "rvec,tvec",
    [([0.05, -0.1, 0.08], [0.7, 0.1, -0.1]), ([-0.2, 0.15, 0.1], [-0.9, -0.15, 0.2])],
)
def test_noise_free_scenario_recovers_pose(rvec, tvec):
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    gt = Rigid3.from_rotvec(np.array(rvec), np.array(tvec))
    data = generate_random_2d2d_points(cam, 2000, gt, np.random.default_rng(0), noise_level=0.0, inlier_ratio=1.0)
    for refractive in (False, True):
        est, n_inl = estimate_relative_pose(cam, data, refractive=refractive)
        assert rotation_angle_deg(gt.rotation @ est.rotation.T) < 0.1
        assert n_inl / data.num_points > 0.99
        if refractive:
            assert relative_pose_error(gt, est, refractive=True).position < 1e-2


@pytest.mark.integration
@pytest.mark.parametrize("seed", [3, 101, 105])
def test_outliers_are_rejected(seed):
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    num_points = 2000
    rng = np.random.default_rng(seed)
    gt = random_cam2_from_cam1(rng)
    data = generate_random_2d2d_points(cam, num_points, gt, rng, inlier_ratio=0.5)
    expected = num_points // 2
    for refractive in (False, True):
        est, n_inl = estimate_relative_pose(cam, data, refractive=refractive)
        assert abs(n_inl - expected) <= 0.05 * expected
        err = relative_pose_error(gt, est, refractive=refractive)
        assert err.rotation_deg < 0.1
        assert err.angular_deg < 2.0
        if refractive:
            assert err.position < 2e-2


@pytest.mark.integration
@pytest.mark.parametrize("seed", [27, 101, 105])
def test_noisy_refractive_baseline_stays_near_ground_truth(seed):
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    rng = np.random.default_rng(seed)
    gt = random_cam2_from_cam1(rng)
    data = generate_random_2d2d_points(cam, 100, gt, rng, noise_level=0.2)
    est, _n_inl = estimate_relative_pose(cam, data, refractive=True)
    ratio = np.linalg.norm(est.translation) / np.linalg.norm(gt.translation)
    assert 0.5 < ratio < 2.0


@pytest.mark.integration
def test_refractive_errors_stay_bounded_over_noise_levels():
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    results = evaluate(cam, DEFAULT_NOISE_LEVELS, 100, 20, 1.0, np.random.default_rng(0), verbose=False)
    for r in results:
        assert r.position_error_refrac_mean < 1.0, r.noise_level
        assert r.scale_error_mean < 1.0, r.noise_level
        assert r.inlier_ratio_refrac_mean > 0.8, r.noise_level


@pytest.mark.integration
def test_errors_grow_with_noise():
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    # Same seed per level: identical poses and samples, only the noise amplitude changes.
    results = [
        evaluate(cam, [noise], 200, 5, 1.0, np.random.default_rng(11), depth_range=(0.5, 4.0), verbose=False)[0]
        for noise in DEFAULT_NOISE_LEVELS
    ]
    for metric in (
        "rot_error_mean",
        "angular_error_mean",
        "rot_error_refrac_mean",
        "position_error_refrac_mean",
        "scale_error_mean",
    ):
        values = [getattr(r, metric) for r in results]
        # Up to Monte-Carlo jitter between neighbouring levels.
        assert all(b >= 0.9 * a for a, b in zip(values, values[1:])), (metric, values)
    assert results[0].position_error_refrac_mean < 1e-3
    assert results[-1].position_error_refrac_mean > results[0].position_error_refrac_mean


def test_run_experiment_writes_reports(tmp_path):
    pytest.importorskip("cv2")
    config = parse_experiment_config(_experiment_dict(inlier_ratios=[1.0, 0.5], randomize_interface_normal=True))
    paths = run_experiment(config, tmp_path, verbose=False)

    names = sorted(p.name for p in paths)
    assert names == sorted(
        [
            "eval_refrac_rel_pose_num_points_40_inlier_ratio_1.txt",
            "eval_refrac_rel_pose_num_points_40_inlier_ratio_1.json",
            "eval_refrac_rel_pose_num_points_40_inlier_ratio_0.5.txt",
            "eval_refrac_rel_pose_num_points_40_inlier_ratio_0.5.json",
        ]
    )

    lines = (tmp_path / f"{report_basename(40, 1.0)}.txt").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "# " + " ".join(REPORT_COLUMNS)
    assert len(lines) == 3
    assert [float(v) for v in lines[2].split()][0] == 1.0
    assert all(len(line.split()) == len(REPORT_COLUMNS) for line in lines[1:])

    report = json.loads((tmp_path / f"{report_basename(40, 0.5)}.json").read_text(encoding="utf-8"))
    assert report["inlier_ratio"] == 0.5
    assert len(report["results"]) == 2
    assert report["camera"]["refrac_model"] == "FLATPORT"
    # The randomized normal replaced the configured one.
    assert report["camera"]["refrac_params"][:3] != [0.0, 0.0, 1.0]


def test_evaluate_prints_progress(capsys):
    pytest.importorskip("cv2")
    cam = _scenario_camera()
    evaluate(cam, [0.0], 30, 1, 1.0, np.random.default_rng(0))
    out = capsys.readouterr().out
    assert "Noise level: 0" in out
    assert "Pose error refrac" in out
