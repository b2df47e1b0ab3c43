"""
Monte-Carlo evaluation of two-view relative pose through a refractive housing.

Per noise level and trial:
  1) draw a ground-truth relative pose,
  2) synthesize correspondences by casting refracted rays from view 1 and projecting
     the 3D points into view 2 through the housing (outliers get large pixel noise),
  3) estimate the pose with the calibrated (pinhole) estimator on the plain pixels and
     with the generalized estimator on the refracted pixels + virtual cameras,
  4) compare both estimates with the ground truth.

The calibrated path only observes the translation direction; the refractive path also
observes the baseline length, so it additionally reports position and scale errors.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np

from refracam.config import ExperimentConfig, build_camera
from refracam.core.geometry import Rigid3, hnormalized, normalize, rotation_angle_deg
from refracam.estimators.two_view import (
    TwoViewGeometry,
    TwoViewGeometryOptions,
    estimate_calibrated_two_view_geometry,
    estimate_refractive_two_view_geometry,
)
from refracam.scene.camera import Camera

REPORT_COLUMNS: tuple[str, ...] = (
    "noise_level",
    "rot_error_mean",
    "rot_error_std",
    "angular_error_mean",
    "angular_error_std",
    "rot_error_refrac_mean",
    "rot_error_refrac_std",
    "angular_error_refrac_mean",
    "angular_error_refrac_std",
    "position_error_refrac_mean",
    "position_error_refrac_std",
    "scale_error_mean",
    "scale_error_std",
    "time",
    "time_refrac",
    "inlier_ratio_mean",
    "inlier_ratio_refrac_mean",
)


class DatasetGenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class PointsData:
    points2D1: np.ndarray  # (N,2) pinhole projection, refraction ignored
    points2D1_refrac: np.ndarray  # (N,2) through the housing
    points2D2: np.ndarray
    points2D2_refrac: np.ndarray
    virtual_cameras1: list[Camera]
    virtual_from_reals1: list[Rigid3]
    virtual_cameras2: list[Camera]
    virtual_from_reals2: list[Rigid3]
    cam2_from_cam1_gt: Rigid3
    num_inliers: int

    @property
    def num_points(self) -> int:
        return int(self.points2D1.shape[0])


@dataclass(frozen=True)
class PoseErrors:
    rotation_deg: float
    angular_deg: float
    position: float = 0.0
    scale: float = 0.0


@dataclass(frozen=True)
class NoiseLevelResult:
    noise_level: float
    gt_inlier_ratio: float
    num_trials: int
    rot_error_mean: float
    rot_error_std: float
    angular_error_mean: float
    angular_error_std: float
    rot_error_refrac_mean: float
    rot_error_refrac_std: float
    angular_error_refrac_mean: float
    angular_error_refrac_std: float
    position_error_refrac_mean: float
    position_error_refrac_std: float
    scale_error_mean: float
    scale_error_std: float
    time: float
    time_refrac: float
    inlier_ratio_mean: float
    inlier_ratio_refrac_mean: float


def random_cam2_from_cam1(
    rng: np.random.Generator,
    rotation_range_deg: float = 15.0,
    translation_range: tuple[float, float, float] = (1.0, 0.2, 0.2),
) -> Rigid3:
    a = np.deg2rad(float(rotation_range_deg))
    rx, ry, rz = (float(v) for v in rng.uniform(-a, a, size=3))
    t = np.array([rng.uniform(-h, h) for h in translation_range], dtype=np.float64)
    return Rigid3.from_euler(rx, ry, rz, t)


def random_flatport_normal(rng: np.random.Generator) -> np.ndarray:
    """Interface normal tilted away from +Z, as produced by an imperfectly mounted port."""
    n = np.array([rng.uniform(-0.3, 0.3), rng.uniform(-0.3, 0.3), rng.uniform(0.7, 1.3)], dtype=np.float64)
    return normalize(n)


def generate_random_2d2d_points(
    camera: Camera,
    num_points: int,
    cam2_from_cam1: Rigid3,
    rng: np.random.Generator,
    noise_level: float = 0.0,
    inlier_ratio: float = 1.0,
    *,
    depth_range: tuple[float, float] = (0.5, 10.0),
    outlier_noise_std: float = 200.0,
    max_attempts: int | None = None,
) -> PointsData:
    """
    Rejection-sample `num_points` correspondences visible through the housing in both
    views. The first floor(num_points * inlier_ratio) are inliers with N(0, noise_level)
    pixel noise, the rest get N(0, outlier_noise_std).
    """
    num_points = int(num_points)
    if num_points <= 0:
        raise ValueError("num_points must be > 0")
    if not 0.0 <= inlier_ratio <= 1.0:
        raise ValueError("inlier_ratio must be in [0,1]")
    if noise_level < 0.0:
        raise ValueError("noise_level must be >= 0")
    if max_attempts is None:
        max_attempts = 1000 * num_points

    num_inliers = int(num_points * float(inlier_ratio))
    w = float(camera.width)
    h = float(camera.height)
    d_min, d_max = float(depth_range[0]), float(depth_range[1])

    # Rows: points2D1, points2D1_refrac, points2D2, points2D2_refrac.
    pts = np.empty((4, num_points, 2), dtype=np.float64)
    cnt = 0
    attempts = 0
    while cnt < num_points:
        if attempts >= max_attempts:
            raise DatasetGenerationError(
                f"only {cnt}/{num_points} correspondences visible in both views after {attempts} samples"
            )
        attempts += 1

        p1_refrac = np.array([rng.uniform(0.5, w - 0.5), rng.uniform(0.5, h - 0.5)], dtype=np.float64)
        ray = camera.cam_from_img_refrac(p1_refrac)
        X1 = ray.at(rng.uniform(d_min, d_max))
        X2 = cam2_from_cam1.apply(X1)

        p2_refrac = camera.img_from_cam_refrac(X2)
        if not np.all(np.isfinite(p2_refrac)):
            continue
        if p2_refrac[0] < 0.0 or p2_refrac[0] > w or p2_refrac[1] < 0.0 or p2_refrac[1] > h:
            continue

        sample = np.stack(
            [
                camera.img_from_cam(hnormalized(X1)),
                p1_refrac,
                camera.img_from_cam(hnormalized(X2)),
                p2_refrac,
            ],
            axis=0,
        )
        sigma = float(noise_level) if cnt < num_inliers else float(outlier_noise_std)
        if sigma > 0.0:
            sample += rng.normal(0.0, sigma, size=sample.shape)
        pts[:, cnt, :] = sample
        cnt += 1

    virtual_cameras1, virtual_from_reals1 = camera.compute_virtuals(pts[1])
    virtual_cameras2, virtual_from_reals2 = camera.compute_virtuals(pts[3])
    return PointsData(
        points2D1=pts[0],
        points2D1_refrac=pts[1],
        points2D2=pts[2],
        points2D2_refrac=pts[3],
        virtual_cameras1=virtual_cameras1,
        virtual_from_reals1=virtual_from_reals1,
        virtual_cameras2=virtual_cameras2,
        virtual_from_reals2=virtual_from_reals2,
        cam2_from_cam1_gt=cam2_from_cam1,
        num_inliers=num_inliers,
    )


def estimate_relative_pose(
    camera: Camera,
    points_data: PointsData,
    refractive: bool,
    options: TwoViewGeometryOptions | None = None,
    estimator: Callable[..., TwoViewGeometry] | None = None,
) -> tuple[Rigid3, int]:
    """
    Run one estimator on one-to-one matches. `estimator` overrides the bundled one and
    must accept the same arguments as the default for the selected mode.
    """
    if options is None:
        options = TwoViewGeometryOptions()
    idx = np.arange(points_data.num_points, dtype=np.int64)
    matches = np.stack([idx, idx], axis=1)

    if not refractive:
        est = estimator if estimator is not None else estimate_calibrated_two_view_geometry
        geometry = est(camera, points_data.points2D1, camera, points_data.points2D2, matches, options)
    else:
        est = estimator if estimator is not None else estimate_refractive_two_view_geometry
        geometry = est(
            points_data.points2D1_refrac,
            points_data.virtual_cameras1,
            points_data.virtual_from_reals1,
            points_data.points2D2_refrac,
            points_data.virtual_cameras2,
            points_data.virtual_from_reals2,
            matches,
            options,
        )
    return geometry.cam2_from_cam1, geometry.num_inliers


def _direction_angle_deg(t_gt: np.ndarray, t_est: np.ndarray) -> float:
    n_gt = float(np.linalg.norm(t_gt))
    n_est = float(np.linalg.norm(t_est))
    if n_gt < 1e-15 or n_est < 1e-15:
        # No direction to compare (e.g. failed estimate with identity pose).
        return 90.0
    cos_theta = abs(float(t_gt @ t_est)) / (n_gt * n_est)
    return float(np.rad2deg(np.arccos(min(1.0, cos_theta))))


def relative_pose_error(cam2_from_cam1_gt: Rigid3, cam2_from_cam1_est: Rigid3, refractive: bool) -> PoseErrors:
    rotation_deg = rotation_angle_deg(cam2_from_cam1_gt.rotation @ cam2_from_cam1_est.rotation.T)
    angular_deg = _direction_angle_deg(cam2_from_cam1_gt.translation, cam2_from_cam1_est.translation)
    if not refractive:
        return PoseErrors(rotation_deg=rotation_deg, angular_deg=angular_deg)

    c_gt = cam2_from_cam1_gt.center()
    c_est = cam2_from_cam1_est.center()
    return PoseErrors(
        rotation_deg=rotation_deg,
        angular_deg=angular_deg,
        position=float(np.linalg.norm(c_gt - c_est)),
        scale=abs(float(np.linalg.norm(c_gt)) - float(np.linalg.norm(c_est))),
    )


def _mean_std(values: Sequence[float]) -> tuple[float, float]:
    v = np.asarray(values, dtype=np.float64)
    if v.size == 0:
        return float("nan"), float("nan")
    std = float(np.std(v, ddof=1)) if v.size > 1 else 0.0
    return float(np.mean(v)), std


def evaluate(
    camera: Camera,
    noise_levels: Sequence[float],
    num_points: int,
    num_trials: int,
    inlier_ratio: float,
    rng: np.random.Generator,
    *,
    options: TwoViewGeometryOptions | None = None,
    depth_range: tuple[float, float] = (0.5, 10.0),
    outlier_noise_std: float = 200.0,
    rotation_range_deg: float = 15.0,
    translation_range: tuple[float, float, float] = (1.0, 0.2, 0.2),
    verbose: bool = True,
) -> list[NoiseLevelResult]:
    if num_trials < 1:
        raise ValueError("num_trials must be >= 1")
    if options is None:
        options = TwoViewGeometryOptions()

    results: list[NoiseLevelResult] = []
    for noise in noise_levels:
        noise = float(noise)
        if verbose:
            print(f"Noise level: {noise:g}")

        datasets: list[PointsData] = []
        for _ in range(int(num_trials)):
            trial_rng = np.random.default_rng(int(rng.integers(0, 2**62)))
            cam2_from_cam1 = random_cam2_from_cam1(trial_rng, rotation_range_deg, translation_range)
            datasets.append(
                generate_random_2d2d_points(
                    camera,
                    num_points,
                    cam2_from_cam1,
                    trial_rng,
                    noise_level=noise,
                    inlier_ratio=inlier_ratio,
                    depth_range=depth_range,
                    outlier_noise_std=outlier_noise_std,
                )
            )

        errors: list[PoseErrors] = []
        ratios: list[float] = []
        t0 = time.perf_counter()
        for data in datasets:
            est, n_inl = estimate_relative_pose(camera, data, refractive=False, options=options)
            errors.append(relative_pose_error(data.cam2_from_cam1_gt, est, refractive=False))
            ratios.append(n_inl / data.num_points)
        elapsed = time.perf_counter() - t0

        errors_refrac: list[PoseErrors] = []
        ratios_refrac: list[float] = []
        t0 = time.perf_counter()
        for data in datasets:
            est, n_inl = estimate_relative_pose(camera, data, refractive=True, options=options)
            errors_refrac.append(relative_pose_error(data.cam2_from_cam1_gt, est, refractive=True))
            ratios_refrac.append(n_inl / data.num_points)
        elapsed_refrac = time.perf_counter() - t0

        rot_m, rot_s = _mean_std([e.rotation_deg for e in errors])
        ang_m, ang_s = _mean_std([e.angular_deg for e in errors])
        rot_r_m, rot_r_s = _mean_std([e.rotation_deg for e in errors_refrac])
        ang_r_m, ang_r_s = _mean_std([e.angular_deg for e in errors_refrac])
        pos_m, pos_s = _mean_std([e.position for e in errors_refrac])
        scale_m, scale_s = _mean_std([e.scale for e in errors_refrac])
        res = NoiseLevelResult(
            noise_level=noise,
            gt_inlier_ratio=float(inlier_ratio),
            num_trials=int(num_trials),
            rot_error_mean=rot_m,
            rot_error_std=rot_s,
            angular_error_mean=ang_m,
            angular_error_std=ang_s,
            rot_error_refrac_mean=rot_r_m,
            rot_error_refrac_std=rot_r_s,
            angular_error_refrac_mean=ang_r_m,
            angular_error_refrac_std=ang_r_s,
            position_error_refrac_mean=pos_m,
            position_error_refrac_std=pos_s,
            scale_error_mean=scale_m,
            scale_error_std=scale_s,
            time=elapsed,
            time_refrac=elapsed_refrac,
            inlier_ratio_mean=float(np.mean(ratios)),
            inlier_ratio_refrac_mean=float(np.mean(ratios_refrac)),
        )
        results.append(res)

        if verbose:
            print(
                f"Pose error in-air: rotation {rot_m:.4f} +/- {rot_s:.4f} deg"
                f" -- angular {ang_m:.4f} +/- {ang_s:.4f} deg"
                f" -- inlier ratio {res.inlier_ratio_mean:.3f} (gt {inlier_ratio:g})"
            )
            print(
                f"Pose error refrac: rotation {rot_r_m:.4f} +/- {rot_r_s:.4f} deg"
                f" -- position {pos_m:.4f} +/- {pos_s:.4f}"
                f" -- scale {scale_m:.4f} +/- {scale_s:.4f}"
                f" -- inlier ratio {res.inlier_ratio_refrac_mean:.3f} (gt {inlier_ratio:g})"
            )
    return results


def report_basename(num_points: int, inlier_ratio: float) -> str:
    return f"eval_refrac_rel_pose_num_points_{int(num_points)}_inlier_ratio_{float(inlier_ratio):g}"


def write_report_text(results: Sequence[NoiseLevelResult], out_path: Path) -> None:
    lines = ["# " + " ".join(REPORT_COLUMNS)]
    for r in results:
        lines.append(" ".join(f"{float(getattr(r, c)):.10g}" for c in REPORT_COLUMNS))
    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def write_report_json(report: dict[str, object], out_path: Path) -> None:
    out_path.write_text(json.dumps(report, indent=2, sort_keys=True), encoding="utf-8")


def run_experiment(config: ExperimentConfig, out_dir: Path, verbose: bool = True) -> list[Path]:
    """
    Run every configured inlier ratio and write one text + one JSON report per ratio.
    Returns the written paths.
    """
    out_dir = out_dir.resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(np.random.SeedSequence(int(config.seed)))
    camera = build_camera(config.camera)
    if config.randomize_interface_normal:
        refrac_params = camera.refrac_params.copy()
        refrac_params[:3] = random_flatport_normal(rng)
        if not camera.set_refrac_params(refrac_params):
            raise ValueError(f"randomized interface parameters are invalid: {refrac_params.tolist()}")
    if verbose:
        print(f"Camera: {camera.model_name} [{camera.params_to_string()}] {camera.width}x{camera.height}")
        if camera.is_refractive:
            print(f"Housing: {camera.refrac_model_name} [{camera.refrac_params_to_string()}]")

    options = TwoViewGeometryOptions(max_error=float(config.max_error_px))
    written: list[Path] = []
    for inlier_ratio in config.inlier_ratios:
        results = evaluate(
            camera,
            config.noise_levels,
            config.num_points,
            config.num_trials,
            inlier_ratio,
            rng,
            options=options,
            depth_range=config.depth_range,
            outlier_noise_std=config.outlier_noise_std,
            rotation_range_deg=config.rotation_range_deg,
            translation_range=config.translation_range,
            verbose=verbose,
        )

        base = report_basename(config.num_points, inlier_ratio)
        txt_path = out_dir / f"{base}.txt"
        json_path = out_dir / f"{base}.json"
        write_report_text(results, txt_path)
        write_report_json(
            {
                "camera": {
                    "model": camera.model_name,
                    "width": camera.width,
                    "height": camera.height,
                    "params": camera.params.tolist(),
                    "refrac_model": camera.refrac_model_name or None,
                    "refrac_params": camera.refrac_params.tolist(),
                },
                "seed": int(config.seed),
                "num_points": int(config.num_points),
                "num_trials": int(config.num_trials),
                "inlier_ratio": float(inlier_ratio),
                "max_error_px": float(config.max_error_px),
                "results": [asdict(r) for r in results],
            },
            json_path,
        )
        for p in (txt_path, json_path):
            if verbose:
                print(f"Wrote {p}")
            written.append(p)
    return written
