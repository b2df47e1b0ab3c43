"""
Robust two-view relative pose.

Two call shapes:

- calibrated: pixels of two pinhole-like cameras, essential matrix + RANSAC (OpenCV),
  then a robust refinement of rotation and translation direction on the inliers;
- refractive: per-observation virtual cameras (see `Camera.compute_virtual`). Each
  observation becomes a ray (virtual center, direction) in its real camera frame and the
  pose is scored with the generalized epipolar constraint, which makes the baseline
  length observable.

Estimation failures never raise: they come back as `success=False` with a best-effort
pose and whatever inliers were found.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from refracam.core.geometry import Rigid3, hnormalized, homogeneous, normalize
from refracam.scene.camera import Camera


@dataclass(frozen=True)
class TwoViewGeometryOptions:
    max_error: float = 4.0  # px
    confidence: float = 0.999
    min_num_inliers: int = 15
    refine: bool = True
    # Inflation of `max_error` while initializing the refractive pose with a central
    # model, which ignores the spread of the virtual centers.
    central_init_slack: float = 4.0
    # Baseline lengths searched, in multiples of the RMS spread of the virtual centers.
    scale_search_range: tuple[float, float] = (0.1, 1000.0)
    num_scale_samples: int = 25
    max_refine_iterations: int = 10
    max_nfev: int = 200


@dataclass(frozen=True)
class TwoViewGeometry:
    cam2_from_cam1: Rigid3
    inlier_matches: np.ndarray  # (K,2) int
    success: bool = True

    @property
    def num_inliers(self) -> int:
        return int(self.inlier_matches.shape[0])


def _failed(cam2_from_cam1: Rigid3 | None = None) -> TwoViewGeometry:
    return TwoViewGeometry(
        cam2_from_cam1=cam2_from_cam1 if cam2_from_cam1 is not None else Rigid3.identity(),
        inlier_matches=np.zeros((0, 2), dtype=np.int64),
        success=False,
    )


def _as_matches(matches: np.ndarray) -> np.ndarray:
    return np.asarray(matches, dtype=np.int64).reshape(-1, 2)


def _essential_ransac(
    x1: np.ndarray, x2: np.ndarray, threshold: float, options: TwoViewGeometryOptions
) -> tuple[np.ndarray, np.ndarray, np.ndarray] | None:
    """
    Essential matrix RANSAC on normalized coordinates (N,2).
    Returns (R, t_unit, inlier_mask) or None.
    """
    import cv2  # type: ignore

    x1 = np.ascontiguousarray(x1, dtype=np.float64).reshape(-1, 2)
    x2 = np.ascontiguousarray(x2, dtype=np.float64).reshape(-1, 2)
    if x1.shape[0] < 5:
        return None
    try:
        E, mask = cv2.findEssentialMat(
            x1,
            x2,
            focal=1.0,
            pp=(0.0, 0.0),
            method=cv2.RANSAC,
            prob=float(options.confidence),
            threshold=float(threshold),
        )
    except cv2.error:
        return None
    if E is None or mask is None or E.shape[0] < 3:
        return None
    # Several stacked solutions are possible; RANSAC keeps the best one first.
    E = np.asarray(E[:3], dtype=np.float64)
    inliers = mask.reshape(-1) > 0
    if int(np.sum(inliers)) < 5:
        return None

    _n, rot, t, _mask, _points = cv2.recoverPose(
        E, x1[inliers], x2[inliers], cameraMatrix=np.eye(3), distanceThresh=1e9
    )
    return np.asarray(rot, dtype=np.float64), np.asarray(t, dtype=np.float64).reshape(3), inliers


def rays_from_virtual_cameras(
    points: np.ndarray, virtual_cameras: Sequence[Camera], virtual_from_reals: Sequence[Rigid3]
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Observations seen through virtual cameras -> rays in the real camera frame.
    Returns (centers (N,3), unit directions (N,3), focal lengths (N,)).
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if not (points.shape[0] == len(virtual_cameras) == len(virtual_from_reals)):
        raise ValueError("points, virtual cameras and transforms must have the same length")

    n = points.shape[0]
    centers = np.empty((n, 3), dtype=np.float64)
    dirs = np.empty((n, 3), dtype=np.float64)
    focal = np.empty((n,), dtype=np.float64)
    for i, (pt, cam, virtual_from_real) in enumerate(zip(points, virtual_cameras, virtual_from_reals)):
        xy = cam.cam_from_img(pt)
        real_from_virtual = virtual_from_real.inverse()
        centers[i] = real_from_virtual.translation
        dirs[i] = real_from_virtual.rotation @ np.array([xy[0], xy[1], 1.0])
        focal[i] = cam.mean_focal_length()
    return centers, normalize(dirs), focal


def generalized_epipolar_error(
    rot: np.ndarray, t: np.ndarray, c1: np.ndarray, d1: np.ndarray, c2: np.ndarray, d2: np.ndarray
) -> np.ndarray:
    """
    Signed sine of the angle between ray 2 and the plane through the camera-2 ray center
    that contains ray 1 (after mapping ray 1 into camera 2 with x2 = R x1 + t).
    Zero for every correspondence consistent with the pose. Directions must be unit.
    """
    o = c1 @ rot.T + t
    e = d1 @ rot.T
    n = np.cross(e, o - c2)
    n_norm = np.linalg.norm(n, axis=-1)
    return np.sum(n * d2, axis=-1) / np.maximum(n_norm, 1e-15)


def _tangent_basis(u: np.ndarray) -> np.ndarray:
    """(2,3) orthonormal basis of the plane orthogonal to the unit vector `u`."""
    a = np.array([1.0, 0.0, 0.0]) if abs(float(u[0])) < 0.9 else np.array([0.0, 1.0, 0.0])
    b1 = normalize(np.cross(u, a))
    b2 = np.cross(u, b1)
    return np.stack([b1, b2], axis=0)


def _refine_generalized_pose(
    rot0: np.ndarray,
    t0: np.ndarray,
    c1: np.ndarray,
    d1: np.ndarray,
    c2: np.ndarray,
    d2: np.ndarray,
    focal: np.ndarray,
    options: TwoViewGeometryOptions,
    scale_bounds: tuple[float, float] | None = None,
) -> tuple[np.ndarray, np.ndarray, float]:
    """
    Robust least squares on the generalized epipolar error.

    The translation is parameterized as s * u: u by two tangent coordinates around the
    initial direction, s by its logarithm. Without `scale_bounds` the length stays |t0|;
    with them, s is free but bounded to [lo, hi].
    Returns (R, t, cost).
    """
    from scipy.optimize import least_squares  # type: ignore
    from scipy.spatial.transform import Rotation as R  # type: ignore

    t0 = np.asarray(t0, dtype=np.float64).reshape(3)
    s0 = float(np.linalg.norm(t0))
    u0 = t0 / s0
    basis = _tangent_basis(u0)

    def unpack(p: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        rot = R.from_rotvec(p[:3]).as_matrix()
        u = normalize(u0 + p[3:5] @ basis)
        s = float(np.exp(p[5])) if scale_bounds is not None else s0
        return rot, s * u

    def fun(p: np.ndarray) -> np.ndarray:
        rot, t = unpack(p)
        return focal * generalized_epipolar_error(rot, t, c1, d1, c2, d2)

    p0 = np.concatenate([R.from_matrix(rot0).as_rotvec(), np.zeros(2)], axis=0)
    lb = np.full(5, -np.inf)
    ub = np.full(5, np.inf)
    if scale_bounds is not None:
        log_lo, log_hi = float(np.log(scale_bounds[0])), float(np.log(scale_bounds[1]))
        p0 = np.append(p0, np.clip(np.log(s0), log_lo, log_hi))
        lb = np.append(lb, log_lo)
        ub = np.append(ub, log_hi)

    sol = least_squares(
        fun,
        p0,
        bounds=(lb, ub),
        method="trf",
        loss="soft_l1",
        f_scale=float(options.max_error),
        max_nfev=int(options.max_nfev),
        x_scale="jac",
    )
    rot, t = unpack(sol.x)
    return rot, t, float(sol.cost)


def estimate_calibrated_two_view_geometry(
    camera1: Camera,
    points1: np.ndarray,
    camera2: Camera,
    points2: np.ndarray,
    matches: np.ndarray,
    options: TwoViewGeometryOptions = TwoViewGeometryOptions(),
) -> TwoViewGeometry:
    """
    Relative pose of two intrinsically calibrated views; the translation has unit norm.
    """
    matches = _as_matches(matches)
    points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2)
    points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2)

    x1 = camera1.cam_from_img(points1[matches[:, 0]])
    x2 = camera2.cam_from_img(points2[matches[:, 1]])
    valid = np.all(np.isfinite(x1), axis=1) & np.all(np.isfinite(x2), axis=1)
    valid_idx = np.flatnonzero(valid)

    threshold = 0.5 * (camera1.cam_from_img_threshold(options.max_error) + camera2.cam_from_img_threshold(options.max_error))
    res = _essential_ransac(x1[valid_idx], x2[valid_idx], threshold, options)
    if res is None:
        return _failed()
    rot, t, inliers = res
    inlier_idx = valid_idx[inliers]

    if options.refine and inlier_idx.size >= 6:
        # Central rays: every center at the origin, the length of t stays 1.
        d1 = normalize(homogeneous(x1[inlier_idx]))
        d2 = normalize(homogeneous(x2[inlier_idx]))
        centers = np.zeros_like(d1)
        focal = np.full(inlier_idx.size, camera2.mean_focal_length())
        rot, t, _cost = _refine_generalized_pose(rot, t, centers, d1, centers, d2, focal, options)

    inlier_matches = matches[inlier_idx]
    return TwoViewGeometry(
        cam2_from_cam1=Rigid3(rotation=rot, translation=t),
        inlier_matches=inlier_matches,
        success=inlier_matches.shape[0] >= options.min_num_inliers,
    )


def _center_spread(c1: np.ndarray, c2: np.ndarray) -> float:
    """RMS distance of the ray centers of both views to their mean."""
    centers = np.concatenate([c1, c2], axis=0)
    dev = centers - np.mean(centers, axis=0)
    return float(np.sqrt(np.mean(np.sum(dev * dev, axis=1))))


def estimate_refractive_two_view_geometry(
    points1: np.ndarray,
    virtual_cameras1: Sequence[Camera],
    virtual_from_reals1: Sequence[Rigid3],
    points2: np.ndarray,
    virtual_cameras2: Sequence[Camera],
    virtual_from_reals2: Sequence[Rigid3],
    matches: np.ndarray,
    options: TwoViewGeometryOptions = TwoViewGeometryOptions(),
) -> TwoViewGeometry:
    """
    Relative pose (with metric baseline) from observations seen through virtual cameras.

    1. Central initialization: essential matrix RANSAC on the ray directions, with a
       threshold inflated by `central_init_slack`.
    2. Baseline search: for lengths log-spaced over `scale_search_range` (relative to the
       spread of the virtual centers) the rotation and direction are refined with the
       length held fixed. The hypothesis with the most generalized inliers at `max_error`
       wins, ties going to the lower robust cost.
    3. Refine rotation, direction and (bounded) length on the generalized inliers and
       re-score, until the inlier set no longer changes.

    The baseline length is unobservable when all virtual centers coincide (no refraction,
    centered dome); the translation then keeps unit norm.
    """
    matches = _as_matches(matches)
    points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2)
    points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2)
    if matches.shape[0] < 5:
        return _failed()

    i1 = matches[:, 0]
    i2 = matches[:, 1]
    c1, d1, _f1 = rays_from_virtual_cameras(
        points1[i1], [virtual_cameras1[i] for i in i1], [virtual_from_reals1[i] for i in i1]
    )
    c2, d2, f2 = rays_from_virtual_cameras(
        points2[i2], [virtual_cameras2[i] for i in i2], [virtual_from_reals2[i] for i in i2]
    )
    valid = (
        np.all(np.isfinite(c1), axis=1)
        & np.all(np.isfinite(d1), axis=1)
        & np.all(np.isfinite(c2), axis=1)
        & np.all(np.isfinite(d2), axis=1)
        & np.isfinite(f2)
    )
    valid_idx = np.flatnonzero(valid)
    c1, d1, c2, d2, f2 = c1[valid_idx], d1[valid_idx], c2[valid_idx], d2[valid_idx], f2[valid_idx]

    # Central initialization only sees forward-looking rays.
    forward = np.flatnonzero((d1[:, 2] > 1e-9) & (d2[:, 2] > 1e-9))
    if forward.size < 5:
        return _failed()
    max_error = float(options.max_error)
    init_error = float(options.central_init_slack) * max_error
    threshold = init_error / float(np.mean(f2[forward]))
    res = _essential_ransac(hnormalized(d1[forward]), hnormalized(d2[forward]), threshold, options)
    if res is None:
        return _failed()
    rot0, t_unit, _central_inliers = res

    def score(rot: np.ndarray, t: np.ndarray) -> np.ndarray:
        err = np.abs(f2 * generalized_epipolar_error(rot, t, c1, d1, c2, d2))
        return np.flatnonzero(err < max_error)

    # Same rays with every center at the origin: the central model.
    origin = np.zeros_like(c1)
    central_error = np.abs(f2 * generalized_epipolar_error(rot0, t_unit, origin, d1, origin, d2))
    init = np.flatnonzero(central_error < init_error)
    if init.size < 6:
        return _failed(Rigid3(rotation=rot0, translation=t_unit))

    spread = _center_spread(c1[init], c2[init])
    scale_bounds: tuple[float, float] | None = None
    lengths = [1.0]
    if spread > 1e-9:
        scale_bounds = (spread * float(options.scale_search_range[0]), spread * float(options.scale_search_range[1]))
        lengths = [float(s) for s in np.geomspace(scale_bounds[0], scale_bounds[1], int(options.num_scale_samples))]

    hypotheses = []
    for s in lengths:
        rot, t, cost = _refine_generalized_pose(
            rot0, s * t_unit, c1[init], d1[init], c2[init], d2[init], f2[init], options
        )
        hypotheses.append(((score(rot, t).size, -cost), rot, t))
    _key, rot, t = max(hypotheses, key=lambda h: h[0])

    inliers = score(rot, t)
    if options.refine:
        for _ in range(int(options.max_refine_iterations)):
            if inliers.size < 6:
                break
            rot, t, _cost = _refine_generalized_pose(
                rot, t, c1[inliers], d1[inliers], c2[inliers], d2[inliers], f2[inliers], options, scale_bounds
            )
            rescored = score(rot, t)
            if np.array_equal(rescored, inliers):
                break
            inliers = rescored

    inlier_matches = matches[valid_idx[inliers]]
    return TwoViewGeometry(
        cam2_from_cam1=Rigid3(rotation=rot, translation=t),
        inlier_matches=inlier_matches,
        success=inlier_matches.shape[0] >= options.min_num_inliers,
    )
