from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def hnormalized(v: np.ndarray) -> np.ndarray:
    """(..., 3) -> (..., 2) by dividing through the last coordinate."""
    v = np.asarray(v, dtype=np.float64)
    return v[..., :2] / v[..., 2:3]


def homogeneous(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    return np.concatenate([x, np.ones_like(x[..., :1])], axis=-1)


def normalize(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64)
    return v / np.linalg.norm(v, axis=-1, keepdims=True)


@dataclass(frozen=True)
class Ray3D:
    """
    A 3D ray (origin, direction). The direction is not required to be unit length.
    """

    ori: np.ndarray  # (3,)
    dir: np.ndarray  # (3,)

    def at(self, distance: float) -> np.ndarray:
        return np.asarray(self.ori, dtype=np.float64) + float(distance) * np.asarray(self.dir, dtype=np.float64)


@dataclass(frozen=True)
class Rigid3:
    """
    Rigid transform x_b = R x_a + t (named `b_from_a` at call sites).
    """

    rotation: np.ndarray  # (3,3)
    translation: np.ndarray  # (3,)

    @staticmethod
    def identity() -> Rigid3:
        return Rigid3(rotation=np.eye(3, dtype=np.float64), translation=np.zeros((3,), dtype=np.float64))

    @staticmethod
    def from_rotvec(rvec: np.ndarray, tvec: np.ndarray) -> Rigid3:
        from scipy.spatial.transform import Rotation as R  # type: ignore

        rot = R.from_rotvec(np.asarray(rvec, dtype=np.float64).reshape(3)).as_matrix()
        return Rigid3(rotation=rot, translation=np.asarray(tvec, dtype=np.float64).reshape(3).copy())

    @staticmethod
    def from_euler(rx: float, ry: float, rz: float, tvec: np.ndarray) -> Rigid3:
        """
        Extrinsic x-y-z Euler angles (radians), i.e. R = Rz @ Ry @ Rx.
        """
        from scipy.spatial.transform import Rotation as R  # type: ignore

        rot = R.from_euler("xyz", [float(rx), float(ry), float(rz)]).as_matrix()
        return Rigid3(rotation=rot, translation=np.asarray(tvec, dtype=np.float64).reshape(3).copy())

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        return points @ self.rotation.T + self.translation

    def inverse(self) -> Rigid3:
        rot_t = self.rotation.T
        return Rigid3(rotation=rot_t.copy(), translation=-(rot_t @ self.translation))

    def __matmul__(self, other: Rigid3) -> Rigid3:
        # (self @ other).apply(x) == self.apply(other.apply(x))
        return Rigid3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def center(self) -> np.ndarray:
        """Origin of frame b expressed in frame a."""
        return -(self.rotation.T @ self.translation)

    def rotvec(self) -> np.ndarray:
        from scipy.spatial.transform import Rotation as R  # type: ignore

        return R.from_matrix(self.rotation).as_rotvec()


def rotation_angle_deg(rot: np.ndarray) -> float:
    rot = np.asarray(rot, dtype=np.float64).reshape(3, 3)
    c = 0.5 * (float(np.trace(rot)) - 1.0)
    return float(np.degrees(np.arccos(np.clip(c, -1.0, 1.0))))


def rotation_from_two_vectors(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Shortest-arc rotation matrix R with R @ a_hat == b_hat.
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    a = normalize(np.asarray(a, dtype=np.float64).reshape(3))
    b = normalize(np.asarray(b, dtype=np.float64).reshape(3))
    axis = np.cross(a, b)
    s = float(np.linalg.norm(axis))
    c = float(np.dot(a, b))
    if s < 1e-12:
        if c > 0.0:
            return np.eye(3, dtype=np.float64)
        # Antiparallel: rotate by pi about any axis orthogonal to a.
        ortho = np.cross(a, np.array([1.0, 0.0, 0.0]))
        if np.linalg.norm(ortho) < 1e-6:
            ortho = np.cross(a, np.array([0.0, 1.0, 0.0]))
        return R.from_rotvec(np.pi * normalize(ortho)).as_matrix()
    return R.from_rotvec(axis / s * np.arctan2(s, c)).as_matrix()


def closest_points_on_lines(
    o1: np.ndarray, d1: np.ndarray, o2: np.ndarray, d2: np.ndarray, tolerance: float = 1e-10
) -> tuple[np.ndarray, np.ndarray]:
    """
    Line parameters (t1, t2) of the closest points on lines (o1 + t1 d1) and (o2 + t2 d2).

    Near-parallel lines (|d1_hat x d2_hat|^2 < tolerance) give NaN.
    """
    o1 = np.asarray(o1, dtype=np.float64)
    o2 = np.asarray(o2, dtype=np.float64)
    d1 = np.asarray(d1, dtype=np.float64)
    d2 = np.asarray(d2, dtype=np.float64)

    w0 = o1 - o2
    a = np.sum(d1 * d1, axis=-1)
    b = np.sum(d1 * d2, axis=-1)
    c = np.sum(d2 * d2, axis=-1)
    d = np.sum(d1 * w0, axis=-1)
    e = np.sum(d2 * w0, axis=-1)

    denom = a * c - b * b
    # denom / (a c) is the squared sine of the angle between the directions.
    sin2 = denom / np.maximum(a * c, 1e-300)
    denom = np.where(sin2 < tolerance, np.nan, denom)

    t1 = (b * e - c * d) / denom
    t2 = (a * e - b * d) / denom
    return t1, t2


def intersect_lines_with_tolerance(
    o1: np.ndarray, d1: np.ndarray, o2: np.ndarray, d2: np.ndarray, tolerance: float = 1e-10
) -> np.ndarray:
    """
    Intersection of two 3D lines. Skew lines give the midpoint of the closest approach,
    near-parallel lines give NaN.
    """
    t1, t2 = closest_points_on_lines(o1, d1, o2, d2, tolerance=tolerance)
    p1 = np.asarray(o1, dtype=np.float64) + np.asarray(t1)[..., None] * np.asarray(d1, dtype=np.float64)
    p2 = np.asarray(o2, dtype=np.float64) + np.asarray(t2)[..., None] * np.asarray(d2, dtype=np.float64)
    return 0.5 * (p1 + p2)