"""
Refractive interface models (camera housings).

Every model works in the camera frame, with the camera center at the origin:

- `cam_from_img(params, dirs)` bends camera rays (N,3) leaving the center through the
  housing and returns the rays in the outer medium as (origins, unit directions).
- `img_from_cam(params, point)` finds the camera-ray direction whose refracted ray
  passes through a 3D point, or NaN when there is no physical solution.
- `refraction_axis(params)` is the unit axis every refracted ray intersects.

Parameters:
  FLATPORT: Nx, Ny, Nz, int_dist, int_thick, na, ng, nw
  DOMEPORT: Cx, Cy, Cz, int_radius, int_thick, na, ng, nw

(na, ng, nw) are the refractive indices of the housing air, the port material and
the outer medium (usually water).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

import numpy as np

from refracam.core.geometry import normalize
from refracam.sensor.models import CameraModelError


class RefractionModelId(IntEnum):
    FLATPORT = 0
    DOMEPORT = 1


_NAN3 = np.full((3,), np.nan, dtype=np.float64)


def refract(normal: np.ndarray, n1: float, n2: float, v: np.ndarray) -> np.ndarray:
    """
    Snell's law in vector form for unit rays `v` (N,3) crossing from index n1 to n2.

    `normal` (N,3) or (3,) is the unit surface normal pointing along the propagation
    side (normal . v > 0). Total internal reflection yields NaN rows.
    """
    v = np.asarray(v, dtype=np.float64)
    normal = np.broadcast_to(np.asarray(normal, dtype=np.float64), v.shape)
    if n1 == n2:
        return v.copy()
    r = float(n1) / float(n2)
    c = np.sum(normal * v, axis=-1, keepdims=True)
    k = 1.0 - r * r * (1.0 - c * c)
    cos_t = np.sqrt(np.where(k >= 0.0, k, np.nan))
    out = r * v - (r * c - cos_t) * normal
    return normalize(out)


def _split_params(params: np.ndarray) -> tuple[np.ndarray, float, float, float, float, float]:
    params = np.asarray(params, dtype=np.float64).reshape(-1)
    vec = params[:3].copy()
    return vec, float(params[3]), float(params[4]), float(params[5]), float(params[6]), float(params[7])


# --- Flat port -----------------------------------------------------------------------------


def _flatport_cam_from_img(params: np.ndarray, dirs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    normal, int_dist, int_thick, na, ng, nw = _split_params(params)
    normal = normalize(normal)
    v = normalize(np.asarray(dirs, dtype=np.float64).reshape(-1, 3))

    # Rays leaving the housing backwards never reach the port.
    c = v @ normal
    c = np.where(c > 1e-12, c, np.nan)
    p1 = (int_dist / c)[:, None] * v
    v1 = refract(normal, na, ng, v)
    p2 = p1 + (int_thick / (v1 @ normal))[:, None] * v1
    v2 = refract(normal, ng, nw, v1)
    return p2, v2


def _flatport_img_from_cam(params: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    All rays stay in the plane spanned by the interface normal and the point, so the
    problem reduces to the incidence angle theta in air: the radial offset reached at
    the point's depth along the normal grows monotonically with theta.
    """
    from scipy.optimize import brentq  # type: ignore

    normal, int_dist, int_thick, na, ng, nw = _split_params(params)
    normal = normalize(normal)
    point = np.asarray(point, dtype=np.float64).reshape(3)
    if not np.all(np.isfinite(point)):
        return _NAN3.copy()

    z = float(point @ normal)
    if z <= int_dist + int_thick:
        return _NAN3.copy()
    radial = point - z * normal
    r = float(np.linalg.norm(radial))
    if r < 1e-15:
        return normal.copy()
    e_r = radial / r

    ratio_g = na / ng
    ratio_w = na / nw
    theta_max = 0.5 * np.pi
    for ratio in (ratio_g, ratio_w):
        if ratio > 1.0:
            theta_max = min(theta_max, float(np.arcsin(1.0 / ratio)))

    water_dist = z - int_dist - int_thick

    def radial_offset(theta: float) -> float:
        s = np.sin(theta)
        sg = ratio_g * s
        sw = ratio_w * s
        off = int_dist * np.tan(theta)
        off += int_thick * sg / np.sqrt(1.0 - sg * sg)
        off += water_dist * sw / np.sqrt(1.0 - sw * sw)
        return float(off - r)

    hi = theta_max * (1.0 - 1e-9)
    if radial_offset(hi) <= 0.0:
        return _NAN3.copy()
    theta = brentq(radial_offset, 0.0, hi, xtol=1e-15, rtol=4 * np.finfo(float).eps, maxiter=200)
    return np.sin(theta) * e_r + np.cos(theta) * normal


def _flatport_refraction_axis(params: np.ndarray) -> np.ndarray:
    return normalize(np.asarray(params, dtype=np.float64).reshape(-1)[:3])


def _flatport_verify(params: np.ndarray) -> bool:
    normal, int_dist, int_thick, na, ng, nw = _split_params(params)
    return bool(np.linalg.norm(normal) > 1e-12 and int_dist > 0.0 and int_thick >= 0.0 and min(na, ng, nw) > 0.0)


# --- Dome port -----------------------------------------------------------------------------


def _sphere_exit(origins: np.ndarray, dirs: np.ndarray, center: np.ndarray, radius: float) -> np.ndarray:
    """Far intersection distance of rays starting inside a sphere."""
    w = origins - center
    b = np.sum(dirs * w, axis=-1)
    disc = b * b - (np.sum(w * w, axis=-1) - radius * radius)
    disc = np.where(disc >= 0.0, disc, np.nan)
    return -b + np.sqrt(disc)


def _domeport_cam_from_img(params: np.ndarray, dirs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    center, radius, int_thick, na, ng, nw = _split_params(params)
    v = normalize(np.asarray(dirs, dtype=np.float64).reshape(-1, 3))
    origins = np.zeros_like(v)

    p1 = _sphere_exit(origins, v, center, radius)[:, None] * v
    v1 = refract((p1 - center) / radius, na, ng, v)
    outer = radius + int_thick
    p2 = p1 + _sphere_exit(p1, v1, center, outer)[:, None] * v1
    v2 = refract((p2 - center) / outer, ng, nw, v1)
    return p2, v2


def _domeport_img_from_cam(params: np.ndarray, point: np.ndarray) -> np.ndarray:
    """
    Rays stay in the plane spanned by the dome center and the point. Solve for the
    in-plane angle phi of the camera ray so that the refracted ray hits the point,
    starting from the unrefracted direction.
    """
    from scipy.optimize import newton  # type: ignore

    center, radius, int_thick, _na, _ng, _nw = _split_params(params)
    point = np.asarray(point, dtype=np.float64).reshape(3)
    if not np.all(np.isfinite(point)):
        return _NAN3.copy()
    if float(np.linalg.norm(point - center)) <= radius + int_thick:
        return _NAN3.copy()

    a = normalize(point)
    b = center - float(center @ a) * a
    if np.linalg.norm(b) < 1e-12:
        # Point on the dome axis (or a centered dome): any plane through the point works.
        b = np.cross(a, np.array([1.0, 0.0, 0.0]))
        if np.linalg.norm(b) < 1e-6:
            b = np.cross(a, np.array([0.0, 1.0, 0.0]))
    b = normalize(b)
    plane_normal = np.cross(a, b)

    def trace(phi: float) -> tuple[np.ndarray, np.ndarray]:
        v = np.cos(phi) * a + np.sin(phi) * b
        ori, d = _domeport_cam_from_img(params, v[None, :])
        return ori[0], d[0]

    def residual(phi: float) -> float:
        ori, d = trace(phi)
        return float((point - ori) @ np.cross(plane_normal, d))

    phi, info = newton(residual, 0.0, x1=1e-4, tol=1e-14, maxiter=100, full_output=True, disp=False)
    if not info.converged or not np.isfinite(phi):
        return _NAN3.copy()
    ori, d = trace(float(phi))
    if not np.all(np.isfinite(d)) or float((point - ori) @ d) <= 0.0:
        return _NAN3.copy()
    return np.cos(phi) * a + np.sin(phi) * b


def _domeport_refraction_axis(params: np.ndarray) -> np.ndarray:
    center = np.asarray(params, dtype=np.float64).reshape(-1)[:3]
    if np.linalg.norm(center) < 1e-12:
        return np.array([0.0, 0.0, 1.0], dtype=np.float64)
    return normalize(center)


def _domeport_verify(params: np.ndarray) -> bool:
    center, radius, int_thick, na, ng, nw = _split_params(params)
    return bool(
        radius > 0.0 and int_thick >= 0.0 and min(na, ng, nw) > 0.0 and float(np.linalg.norm(center)) < radius
    )


# --- Registry ------------------------------------------------------------------------------


@dataclass(frozen=True)
class RefractionModel:
    model_id: RefractionModelId
    params_info: tuple[str, ...]
    _cam_from_img: Callable[[np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray]]
    _img_from_cam: Callable[[np.ndarray, np.ndarray], np.ndarray]
    _refraction_axis: Callable[[np.ndarray], np.ndarray]
    _verify: Callable[[np.ndarray], bool]

    @property
    def name(self) -> str:
        return self.model_id.name

    @property
    def num_params(self) -> int:
        return len(self.params_info)

    def cam_from_img(self, params: np.ndarray, dirs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return self._cam_from_img(params, dirs)

    def img_from_cam(self, params: np.ndarray, point: np.ndarray) -> np.ndarray:
        return self._img_from_cam(params, point)

    def refraction_axis(self, params: np.ndarray) -> np.ndarray:
        return self._refraction_axis(params)

    def verify_params(self, params: np.ndarray) -> bool:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.num_params or not np.all(np.isfinite(params)):
            return False
        return self._verify(params)


REFRACTION_MODELS: dict[RefractionModelId, RefractionModel] = {
    RefractionModelId.FLATPORT: RefractionModel(
        model_id=RefractionModelId.FLATPORT,
        params_info=("Nx", "Ny", "Nz", "int_dist", "int_thick", "na", "ng", "nw"),
        _cam_from_img=_flatport_cam_from_img,
        _img_from_cam=_flatport_img_from_cam,
        _refraction_axis=_flatport_refraction_axis,
        _verify=_flatport_verify,
    ),
    RefractionModelId.DOMEPORT: RefractionModel(
        model_id=RefractionModelId.DOMEPORT,
        params_info=("Cx", "Cy", "Cz", "int_radius", "int_thick", "na", "ng", "nw"),
        _cam_from_img=_domeport_cam_from_img,
        _img_from_cam=_domeport_img_from_cam,
        _refraction_axis=_domeport_refraction_axis,
        _verify=_domeport_verify,
    ),
}


def refraction_model_from_id(model_id: int) -> RefractionModel:
    try:
        return REFRACTION_MODELS[RefractionModelId(int(model_id))]
    except ValueError:
        raise CameraModelError(f"Unknown refraction model id: {model_id}") from None


def refraction_model_from_name(name: str) -> RefractionModel:
    try:
        return REFRACTION_MODELS[RefractionModelId[str(name).upper()]]
    except KeyError:
        raise CameraModelError(f"Unknown refraction model name: {name}") from None
