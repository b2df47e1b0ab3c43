"""
Intrinsic (non-refractive) camera models.

The set of models is closed: each `CameraModelId` maps to one frozen `CameraModel`
describing its parameter layout. Projection maps normalized camera coordinates
(x=X/Z, y=Y/Z) to pixels, unprojection maps pixels back to normalized coordinates.
Pixel convention: u = f x + cx, v = f y + cy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import numpy as np

from refracam.core.distortion import BrownDistortion


class CameraModelError(ValueError):
    pass


class CameraModelId(IntEnum):
    SIMPLE_PINHOLE = 0
    PINHOLE = 1
    SIMPLE_RADIAL = 2
    RADIAL = 3
    OPENCV = 4


@dataclass(frozen=True)
class CameraModel:
    model_id: CameraModelId
    params_info: tuple[str, ...]
    focal_length_idxs: tuple[int, ...]
    principal_point_idxs: tuple[int, int]
    extra_params_idxs: tuple[int, ...]
    # Names of the BrownDistortion coefficients held by the extra parameters, in order.
    distortion_names: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.model_id.name

    @property
    def num_params(self) -> int:
        return len(self.params_info)

    def _focal_xy(self, params: np.ndarray) -> tuple[float, float]:
        if len(self.focal_length_idxs) == 1:
            f = float(params[self.focal_length_idxs[0]])
            return f, f
        return float(params[self.focal_length_idxs[0]]), float(params[self.focal_length_idxs[1]])

    def distortion(self, params: np.ndarray) -> BrownDistortion:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if not self.distortion_names:
            return BrownDistortion()
        return BrownDistortion.from_coeffs(self.distortion_names, params[list(self.extra_params_idxs)])

    def img_from_cam(self, params: np.ndarray, xy: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        xy = np.asarray(xy, dtype=np.float64)
        fx, fy = self._focal_xy(params)
        cx = float(params[self.principal_point_idxs[0]])
        cy = float(params[self.principal_point_idxs[1]])
        xd, yd = self.distortion(params).distort(xy[..., 0], xy[..., 1])
        return np.stack([fx * xd + cx, fy * yd + cy], axis=-1)

    def cam_from_img(self, params: np.ndarray, uv: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        uv = np.asarray(uv, dtype=np.float64)
        fx, fy = self._focal_xy(params)
        cx = float(params[self.principal_point_idxs[0]])
        cy = float(params[self.principal_point_idxs[1]])
        xd = (uv[..., 0] - cx) / fx
        yd = (uv[..., 1] - cy) / fy
        x, y = self.distortion(params).undistort(xd, yd)
        return np.stack([x, y], axis=-1)

    def cam_from_img_threshold(self, params: np.ndarray, threshold: float) -> float:
        fx, fy = self._focal_xy(np.asarray(params, dtype=np.float64).reshape(-1))
        return float(threshold) / (0.5 * (fx + fy))

    def verify_params(self, params: np.ndarray) -> bool:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.num_params:
            return False
        if not np.all(np.isfinite(params)):
            return False
        return all(float(params[i]) > 0.0 for i in self.focal_length_idxs)

    def initialize_params(self, focal_length: float, width: int, height: int) -> np.ndarray:
        params = np.zeros((self.num_params,), dtype=np.float64)
        for i in self.focal_length_idxs:
            params[i] = float(focal_length)
        params[self.principal_point_idxs[0]] = width / 2.0
        params[self.principal_point_idxs[1]] = height / 2.0
        return params

    def has_bogus_params(
        self,
        params: np.ndarray,
        width: int,
        height: int,
        min_focal_length_ratio: float,
        max_focal_length_ratio: float,
        max_extra_param: float,
    ) -> bool:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        inv_max_size = 1.0 / float(max(width, height))
        for i in self.focal_length_idxs:
            ratio = float(params[i]) * inv_max_size
            if ratio < min_focal_length_ratio or ratio > max_focal_length_ratio:
                return True
        return any(abs(float(params[i])) > max_extra_param for i in self.extra_params_idxs)


CAMERA_MODELS: dict[CameraModelId, CameraModel] = {
    m.model_id: m
    for m in (
        CameraModel(
            model_id=CameraModelId.SIMPLE_PINHOLE,
            params_info=("f", "cx", "cy"),
            focal_length_idxs=(0,),
            principal_point_idxs=(1, 2),
            extra_params_idxs=(),
        ),
        CameraModel(
            model_id=CameraModelId.PINHOLE,
            params_info=("fx", "fy", "cx", "cy"),
            focal_length_idxs=(0, 1),
            principal_point_idxs=(2, 3),
            extra_params_idxs=(),
        ),
        CameraModel(
            model_id=CameraModelId.SIMPLE_RADIAL,
            params_info=("f", "cx", "cy", "k"),
            focal_length_idxs=(0,),
            principal_point_idxs=(1, 2),
            extra_params_idxs=(3,),
            distortion_names=("k1",),
        ),
        CameraModel(
            model_id=CameraModelId.RADIAL,
            params_info=("f", "cx", "cy", "k1", "k2"),
            focal_length_idxs=(0,),
            principal_point_idxs=(1, 2),
            extra_params_idxs=(3, 4),
            distortion_names=("k1", "k2"),
        ),
        CameraModel(
            model_id=CameraModelId.OPENCV,
            params_info=("fx", "fy", "cx", "cy", "k1", "k2", "p1", "p2"),
            focal_length_idxs=(0, 1),
            principal_point_idxs=(2, 3),
            extra_params_idxs=(4, 5, 6, 7),
            distortion_names=("k1", "k2", "p1", "p2"),
        ),
    )
}


def camera_model_from_id(model_id: int) -> CameraModel:
    try:
        return CAMERA_MODELS[CameraModelId(int(model_id))]
    except ValueError:
        raise CameraModelError(f"Unknown camera model id: {model_id}") from None


def camera_model_from_name(name: str) -> CameraModel:
    try:
        return CAMERA_MODELS[CameraModelId[str(name).upper()]]
    except KeyError:
        raise CameraModelError(f"Unknown camera model name: {name}") from None
