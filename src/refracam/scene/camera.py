from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from refracam.core.geometry import (
    Ray3D,
    Rigid3,
    hnormalized,
    intersect_lines_with_tolerance,
    normalize,
    rotation_from_two_vectors,
)
from refracam.sensor.models import CameraModel, CameraModelId, camera_model_from_id, camera_model_from_name
from refracam.sensor.refraction import (
    RefractionModel,
    RefractionModelId,
    refraction_model_from_id,
    refraction_model_from_name,
)

INVALID_CAMERA_ID = -1

# All virtual cameras derived from a camera look along this axis.
VIRTUAL_CAMERA_AXIS = np.array([0.0, 0.0, 1.0], dtype=np.float64)


def _csv_to_vector(text: str) -> np.ndarray | None:
    items = [s.strip() for s in str(text).replace(";", ",").split(",")]
    items = [s for s in items if s]
    try:
        return np.array([float(s) for s in items], dtype=np.float64)
    except ValueError:
        return None


def _vector_to_csv(values: np.ndarray) -> str:
    return ", ".join(repr(float(v)) for v in np.asarray(values, dtype=np.float64).reshape(-1))


def _resized(values: np.ndarray, n: int) -> np.ndarray:
    out = np.zeros((n,), dtype=np.float64)
    k = min(n, values.size)
    out[:k] = values[:k]
    return out


@dataclass
class Camera:
    """
    A camera: intrinsic projection model plus an optional refractive housing.

    The intrinsic path (`cam_from_img`, `img_from_cam`) ignores refraction. The
    refractive path (`cam_from_img_refrac`, `img_from_cam_refrac`) traces rays through
    the housing, so a ray no longer passes through the camera center. Virtual cameras
    (`compute_virtual`) turn every refracted ray back into a pinhole observation.
    """

    camera_id: int = INVALID_CAMERA_ID
    width: int = 0
    height: int = 0
    has_prior_focal_length: bool = False
    model_id: CameraModelId | None = None
    params: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float64))
    refrac_model_id: RefractionModelId | None = None
    refrac_params: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float64))

    # --- model selection ---------------------------------------------------------------

    @property
    def model(self) -> CameraModel:
        if self.model_id is None:
            raise ValueError("camera model is not set")
        return camera_model_from_id(self.model_id)

    @property
    def refrac_model(self) -> RefractionModel | None:
        if self.refrac_model_id is None:
            return None
        return refraction_model_from_id(self.refrac_model_id)

    @property
    def model_name(self) -> str:
        return self.model.name if self.model_id is not None else ""

    @property
    def refrac_model_name(self) -> str:
        model = self.refrac_model
        return model.name if model is not None else ""

    @property
    def is_refractive(self) -> bool:
        return self.refrac_model_id is not None

    def set_model_id(self, model_id: int) -> None:
        model = camera_model_from_id(model_id)
        self.model_id = model.model_id
        self.params = _resized(np.asarray(self.params, dtype=np.float64), model.num_params)

    def set_model_id_from_name(self, name: str) -> None:
        self.set_model_id(camera_model_from_name(name).model_id)

    def set_refrac_model_id(self, refrac_model_id: int | None) -> None:
        """Select a housing model; None removes refraction."""
        if refrac_model_id is None:
            self.refrac_model_id = None
            self.refrac_params = np.zeros((0,), dtype=np.float64)
            return
        model = refraction_model_from_id(refrac_model_id)
        self.refrac_model_id = model.model_id
        self.refrac_params = _resized(np.asarray(self.refrac_params, dtype=np.float64), model.num_params)

    def set_refrac_model_id_from_name(self, name: str) -> None:
        self.set_refrac_model_id(refraction_model_from_name(name).model_id)

    # --- parameters --------------------------------------------------------------------

    @property
    def params_info(self) -> str:
        return ", ".join(self.model.params_info)

    @property
    def refrac_params_info(self) -> str:
        model = self.refrac_model
        return ", ".join(model.params_info) if model is not None else ""

    def set_params(self, params: np.ndarray) -> bool:
        """Assign intrinsic parameters. Returns False (state unchanged) if they are invalid."""
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if self.model_id is None or not self.model.verify_params(params):
            return False
        self.params = params.copy()
        return True

    def set_refrac_params(self, refrac_params: np.ndarray) -> bool:
        refrac_params = np.asarray(refrac_params, dtype=np.float64).reshape(-1)
        model = self.refrac_model
        if model is None or not model.verify_params(refrac_params):
            return False
        self.refrac_params = refrac_params.copy()
        return True

    def set_params_from_string(self, text: str) -> bool:
        params = _csv_to_vector(text)
        return params is not None and self.set_params(params)

    def set_refrac_params_from_string(self, text: str) -> bool:
        params = _csv_to_vector(text)
        return params is not None and self.set_refrac_params(params)

    def params_to_string(self) -> str:
        return _vector_to_csv(self.params)

    def refrac_params_to_string(self) -> str:
        return _vector_to_csv(self.refrac_params)

    def verify_params(self) -> bool:
        return self.model_id is not None and self.model.verify_params(self.params)

    def verify_refrac_params(self) -> bool:
        model = self.refrac_model
        return model is not None and model.verify_params(self.refrac_params)

    def has_bogus_params(
        self,
        min_focal_length_ratio: float = 0.1,
        max_focal_length_ratio: float = 10.0,
        max_extra_param: float = 1.0,
    ) -> bool:
        return self.model.has_bogus_params(
            self.params,
            self.width,
            self.height,
            min_focal_length_ratio,
            max_focal_length_ratio,
            max_extra_param,
        )

    def is_undistorted(self) -> bool:
        return self.model.distortion(self.params).is_identity()

    def initialize_with_id(self, model_id: int, focal_length: float, width: int, height: int) -> None:
        model = camera_model_from_id(model_id)
        self.model_id = model.model_id
        self.width = int(width)
        self.height = int(height)
        self.params = model.initialize_params(focal_length, self.width, self.height)

    def initialize_with_name(self, name: str, focal_length: float, width: int, height: int) -> None:
        self.initialize_with_id(camera_model_from_name(name).model_id, focal_length, width, height)

    # --- focal length / principal point ------------------------------------------------

    def _focal_idxs(self) -> tuple[int, ...]:
        return self.model.focal_length_idxs

    def mean_focal_length(self) -> float:
        return float(np.mean([self.params[i] for i in self._focal_idxs()]))

    def focal_length(self) -> float:
        idxs = self._focal_idxs()
        if len(idxs) != 1:
            raise ValueError(f"{self.model_name} has separate x/y focal lengths")
        return float(self.params[idxs[0]])

    def _focal_xy_idxs(self) -> tuple[int, int]:
        idxs = self._focal_idxs()
        if len(idxs) != 2:
            raise ValueError(f"{self.model_name} has a single focal length")
        return idxs[0], idxs[1]

    def focal_length_x(self) -> float:
        return float(self.params[self._focal_xy_idxs()[0]])

    def focal_length_y(self) -> float:
        return float(self.params[self._focal_xy_idxs()[1]])

    def set_focal_length(self, focal_length: float) -> None:
        for i in self._focal_idxs():
            self.params[i] = float(focal_length)

    def set_focal_length_x(self, focal_length_x: float) -> None:
        self.params[self._focal_xy_idxs()[0]] = float(focal_length_x)

    def set_focal_length_y(self, focal_length_y: float) -> None:
        self.params[self._focal_xy_idxs()[1]] = float(focal_length_y)

    def principal_point_x(self) -> float:
        return float(self.params[self.model.principal_point_idxs[0]])

    def principal_point_y(self) -> float:
        return float(self.params[self.model.principal_point_idxs[1]])

    def set_principal_point_x(self, ppx: float) -> None:
        self.params[self.model.principal_point_idxs[0]] = float(ppx)

    def set_principal_point_y(self, ppy: float) -> None:
        self.params[self.model.principal_point_idxs[1]] = float(ppy)

    def calibration_matrix(self) -> np.ndarray:
        idxs = self._focal_idxs()
        fx = float(self.params[idxs[0]])
        fy = float(self.params[idxs[-1]])
        return np.array(
            [[fx, 0.0, self.principal_point_x()], [0.0, fy, self.principal_point_y()], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def _rescale_intrinsics(self, scale_x: float, scale_y: float) -> None:
        self.set_principal_point_x(scale_x * self.principal_point_x())
        self.set_principal_point_y(scale_y * self.principal_point_y())
        if len(self._focal_idxs()) == 1:
            self.set_focal_length(0.5 * (scale_x + scale_y) * self.focal_length())
        else:
            self.set_focal_length_x(scale_x * self.focal_length_x())
            self.set_focal_length_y(scale_y * self.focal_length_y())

    def rescale(self, scale: float) -> None:
        """
        Resize the image by `scale`. Refraction parameters are metric and do not change.
        """
        if not scale > 0.0:
            raise ValueError("scale must be > 0")
        width = int(round(scale * self.width))
        height = int(round(scale * self.height))
        self.rescale_to(width, height)

    def rescale_to(self, width: int, height: int) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("camera has no image size")
        if width <= 0 or height <= 0:
            raise ValueError("width and height must be > 0")
        scale_x = float(width) / float(self.width)
        scale_y = float(height) / float(self.height)
        self.width = int(width)
        self.height = int(height)
        self._rescale_intrinsics(scale_x, scale_y)

    # --- intrinsic projection ----------------------------------------------------------

    def cam_from_img(self, image_point: np.ndarray) -> np.ndarray:
        """Pixel(s) (...,2) -> normalized camera coordinates (...,2), no refraction."""
        return self.model.cam_from_img(self.params, image_point)

    def img_from_cam(self, cam_point: np.ndarray) -> np.ndarray:
        """Normalized camera coordinates (...,2) -> pixel(s) (...,2), no refraction."""
        return self.model.img_from_cam(self.params, cam_point)

    def cam_from_img_threshold(self, threshold: float) -> float:
        return self.model.cam_from_img_threshold(self.params, threshold)

    # --- refractive projection ---------------------------------------------------------

    def cam_from_img_refrac(self, image_point: np.ndarray) -> Ray3D:
        xy = self.cam_from_img(np.asarray(image_point, dtype=np.float64).reshape(2))
        v = normalize(np.array([xy[0], xy[1], 1.0], dtype=np.float64))
        model = self.refrac_model
        if model is None:
            return Ray3D(ori=np.zeros((3,), dtype=np.float64), dir=v)
        ori, d = model.cam_from_img(self.refrac_params, v[None, :])
        return Ray3D(ori=ori[0], dir=d[0])

    def cam_from_img_refrac_point(self, image_point: np.ndarray, depth: float) -> np.ndarray:
        return self.cam_from_img_refrac(image_point).at(depth)

    def img_from_cam_refrac(self, cam_point: np.ndarray) -> np.ndarray:
        """
        3D point in the camera frame -> pixel through the housing. NaN when no refracted
        ray reaches the point (e.g. inside the housing or behind the camera).
        """
        point = np.asarray(cam_point, dtype=np.float64).reshape(3)
        model = self.refrac_model
        v = point if model is None else model.img_from_cam(self.refrac_params, point)
        if not np.all(np.isfinite(v)) or float(v[2]) <= 0.0:
            return np.full((2,), np.nan, dtype=np.float64)
        return self.img_from_cam(hnormalized(v))

    # --- virtual cameras ---------------------------------------------------------------

    def refraction_axis(self) -> np.ndarray:
        model = self.refrac_model
        if model is None:
            return VIRTUAL_CAMERA_AXIS.copy()
        return model.refraction_axis(self.refrac_params)

    def virtual_from_real_rotation(self) -> np.ndarray:
        return rotation_from_two_vectors(self.refraction_axis(), VIRTUAL_CAMERA_AXIS)

    def virtual_camera_center(self, ray_refrac: Ray3D) -> np.ndarray:
        return intersect_lines_with_tolerance(
            np.zeros((3,), dtype=np.float64),
            self.refraction_axis(),
            np.asarray(ray_refrac.ori, dtype=np.float64),
            -np.asarray(ray_refrac.dir, dtype=np.float64),
        )

    def virtual_camera(self, image_point: np.ndarray, cam_point: np.ndarray) -> Camera:
        """
        Simple pinhole camera sharing this camera's mean focal length whose principal
        point makes `image_point` project exactly to the normalized point `cam_point`.
        """
        image_point = np.asarray(image_point, dtype=np.float64).reshape(2)
        cam_point = np.asarray(cam_point, dtype=np.float64).reshape(2)
        f = self.mean_focal_length()
        cx = float(image_point[0] - f * cam_point[0])
        cy = float(image_point[1] - f * cam_point[1])
        return Camera(
            width=self.width,
            height=self.height,
            model_id=CameraModelId.SIMPLE_PINHOLE,
            params=np.array([f, cx, cy], dtype=np.float64),
        )

    def compute_virtual(self, point2D: np.ndarray) -> tuple[Camera, Rigid3]:
        rot = self.virtual_from_real_rotation()
        ray_refrac = self.cam_from_img_refrac(point2D)
        center = self.virtual_camera_center(ray_refrac)
        virtual_from_real = Rigid3(rotation=rot, translation=rot @ -center)
        virtual_camera = self.virtual_camera(point2D, hnormalized(rot @ ray_refrac.dir))
        return virtual_camera, virtual_from_real

    def compute_virtuals(self, points2D: np.ndarray) -> tuple[list[Camera], list[Rigid3]]:
        virtual_cameras: list[Camera] = []
        virtual_from_reals: list[Rigid3] = []
        for point in np.asarray(points2D, dtype=np.float64).reshape(-1, 2):
            virtual_camera, virtual_from_real = self.compute_virtual(point)
            virtual_cameras.append(virtual_camera)
            virtual_from_reals.append(virtual_from_real)
        return virtual_cameras, virtual_from_reals
