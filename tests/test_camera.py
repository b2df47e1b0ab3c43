import numpy as np
import pytest

from refracam.core.geometry import hnormalized, normalize
from refracam.scene.camera import Camera
from refracam.sensor.models import CameraModelError, CameraModelId
from refracam.sensor.refraction import RefractionModelId

_PIXELS = np.array([[10.0, 10.0], [1100.0, 20.0], [50.0, 800.0], [1000.0, 700.0], [556.5, 50.0], [200.0, 400.0]])


def _pinhole_camera() -> Camera:
    cam = Camera(camera_id=1, width=1113, height=835)
    cam.set_model_id_from_name("PINHOLE")
    assert cam.set_params(np.array([340.514, 340.514, 556.5, 417.5]))
    return cam


def _flatport_camera(normal=(0.0, 0.0, 1.0)) -> Camera:
    cam = _pinhole_camera()
    cam.set_refrac_model_id_from_name("FLATPORT")
    n = normalize(np.asarray(normal, dtype=np.float64))
    assert cam.set_refrac_params(np.array([n[0], n[1], n[2], 0.05, 0.02, 1.0, 1.52, 1.334]))
    return cam


def _domeport_camera() -> Camera:
    cam = _pinhole_camera()
    cam.set_refrac_model_id_from_name("DOMEPORT")
    assert cam.set_refrac_params(np.array([0.002, -0.001, 0.003, 0.1, 0.01, 1.0, 1.49, 1.334]))
    return cam


def test_no_refraction_matches_plain_projection():
    cam = _pinhole_camera()
    assert not cam.is_refractive
    rng = np.random.default_rng(0)
    for _ in range(100):
        p = np.array([rng.uniform(0, cam.width), rng.uniform(0, cam.height)])
        ray = cam.cam_from_img_refrac(p)
        xy = cam.cam_from_img(p)
        assert np.allclose(ray.ori, 0.0)
        assert np.allclose(ray.dir, normalize(np.array([xy[0], xy[1], 1.0])), atol=1e-9)

        X = ray.at(rng.uniform(0.5, 10.0))
        assert np.allclose(cam.img_from_cam_refrac(X), cam.img_from_cam(hnormalized(X)), atol=1e-9)
        assert np.allclose(cam.img_from_cam_refrac(X), p, atol=1e-9)


@pytest.mark.parametrize("make_camera", [_flatport_camera, _domeport_camera], ids=["flat", "dome"])
def test_refractive_roundtrip(make_camera):
    cam = make_camera()
    rng = np.random.default_rng(1)
    for _ in range(200):
        p = np.array([rng.uniform(0.5, cam.width - 0.5), rng.uniform(0.5, cam.height - 0.5)])
        X = cam.cam_from_img_refrac_point(p, rng.uniform(0.5, 10.0))
        p2 = cam.img_from_cam_refrac(X)
        assert np.max(np.abs(p2 - p)) < 1e-6


def test_img_from_cam_refrac_behind_camera_is_nan():
    cam = _flatport_camera()
    assert np.all(np.isnan(cam.img_from_cam_refrac(np.array([0.1, 0.2, -3.0]))))
    assert np.all(np.isnan(cam.img_from_cam_refrac(np.array([np.nan, 0.0, 1.0]))))


def test_compute_virtual_is_deterministic():
    cam = _flatport_camera(normal=(0.05, -0.03, 1.0))
    p = np.array([321.0, 654.0])
    vc1, vfr1 = cam.compute_virtual(p)
    vc2, vfr2 = cam.compute_virtual(p)
    assert np.array_equal(vc1.params, vc2.params)
    assert np.array_equal(vfr1.rotation, vfr2.rotation)
    assert np.array_equal(vfr1.translation, vfr2.translation)
    assert vc1.model_id == CameraModelId.SIMPLE_PINHOLE
    assert (vc1.width, vc1.height) == (cam.width, cam.height)
    assert vc1.params[0] == pytest.approx(cam.mean_focal_length())


def test_virtual_from_real_rotation_maps_axis_onto_z():
    rng = np.random.default_rng(2)
    for _ in range(20):
        normal = np.array([rng.uniform(-0.3, 0.3), rng.uniform(-0.3, 0.3), rng.uniform(0.7, 1.3)])
        cam = _flatport_camera(normal=normal)
        mapped = cam.virtual_from_real_rotation() @ cam.refraction_axis()
        assert float(mapped @ np.array([0.0, 0.0, 1.0])) == pytest.approx(1.0, abs=1e-12)

    plain = _pinhole_camera()
    assert np.allclose(plain.refraction_axis(), [0.0, 0.0, 1.0])
    assert np.allclose(plain.virtual_from_real_rotation(), np.eye(3))


@pytest.mark.parametrize("make_camera", [_flatport_camera, _domeport_camera], ids=["flat", "dome"])
def test_virtual_camera_reproduces_refracted_ray(make_camera):
    cam = make_camera()
    axis = cam.refraction_axis()
    virtual_cameras, virtual_from_reals = cam.compute_virtuals(_PIXELS)
    assert len(virtual_cameras) == len(virtual_from_reals) == _PIXELS.shape[0]
    for p, vc, vfr in zip(_PIXELS, virtual_cameras, virtual_from_reals):
        center = vfr.inverse().translation
        assert np.linalg.norm(np.cross(center, axis)) < 1e-9

        for depth in (0.5, 3.0, 10.0):
            X = cam.cam_from_img_refrac_point(p, depth)
            p_virtual = vc.img_from_cam(hnormalized(vfr.apply(X)))
            assert np.max(np.abs(p_virtual - p)) < 1e-6


def test_virtual_cameras_of_plain_camera_sit_at_center():
    cam = _pinhole_camera()
    vc, vfr = cam.compute_virtual(np.array([100.0, 200.0]))
    assert np.allclose(vfr.rotation, np.eye(3))
    assert np.allclose(vc.params, [340.514, 556.5, 417.5])


def test_unknown_models_are_rejected():
    cam = _pinhole_camera()
    with pytest.raises(CameraModelError):
        cam.set_model_id_from_name("EQUIRECTANGULAR")
    with pytest.raises(CameraModelError):
        cam.set_model_id(99)
    with pytest.raises(CameraModelError):
        cam.set_refrac_model_id_from_name("BOWLPORT")
    assert cam.model_id == CameraModelId.PINHOLE
    assert not cam.is_refractive


def test_invalid_params_leave_state_unchanged():
    cam = _flatport_camera()
    params = cam.params.copy()
    refrac_params = cam.refrac_params.copy()

    assert not cam.set_params(np.array([340.0, 556.5, 417.5]))
    assert not cam.set_params(np.array([-340.0, 340.0, 556.5, 417.5]))
    assert not cam.set_params_from_string("340, 340, abc, 417")
    assert np.array_equal(cam.params, params)

    assert not cam.set_refrac_params(np.array([0.0, 0.0, 1.0, 0.05]))
    assert not cam.set_refrac_params(np.array([0.0, 0.0, 0.0, 0.05, 0.02, 1.0, 1.52, 1.334]))
    assert np.array_equal(cam.refrac_params, refrac_params)


def test_params_string_roundtrip_and_info():
    cam = _flatport_camera()
    assert cam.params_info == "fx, fy, cx, cy"
    assert cam.refrac_params_info == "Nx, Ny, Nz, int_dist, int_thick, na, ng, nw"
    assert cam.set_params_from_string(" 300.5, 301.5 ,500, 400")
    assert cam.params.tolist() == [300.5, 301.5, 500.0, 400.0]
    other = _flatport_camera()
    assert other.set_params_from_string(cam.params_to_string())
    assert other.set_refrac_params_from_string(cam.refrac_params_to_string())
    assert np.array_equal(other.params, cam.params)
    assert np.array_equal(other.refrac_params, cam.refrac_params)
    assert cam.refrac_model_name == "FLATPORT"


def test_model_switch_resizes_params():
    cam = _pinhole_camera()
    cam.set_model_id_from_name("OPENCV")
    assert cam.params.tolist() == [340.514, 340.514, 556.5, 417.5, 0.0, 0.0, 0.0, 0.0]
    assert cam.is_undistorted()
    cam.params[4] = 0.1
    assert not cam.is_undistorted()
    cam.set_model_id(CameraModelId.SIMPLE_PINHOLE)
    assert cam.params.tolist() == [340.514, 340.514, 556.5]

    cam.set_refrac_model_id(RefractionModelId.DOMEPORT)
    assert cam.refrac_params.shape == (8,)
    assert not cam.verify_refrac_params()
    cam.set_refrac_model_id(None)
    assert not cam.is_refractive
    assert cam.refrac_params.shape == (0,)


def test_rescale_keeps_refraction_params():
    cam = _flatport_camera()
    refrac_params = cam.refrac_params.copy()
    cam.rescale_to(2226, 1670)
    assert (cam.width, cam.height) == (2226, 1670)
    assert cam.focal_length_x() == pytest.approx(681.028)
    assert cam.focal_length_y() == pytest.approx(681.028)
    assert cam.principal_point_x() == pytest.approx(1113.0)
    assert cam.principal_point_y() == pytest.approx(835.0)
    assert np.array_equal(cam.refrac_params, refrac_params)

    cam.rescale(0.5)
    assert (cam.width, cam.height) == (1113, 835)
    assert cam.focal_length_x() == pytest.approx(340.514)

    with pytest.raises(ValueError):
        cam.rescale(0.0)


def test_rescale_single_focal_uses_mean_scale():
    cam = Camera(width=100, height=100)
    cam.initialize_with_name("SIMPLE_PINHOLE", 100.0, 100, 100)
    cam.rescale_to(200, 100)
    assert cam.focal_length() == pytest.approx(150.0)
    assert cam.principal_point_x() == pytest.approx(100.0)
    assert cam.principal_point_y() == pytest.approx(50.0)
    with pytest.raises(ValueError):
        cam.focal_length_x()


def test_bogus_params_and_calibration_matrix():
    cam = _pinhole_camera()
    assert not cam.has_bogus_params()
    cam.set_focal_length(50.0)
    assert cam.has_bogus_params()
    K = cam.calibration_matrix()
    assert np.allclose(K, [[50.0, 0.0, 556.5], [0.0, 50.0, 417.5], [0.0, 0.0, 1.0]])
