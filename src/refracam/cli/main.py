from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np

from refracam.config import build_camera, load_camera_config, load_experiment_config
from refracam.eval.refrac_rel_pose import run_experiment


def _cast_rays(camera_config: Path, pixels: list[list[float]]) -> None:
    camera = build_camera(load_camera_config(camera_config))
    for u, v in pixels:
        pixel = np.array([u, v], dtype=np.float64)
        ray = camera.cam_from_img_refrac(pixel)
        virtual_camera, virtual_from_real = camera.compute_virtual(pixel)
        entry = {
            "pixel": [float(u), float(v)],
            "ray_ori": ray.ori.tolist(),
            "ray_dir": ray.dir.tolist(),
            "virtual_center": virtual_from_real.inverse().translation.tolist(),
            "virtual_params": virtual_camera.params.tolist(),
        }
        print(json.dumps(entry, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="refracam")
    sub = parser.add_subparsers(dest="cmd", required=True)

    ev = sub.add_parser(
        "eval-rel-pose",
        help="Monte-Carlo evaluation of calibrated vs refractive relative pose estimation.",
    )
    ev.add_argument("--config", type=Path, required=True, help="Experiment config (refracam.experiment.v0 JSON).")
    ev.add_argument("--out", type=Path, required=True, help="Output directory for the reports.")
    ev.add_argument("--quiet", action="store_true", help="Only print the written report paths.")

    cast = sub.add_parser(
        "cast-rays",
        help="Print refracted rays and virtual cameras for pixels of a camera (JSON lines).",
    )
    cast.add_argument("--config", type=Path, required=True, help="Camera config JSON.")
    cast.add_argument(
        "--pixel",
        type=float,
        nargs=2,
        action="append",
        required=True,
        metavar=("U", "V"),
        help="Pixel coordinates; repeat for several pixels.",
    )

    args = parser.parse_args(argv)

    if args.cmd == "eval-rel-pose":
        config = load_experiment_config(args.config)
        paths = run_experiment(config, args.out, verbose=not args.quiet)
        if args.quiet:
            for p in paths:
                print(f"Wrote {p}")
        return 0

    if args.cmd == "cast-rays":
        _cast_rays(args.config, args.pixel)
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
