#!/usr/bin/env python3
"""
gen_dummy_project.py

Write a synthetic absorbance project: ``blank/``, ``dark/`` and one folder
per channel, each holding ``<ms>ms/`` exposure folders with one TIFF per
replicate, plus a ``config.yaml`` describing them.

Usage (from the repository root):
    python -m scripts.gen_dummy_project <outdir> [-c red=0.5 -c green=0.25]
"""
import argparse
import pathlib

import tifffile
import yaml

from camera import SimulatedCamera


def _parse_channel(text):
    label, _, value = text.partition("=")
    return label, float(value or 0.5)


def write_channel(folder, cam, exposures, replicates):
    for exposure in exposures:
        step_dir = folder / f"{exposure:g}ms"
        step_dir.mkdir(parents=True, exist_ok=True)
        frames = cam.capture_replicate_frames(exposure, replicates)
        for i, frame in enumerate(frames):
            tifffile.imwrite(step_dir / f"{i:03d}.tiff", frame)


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("outdir", type=pathlib.Path)
    parser.add_argument(
        "-c",
        "--channel",
        action="append",
        type=_parse_channel,
        help="label=transmittance (repeatable, default red=0.5)",
    )
    parser.add_argument("-s", "--steps", type=int, default=8)
    parser.add_argument("-r", "--replicates", type=int, default=8)
    parser.add_argument("--min-exposure", type=float, default=1.0)
    parser.add_argument("--width", type=int, default=32)
    parser.add_argument("--height", type=int, default=24)
    parser.add_argument("--bit-depth", type=int, default=12)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args(argv)

    channels = dict(args.channel or [("red", 0.5)])
    exposures = [args.min_exposure * 2**k for k in range(args.steps)]
    folders = {"blank": 1.0, "dark": 0.0, **channels}

    args.outdir.mkdir(parents=True, exist_ok=True)
    for seed_offset, (name, transmittance) in enumerate(folders.items()):
        cam = SimulatedCamera(
            args.width,
            args.height,
            bit_depth=args.bit_depth,
            transmittance=transmittance,
            seed=args.seed + seed_offset,
        )
        cam.open()
        try:
            write_channel(args.outdir / name, cam, exposures, args.replicates)
        finally:
            cam.close()

    cfg = {
        "sensor": {"name": "simulated", "bit_depth": args.bit_depth},
        "acquisition": {
            "min_exposure_ms": args.min_exposure,
            "max_exposure_ms": exposures[-1],
            "replicates": args.replicates,
        },
        "measurement": {
            "foreground_folder": "blank",
            "background_folder": "dark",
            "channels": {label: {"folder": label} for label in channels},
            "exposures": {e: {"folder": f"{e:g}ms"} for e in exposures},
        },
    }
    with (args.outdir / "config.yaml").open("w", encoding="utf-8") as fh:
        yaml.safe_dump(cfg, fh, sort_keys=False)
    print("Dummy project written:", args.outdir)


if __name__ == "__main__":
    main()
