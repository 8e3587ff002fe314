#!/usr/bin/env python
# main.py – Command line entry point for absorbance calibration runs

import argparse
import faulthandler
import logging
import os
import sys
import threading
from pathlib import Path

from core.pipeline import run_pipeline, run_simulation
from utils.config import load_config
from utils.logger import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Camera photometric response and absorbance calibration"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--project", type=Path, help="Project folder with replicate TIFF stacks"
    )
    source.add_argument(
        "--simulate",
        action="store_true",
        help="Acquire blank, dark and channels with the simulated camera",
    )
    parser.add_argument(
        "--config", type=Path, help="Config file (default: <project>/config.yaml)"
    )
    parser.add_argument(
        "--out", type=Path, help="Output folder for --simulate runs"
    )
    parser.add_argument("--log-file", type=Path, help="Also write the log here")
    parser.add_argument("--no-faulthandler", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)

    if not (args.no_faulthandler or os.environ.get("NO_FAULTHANDLER")):
        faulthandler.enable()

    cfg_path = args.config
    if cfg_path is None and args.project is not None:
        cfg_path = args.project / "config.yaml"
    cfg = load_config(cfg_path)

    cancel = threading.Event()
    logging.info("Application started")
    try:
        if args.simulate:
            out_dir = args.out or Path(cfg["output"].get("output_dir", "output"))
            result = run_simulation(cfg, out_dir, status=logging.info, cancel=cancel)
        else:
            result = run_pipeline(
                args.project, cfg, status=logging.info, cancel=cancel
            )
    except KeyboardInterrupt:
        cancel.set()
        logging.warning("Interrupted")
        return 130

    failed = [label for label, res in result["results"].items() if not res.ok]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
