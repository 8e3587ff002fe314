# core/loader.py – Replicate TIFF loader (nested-dict exposures)

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

import tifffile
import numpy as np

from core.frame_stats import RawSeries
import utils.config as cfgutil

__all__ = [
    "load_image_stack",
    "discover_exposures",
    "load_raw_series",
]

_EXPOSURE_RE = re.compile(r"(\d+(?:\.\d+)?)")

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _collect_frames(folder: Path) -> List[Path]:
    """Return sorted list of TIFF files (.tif/.tiff) in *folder*."""
    exts = {".tiff", ".tif"}
    return sorted(p for p in folder.iterdir() if p.suffix.lower() in exts)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def load_image_stack(folder: Path | str) -> np.ndarray:
    """Load all TIFF frames in *folder* and return as (N,H,W) array."""
    folder = Path(folder)
    files = _collect_frames(folder)
    if not files:
        raise FileNotFoundError(f"No TIFF files in {folder}")
    file_list = [str(f) for f in files]
    # use memory-mapped reading to reduce RAM usage
    stack = tifffile.imread(file_list, mode="r", out="memmap")
    if stack.ndim == 2:
        stack = stack[np.newaxis]
    return stack


def discover_exposures(channel_dir: Path | str) -> List[Tuple[float, str]]:
    """Return ``(exposure_ms, folder)`` for sub-folders named by exposure.

    The first number in the folder name is taken as the exposure, so
    ``"4"``, ``"4ms"`` and ``"exp_4"`` all map to 4 ms.
    """
    channel_dir = Path(channel_dir)
    found: List[Tuple[float, str]] = []
    for sub in sorted(p for p in channel_dir.iterdir() if p.is_dir()):
        m = _EXPOSURE_RE.search(sub.name)
        if m:
            found.append((float(m.group(1)), sub.name))
    return sorted(found, key=lambda x: x[0])


def load_raw_series(channel_dir: Path | str, cfg: Dict[str, Any]) -> RawSeries:
    """Load replicate stacks of every configured exposure under *channel_dir*.

    Exposures come from ``measurement.exposures``; if none are configured the
    sub-folders are discovered with :func:`discover_exposures`. Missing
    exposure folders are skipped.
    """
    channel_dir = Path(channel_dir)
    if not channel_dir.is_dir():
        raise FileNotFoundError(f"Channel folder not found: {channel_dir}")
    entries = cfgutil.exposure_entries(cfg) or discover_exposures(channel_dir)
    steps = []
    for exposure, efold in entries:
        folder = channel_dir / efold
        if not folder.is_dir():
            logging.info("Skipping missing folder: %s", folder)
            continue
        logging.info("Loading %s (%g ms)", folder, exposure)
        steps.append((exposure, load_image_stack(folder)))
    if not steps:
        raise FileNotFoundError(f"No exposure folders found in {channel_dir}")
    return RawSeries.from_steps(steps)
