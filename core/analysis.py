# core/analysis.py – Linear-range bounds, per-pixel regression and absorbance

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from core.errors import (
    Cancelled,
    InconsistentRegressionBounds,
    InsufficientBackgroundFrames,
    InsufficientData,
)
from core.frame_stats import SeriesStats
from core.noise_model import turnover_index

__all__ = [
    "RegressionBounds",
    "RegressionMap",
    "AbsorbanceMap",
    "estimate_bounds",
    "pixel_linear_regression",
    "absorbance_from_slopes",
    "absorbance_direct",
    "REGRESSION_LABELS",
]

REGRESSION_LABELS = ("Y-Intercept", "Slope", "R^2")

# ───────────────────────────── data model


@dataclass(frozen=True)
class RegressionBounds:
    """Intensity window treated as the linear response region."""

    upper: float
    lower: float
    turnover_index: int


@dataclass(frozen=True, eq=False)
class RegressionMap:
    intercept: np.ndarray
    slope: np.ndarray
    r_squared: np.ndarray
    average_intercept: float
    average_slope: float
    average_r_squared: float
    bounds: RegressionBounds

    def as_stack(self) -> np.ndarray:
        """Return ``(3, H, W)`` stack ordered as :data:`REGRESSION_LABELS`."""
        return np.stack([self.intercept, self.slope, self.r_squared], axis=0)


@dataclass(frozen=True, eq=False)
class AbsorbanceMap:
    absorbance: np.ndarray
    mode: str
    selected_step: Optional[np.ndarray] = None
    min_pix: Optional[float] = None
    max_pix: Optional[float] = None


# ───────────────────────────── internal helpers


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


def _finite_mean(values: np.ndarray) -> float:
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return float("nan")
    return float(np.mean(finite, dtype=np.float64))


def _window_fit(
    x: np.ndarray, d: np.ndarray, k: np.ndarray, j: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Ordinary least squares of ``d[k..j]`` against ``x[k..j]`` per pixel."""
    steps = np.arange(x.size).reshape(-1, 1, 1)
    w = ((steps >= k) & (steps <= j)).astype(np.float64)
    n = w.sum(axis=0)
    xs = x.reshape(-1, 1, 1)
    with np.errstate(divide="ignore", invalid="ignore"):
        mean_x = (w * xs).sum(axis=0) / n
        mean_y = (w * d).sum(axis=0) / n
        dx = (xs - mean_x) * w
        dy = (d - mean_y) * w
        sxx = (dx * dx).sum(axis=0)
        sxy = (dx * dy).sum(axis=0)
        syy = (dy * dy).sum(axis=0)
        slope = np.where(sxx > 0, sxy / sxx, np.nan)
        intercept = mean_y - slope * mean_x
        ss_res = np.maximum(syy - slope * sxy, 0.0)
        r2 = np.where(syy > 0, 1.0 - ss_res / syy, 1.0)
    r2 = np.where(np.isnan(slope), np.nan, r2)
    return intercept, slope, r2


def _check_exposure_axis(
    series: SeriesStats, background: SeriesStats, steps: int, what: str
) -> None:
    """Raise when the first ``steps`` exposures of both series disagree."""
    x = np.asarray(series.exposures[:steps], dtype=np.float64)
    y = np.asarray(background.exposures[:steps], dtype=np.float64)
    if x.shape != y.shape or not np.allclose(x, y):
        raise InsufficientBackgroundFrames(
            f"Background exposures differ from {what} exposures",
            **{f"{what}_exposures": x.tolist(), "background_exposures": y.tolist()},
        )


# ───────────────────────────── public api


def estimate_bounds(
    foreground: SeriesStats, background: SeriesStats, *, sigma: float = 3.0
) -> RegressionBounds:
    """Return the linear-region bounds from blank and dark reference series.

    ``upper = fg.I[t] - sigma·fg.D[t-1]`` and
    ``lower = bg.I[t-1] + sigma·bg.D[t-1]`` where ``t`` is the foreground
    turnover index.
    """
    t = turnover_index(foreground.deviations)
    if background.step_count < t:
        raise InsufficientBackgroundFrames(
            "Background series is shorter than the foreground turnover",
            turnover_index=t,
            background_steps=background.step_count,
        )
    _check_exposure_axis(
        foreground, background, min(t + 1, background.step_count), "foreground"
    )
    upper = float(foreground.intensities[t] - sigma * foreground.deviations[t - 1])
    lower = float(background.intensities[t - 1] + sigma * background.deviations[t - 1])
    logging.info(
        "Regression bounds: upper=%.3f lower=%.3f (turnover=%d)", upper, lower, t
    )
    return RegressionBounds(upper=upper, lower=lower, turnover_index=t)


def pixel_linear_regression(
    sample: SeriesStats,
    background: SeriesStats,
    bounds: RegressionBounds,
    *,
    foreground: SeriesStats | None = None,
    chunk_rows: int = 64,
    cancel: threading.Event | None = None,
) -> RegressionMap:
    """Fit background-subtracted intensity against exposure for every pixel.

    For each pixel the steps are scanned in increasing exposure; scanning
    stops at the first mean above ``bounds.upper`` and every included mean
    below ``bounds.lower`` advances the lower cutoff ``k``. The window
    ``k..j`` (``j`` the last included step) is fitted by least squares.

    Raises
    ------
    InsufficientData
        If the sample has fewer than two exposure steps.
    InsufficientBackgroundFrames
        If the background has fewer steps than the sample or its
        exposures differ from the sample's.
    InconsistentRegressionBounds
        If any pixel has an empty window (``j < k``).
    Cancelled
        If ``cancel`` is set between row chunks.
    """
    z = sample.step_count
    if z <= 1:
        raise InsufficientData(
            "Linear regression needs at least two exposure steps", steps=z
        )
    if background.step_count < z:
        raise InsufficientBackgroundFrames(
            "Background frames fewer than sample frames",
            sample_steps=z,
            background_steps=background.step_count,
        )
    _check_exposure_axis(sample, background, z, "sample")
    x = np.asarray(sample.exposures, dtype=np.float64)

    sample_stack = sample.mean_stack
    background_stack = background.mean_stack[:z]
    height, width = sample.shape
    intercept = np.full((height, width), np.nan, np.float32)
    slope = np.full((height, width), np.nan, np.float32)
    r_squared = np.full((height, width), np.nan, np.float32)
    steps = np.arange(z).reshape(-1, 1, 1)
    chunk = max(int(chunk_rows), 1)
    single_point = 0

    for r0 in range(0, height, chunk):
        if cancel is not None and cancel.is_set():
            raise Cancelled("Regression cancelled", row=r0)
        r1 = min(r0 + chunk, height)
        s = sample_stack[:, r0:r1].astype(np.float64)
        d = s - background_stack[:, r0:r1]

        above = s > bounds.upper
        stop = np.where(above.any(axis=0), above.argmax(axis=0), z)
        included = steps < stop
        k = np.sum((s < bounds.lower) & included, axis=0)
        j = stop - 1

        bad = j < k
        if np.any(bad):
            row, col = (int(v) for v in np.argwhere(bad)[0])
            fg_max = (
                float(foreground.max_intensities[-1])
                if foreground is not None
                else float("nan")
            )
            raise InconsistentRegressionBounds(
                "Error in linear regression bounds estimation; frames may not be "
                "in order of increasing exposure, or the background signal "
                "distribution overlaps the foreground signal distribution",
                upper_bound=bounds.upper,
                lower_bound=bounds.lower,
                max_foreground_intensity=fg_max,
                max_background_intensity=float(background.max_intensities[-1]),
                max_sample_intensity=float(sample.max_intensities[-1]),
                sample_steps=z,
                background_steps=background.step_count,
                pixels_in_chunk=int(bad.sum()),
                first_pixel=(r0 + row, col),
            )

        ic, sl, r2 = _window_fit(x, d, k, j)
        single_point += int(np.sum(j == k))
        intercept[r0:r1] = ic
        slope[r0:r1] = sl
        r_squared[r0:r1] = r2

    if single_point:
        logging.warning(
            "%d pixel(s) had a single-step regression window; stored as NaN",
            single_point,
        )

    result = RegressionMap(
        intercept=_readonly(intercept),
        slope=_readonly(slope),
        r_squared=_readonly(r_squared),
        average_intercept=_finite_mean(intercept),
        average_slope=_finite_mean(slope),
        average_r_squared=_finite_mean(r_squared),
        bounds=bounds,
    )
    logging.info(
        "Regression averages: intercept=%.4g slope=%.4g R^2=%.4f",
        result.average_intercept,
        result.average_slope,
        result.average_r_squared,
    )
    return result


def absorbance_from_slopes(
    sample: RegressionMap, reference: RegressionMap
) -> AbsorbanceMap:
    """Return ``-log10(sample.slope / reference.slope)`` per pixel."""
    if sample.slope.shape != reference.slope.shape:
        raise ValueError(
            f"Slope maps differ in shape: {sample.slope.shape} vs "
            f"{reference.slope.shape}"
        )
    with np.errstate(divide="ignore", invalid="ignore"):
        absorbance = -np.log10(
            sample.slope.astype(np.float64) / reference.slope.astype(np.float64)
        )
    return AbsorbanceMap(
        absorbance=_readonly(absorbance.astype(np.float32)), mode="slope_ratio"
    )


def absorbance_direct(
    sample: SeriesStats,
    reference: np.ndarray,
    min_pix: float,
    max_pix: float | None = None,
) -> AbsorbanceMap:
    """Return absorbance from the first valid exposure of each pixel.

    ``reference`` is either one ``(H, W)`` plane or a ``(steps, H, W)`` stack
    aligned with the sample's exposure axis. A step is valid for a pixel when
    ``min_pix <= mean <= max_pix``; the first valid step is used and later
    steps never overwrite it. Pixels without a valid step are NaN.
    """
    z = sample.step_count
    if z < 1:
        raise InsufficientData("Sample series has no exposure steps", steps=z)
    stack = sample.mean_stack.astype(np.float64)
    ref = np.asarray(reference, dtype=np.float64)
    if ref.ndim == 2:
        if ref.shape != stack.shape[1:]:
            raise ValueError(
                f"Reference shape {ref.shape} differs from {stack.shape[1:]}"
            )
        ref_stack = np.broadcast_to(ref, stack.shape)
    elif ref.ndim == 3:
        if ref.shape[0] < z or ref.shape[1:] != stack.shape[1:]:
            raise ValueError(
                f"Reference stack {ref.shape} does not cover sample {stack.shape}"
            )
        ref_stack = ref[:z]
    else:
        raise ValueError(f"Reference must be 2-D or 3-D, got {ref.ndim}-D")

    if max_pix is None:
        max_pix = float(np.max(ref_stack))

    valid = (stack >= min_pix) & (stack <= max_pix)
    has_valid = valid.any(axis=0)
    first = valid.argmax(axis=0)
    chosen = np.take_along_axis(stack, first[None], axis=0)[0]
    chosen_ref = np.take_along_axis(ref_stack, first[None], axis=0)[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        absorbance = -np.log10(chosen / chosen_ref)
    absorbance = np.where(has_valid, absorbance, np.nan)
    selected = np.where(has_valid, first, -1).astype(np.int32)

    skipped = int(np.sum(~has_valid))
    if skipped:
        logging.info(
            "%d pixel(s) had no exposure inside [%g, %g]", skipped, min_pix, max_pix
        )
    return AbsorbanceMap(
        absorbance=_readonly(absorbance.astype(np.float32)),
        mode="direct",
        selected_step=_readonly(selected),
        min_pix=float(min_pix),
        max_pix=float(max_pix),
    )
