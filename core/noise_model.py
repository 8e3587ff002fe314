# core/noise_model.py – Quadratic noise model and confidence thresholds

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.optimize import curve_fit

from core.errors import InsufficientData
from core.frame_stats import SeriesStats

__all__ = [
    "NoiseModel",
    "quadratic_noise",
    "turnover_index",
    "fit_noise_model",
    "min_conf_pix",
]

DEFAULT_CONFIDENCE_Z = 1.96
DEFAULT_RELATIVE_ERROR = 0.01


@dataclass(frozen=True)
class NoiseModel:
    """``deviation ≈ a0 + a1·I + a2·I²`` fitted up to saturation onset."""

    a0: float
    a1: float
    a2: float
    r_squared: float
    turnover_index: int
    n_points: int

    def predict(self, intensity: np.ndarray | float) -> np.ndarray | float:
        return quadratic_noise(intensity, self.a0, self.a1, self.a2)

    def relative_error(self, intensity: np.ndarray | float) -> np.ndarray | float:
        """Expected ``deviation / intensity`` at ``intensity``."""
        return self.a0 / intensity + self.a1 + self.a2 * intensity

    def as_dict(self) -> dict:
        return {
            "a0": self.a0,
            "a1": self.a1,
            "a2": self.a2,
            "r_squared": self.r_squared,
            "turnover_index": self.turnover_index,
            "n_points": self.n_points,
        }


def quadratic_noise(
    x: np.ndarray | float, a0: float, a1: float, a2: float
) -> np.ndarray | float:
    return a0 + a1 * x + a2 * x * x


def turnover_index(deviations: Sequence[float] | np.ndarray) -> int:
    """Return the saturation boundary of a global deviation curve.

    Scanning from the highest exposure downward, the first drop
    ``d[i] < d[i-1]`` marks the saturated tail; the smallest index of that
    contiguous run of drops is returned. Without any drop the last index is
    returned.
    """
    dev = np.asarray(deviations, dtype=float)
    n = dev.size
    if n < 2:
        raise InsufficientData(
            "Turnover detection needs at least two exposure steps", steps=n
        )
    found = None
    for i in range(n - 1, 0, -1):
        if dev[i] < dev[i - 1]:
            found = i
        elif found is not None:
            break
    return n - 1 if found is None else found


def _r_squared(y: np.ndarray, y_fit: np.ndarray) -> float:
    ss_res = float(np.sum((y - y_fit) ** 2))
    ss_tot = float(np.sum((y - np.mean(y)) ** 2))
    if ss_tot == 0:
        return 1.0 if ss_res == 0 else 0.0
    return 1.0 - ss_res / ss_tot


def fit_noise_model(stats: SeriesStats, *, subsample_step: int = 1) -> NoiseModel:
    """Fit the quadratic noise model to pooled ``(mean, deviation)`` pixels.

    Pixels of every step before the turnover index are pooled.
    ``subsample_step`` > 1 keeps every ``n``-th pooled sample to bound the
    memory of the fit.
    """
    if stats.step_count < 2:
        raise InsufficientData(
            "Noise model needs at least two exposure steps", steps=stats.step_count
        )
    turnover = turnover_index(stats.deviations)
    x = np.concatenate(
        [s.mean.ravel() for s in stats.steps[:turnover]]
    ).astype(np.float64)
    y = np.concatenate(
        [s.deviation.ravel() for s in stats.steps[:turnover]]
    ).astype(np.float64)
    step = max(int(subsample_step), 1)
    if step > 1:
        x = x[::step]
        y = y[::step]

    logging.info(
        "Fitting noise model: turnover=%d steps=%d points=%d",
        turnover,
        stats.step_count,
        x.size,
    )
    popt, _ = curve_fit(
        quadratic_noise, x, y, p0=[float(np.mean(y)), 0.0, 0.0], maxfev=10000
    )
    a0, a1, a2 = (float(p) for p in popt)
    r2 = _r_squared(y, quadratic_noise(x, a0, a1, a2))
    logging.info(
        "Noise model: a0=%.6g a1=%.6g a2=%.6g R^2=%.4f", a0, a1, a2, r2
    )
    return NoiseModel(a0, a1, a2, r2, turnover, int(x.size))


def min_conf_pix(
    model: NoiseModel,
    num_samples: int,
    bit_depth: int,
    *,
    z: float = DEFAULT_CONFIDENCE_Z,
    relative_error: float = DEFAULT_RELATIVE_ERROR,
) -> int:
    """Return the minimum pixel intensity considered reliable.

    ``threshold = 10^(-relative_error·sqrt(num_samples)/z)``; intensities are
    scanned downward from ``2^bit_depth - 1`` and the first one where
    ``1 - (a0/I + a1 + a2·I) <= threshold`` is returned, or ``0`` when none
    qualifies.
    """
    threshold = 10 ** (-relative_error * np.sqrt(num_samples) / z)
    full_scale = (1 << int(bit_depth)) - 1
    if full_scale <= 0:
        return 0
    intensity = np.arange(full_scale, 0, -1, dtype=np.float64)
    ok = 1.0 - model.relative_error(intensity) <= threshold
    if not np.any(ok):
        return 0
    return int(intensity[int(np.argmax(ok))])
