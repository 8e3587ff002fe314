# core/plotting.py – Exposure-series and map plotting utilities

from __future__ import annotations

from pathlib import Path
import logging

import matplotlib

matplotlib.use("Agg")  # avoid GUI backend so plotting works inside threads
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
import numpy as np

from core.frame_stats import SeriesStats
from core.noise_model import NoiseModel

__all__ = [
    "plot_global_intensity",
    "plot_global_deviation",
    "plot_noise_model",
    "plot_heatmap",
]


def _validate_positive_finite(arr: np.ndarray, name: str) -> np.ndarray:
    """Return ``arr`` if it is non-empty, finite and strictly positive."""
    arr = np.asarray(arr)
    if arr.size == 0:
        raise ValueError(f"{name} is empty")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains non-finite values")
    if np.any(arr <= 0):
        raise ValueError(f"{name} must be strictly positive")
    return arr


def plot_global_intensity(
    stats: SeriesStats,
    title: str,
    output_path: Path,
    *,
    return_fig: bool = False,
) -> Figure | None:
    """Plot global mean intensity versus exposure time."""
    logging.info("plot_global_intensity: output=%s", output_path)
    exposures = _validate_positive_finite(stats.exposures, "exposures")
    intensities = np.asarray(stats.intensities)

    fig = plt.figure()
    plt.plot(exposures, intensities, "r+", markersize=10)
    plt.xlim(0, exposures[-1] * 1.25)
    top = float(np.max(intensities)) if intensities.size else 1.0
    plt.ylim(0, top * 1.25 if top > 0 else 1.0)
    plt.xlabel("Exposure time (ms)")
    plt.ylabel("Intensity")
    plt.title(title)
    plt.grid(True)
    plt.tight_layout()
    fig.savefig(output_path)
    if return_fig:
        return fig
    plt.close(fig)
    return None


def plot_global_deviation(
    stats: SeriesStats,
    title: str,
    output_path: Path,
    *,
    turnover: int | None = None,
    return_fig: bool = False,
) -> Figure | None:
    """Plot global deviation versus exposure time, marking the turnover step."""
    logging.info("plot_global_deviation: output=%s", output_path)
    exposures = _validate_positive_finite(stats.exposures, "exposures")

    fig = plt.figure()
    plt.plot(exposures, stats.deviations, marker="o")
    if turnover is not None and 0 <= turnover < exposures.size:
        plt.axvline(exposures[turnover], color="k", linestyle="--", label="turnover")
        plt.legend(fontsize=8)
    plt.xscale("log", base=2)
    plt.xlabel("Exposure time (ms)")
    plt.ylabel("Deviation")
    plt.title(title)
    plt.grid(True)
    plt.tight_layout()
    fig.savefig(output_path)
    if return_fig:
        return fig
    plt.close(fig)
    return None


def plot_noise_model(
    stats: SeriesStats,
    model: NoiseModel,
    title: str,
    output_path: Path,
    *,
    max_points: int = 5000,
    return_fig: bool = False,
) -> Figure | None:
    """Scatter pooled ``(mean, deviation)`` pixels with the fitted quadratic."""
    logging.info("plot_noise_model: output=%s", output_path)
    steps = stats.steps[: model.turnover_index]
    x = np.concatenate([s.mean.ravel() for s in steps])
    y = np.concatenate([s.deviation.ravel() for s in steps])
    if x.size > max_points:
        stride = int(np.ceil(x.size / max_points))
        x = x[::stride]
        y = y[::stride]

    fig = plt.figure()
    plt.scatter(x, y, s=4, alpha=0.4, label="pixels")
    if x.size:
        xs = np.linspace(float(np.min(x)), float(np.max(x)), 200)
        plt.plot(
            xs,
            model.predict(xs),
            "k--",
            label=(
                f"fit: {model.a0:.3g} + {model.a1:.3g}·I + {model.a2:.3g}·I² "
                f"(R²={model.r_squared:.3f})"
            ),
        )
    plt.xlabel("Mean (DN)")
    plt.ylabel("Std (DN)")
    plt.title(title)
    plt.grid(True)
    plt.legend(fontsize=8)
    plt.tight_layout()
    fig.savefig(output_path)
    if return_fig:
        return fig
    plt.close(fig)
    return None


def plot_heatmap(
    data: np.ndarray,
    title: str,
    output_path: Path,
    *,
    vmin: float | None = None,
    vmax: float | None = None,
    label: str = "DN",
    return_fig: bool = False,
) -> Figure | None:
    """Draw heatmap with optional value scaling."""

    fig = plt.figure()
    plt.imshow(data, cmap="viridis", vmin=vmin, vmax=vmax)
    plt.title(title)
    plt.colorbar(label=label)
    plt.tight_layout()
    fig.savefig(output_path)
    if return_fig:
        return fig
    plt.close(fig)
    return None
