# core/frame_stats.py – Per-pixel replicate statistics for exposure series

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from core.errors import InsufficientReplicates

__all__ = [
    "RawSeries",
    "FrameStatSet",
    "SeriesStats",
    "compute_frame_stats",
    "compute_series_stats",
]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


def _check_increasing(exposures: Sequence[float]) -> None:
    for prev, cur in zip(exposures, exposures[1:]):
        if not cur > prev:
            raise ValueError(
                f"Exposure times must be strictly increasing: {prev} -> {cur}"
            )


# ───────────────────────────── data model


@dataclass(frozen=True, eq=False)
class RawSeries:
    """Replicate frames per exposure step, ``frames[i]`` shaped ``(N,H,W)``."""

    exposures: Tuple[float, ...]
    frames: Tuple[np.ndarray, ...]

    def __post_init__(self) -> None:
        if len(self.exposures) != len(self.frames):
            raise ValueError("exposures and frames must have the same length")
        if any(e <= 0 for e in self.exposures):
            raise ValueError("Exposure times must be positive")
        _check_increasing(self.exposures)

    @classmethod
    def from_steps(
        cls, steps: Iterable[Tuple[float, Sequence[np.ndarray] | np.ndarray]]
    ) -> "RawSeries":
        exposures: List[float] = []
        frames: List[np.ndarray] = []
        for exposure, stack in steps:
            exposures.append(float(exposure))
            arr = np.asarray(stack)
            if arr.flags.writeable:
                arr = _readonly(arr.copy())
            frames.append(arr)
        return cls(tuple(exposures), tuple(frames))

    @property
    def step_count(self) -> int:
        return len(self.exposures)

    def __len__(self) -> int:
        return len(self.exposures)


@dataclass(frozen=True, eq=False)
class FrameStatSet:
    """Mean/deviation planes and scalar aggregates for one exposure step."""

    exposure: float
    replicates: int
    mean: np.ndarray
    deviation: np.ndarray
    global_mean: float
    global_deviation: float
    max_intensity: float
    min_intensity: float


@dataclass(frozen=True, eq=False)
class SeriesStats:
    """Ordered :class:`FrameStatSet` values of one channel."""

    steps: Tuple[FrameStatSet, ...]
    exposures: np.ndarray = field(init=False, repr=False)
    intensities: np.ndarray = field(init=False, repr=False)
    deviations: np.ndarray = field(init=False, repr=False)
    max_intensities: np.ndarray = field(init=False, repr=False)
    min_intensities: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        exposures = [s.exposure for s in self.steps]
        _check_increasing(exposures)
        shapes = {s.mean.shape for s in self.steps}
        if len(shapes) > 1:
            raise ValueError(f"Inconsistent plane shapes in series: {shapes}")

        def _arr(values: Sequence[float]) -> np.ndarray:
            return _readonly(np.asarray(values, dtype=np.float64))

        object.__setattr__(self, "exposures", _arr(exposures))
        object.__setattr__(
            self, "intensities", _arr([s.global_mean for s in self.steps])
        )
        object.__setattr__(
            self, "deviations", _arr([s.global_deviation for s in self.steps])
        )
        object.__setattr__(
            self, "max_intensities", _arr([s.max_intensity for s in self.steps])
        )
        object.__setattr__(
            self, "min_intensities", _arr([s.min_intensity for s in self.steps])
        )

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def shape(self) -> Tuple[int, int]:
        if not self.steps:
            return (0, 0)
        return self.steps[0].mean.shape

    @property
    def mean_stack(self) -> np.ndarray:
        """Mean planes stacked as ``(steps, H, W)``."""
        return np.stack([s.mean for s in self.steps], axis=0)

    @property
    def deviation_stack(self) -> np.ndarray:
        """Deviation planes stacked as ``(steps, H, W)``."""
        return np.stack([s.deviation for s in self.steps], axis=0)

    def labels(self) -> List[str]:
        """Per-step slice labels (exposure in ms)."""
        return [f"{s.exposure:g}" for s in self.steps]


# ───────────────────────────── public api


def compute_frame_stats(
    frames: Sequence[np.ndarray] | np.ndarray, exposure: float
) -> FrameStatSet:
    """Return per-pixel mean and population deviation of replicate ``frames``.

    Sum and sum of squares are accumulated in float64 in a single pass so the
    frames may come from a memory-mapped stack. The deviation uses
    ``sqrt(abs(E[x^2] - E[x]^2))`` to absorb rounding below zero.

    Raises
    ------
    InsufficientReplicates
        If no frame is supplied.
    """
    total: np.ndarray | None = None
    total_sq: np.ndarray | None = None
    count = 0
    for frame in frames:
        f = np.asarray(frame, dtype=np.float64)
        if total is None:
            total = np.zeros_like(f)
            total_sq = np.zeros_like(f)
        elif f.shape != total.shape:
            raise ValueError(
                f"Replicate shape {f.shape} differs from {total.shape} "
                f"at exposure {exposure:g}"
            )
        total += f
        total_sq += f * f
        count += 1

    if count < 1 or total is None or total_sq is None:
        raise InsufficientReplicates(
            "At least one replicate frame is required",
            exposure=exposure,
            replicates=count,
        )

    mean = total / count
    deviation = np.sqrt(np.abs(total_sq / count - mean * mean))

    mean32 = _readonly(mean.astype(np.float32))
    dev32 = _readonly(deviation.astype(np.float32))
    return FrameStatSet(
        exposure=float(exposure),
        replicates=count,
        mean=mean32,
        deviation=dev32,
        global_mean=float(np.mean(mean)),
        global_deviation=float(np.sqrt(np.mean(deviation**2))),
        max_intensity=float(np.max(mean32)),
        min_intensity=float(np.min(mean32)),
    )


def compute_series_stats(raw: RawSeries) -> SeriesStats:
    """Apply :func:`compute_frame_stats` to every step of ``raw``."""
    steps = []
    for exposure, frames in zip(raw.exposures, raw.frames):
        stat = compute_frame_stats(frames, exposure)
        logging.debug(
            "Exposure %g ms: mean=%.3f deviation=%.3f (n=%d)",
            exposure,
            stat.global_mean,
            stat.global_deviation,
            stat.replicates,
        )
        steps.append(stat)
    return SeriesStats(tuple(steps))
