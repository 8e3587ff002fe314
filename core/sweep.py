# core/sweep.py – Doubling-exposure acquisition sweep

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from core.errors import AcquisitionFailed, Cancelled
from core.frame_stats import (
    FrameStatSet,
    RawSeries,
    SeriesStats,
    compute_frame_stats,
)
from utils.config import SweepSettings

__all__ = [
    "acquisition_lock",
    "SweepResult",
    "ExposureSweepController",
]

CaptureFn = Callable[[float, int], Sequence[np.ndarray] | np.ndarray]
ShutterFn = Callable[[bool], None]
ReadyFn = Callable[[float], bool]

# only one acquisition may touch the camera at a time
acquisition_lock = threading.Lock()


@dataclass(frozen=True, eq=False)
class SweepResult:
    raw: RawSeries
    stats: SeriesStats


class ExposureSweepController:
    """Acquire replicate frames at doubling exposures until saturation.

    Parameters
    ----------
    settings:
        Sweep limits and shutter behaviour.
    capture:
        ``capture(exposure_ms, replicates)`` returning replicate planes.
    shutter:
        Optional ``shutter(open)`` capability.
    wait_ready:
        Optional ``wait_ready(timeout) -> bool`` signal used after opening the
        shutter; the fixed settle delay is used when it is missing or fails.
    cancel:
        Event checked before each exposure step.
    """

    def __init__(
        self,
        settings: SweepSettings,
        capture: CaptureFn,
        *,
        shutter: Optional[ShutterFn] = None,
        wait_ready: Optional[ReadyFn] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._capture = capture
        self._shutter = shutter
        self._wait_ready = wait_ready
        self._cancel = cancel
        self._sleep = sleep

    def exposure_at(self, step: int) -> float:
        """Exposure of 1-based ``step``."""
        return self.settings.min_exposure * 2 ** (step - 1)

    def _uses_shutter(self) -> bool:
        s = self.settings
        return self._shutter is not None and s.use_auto_shutter and not s.force_max

    def _open_shutter(self) -> None:
        try:
            self._shutter(True)
        except Exception as exc:
            raise AcquisitionFailed("Shutter could not be opened") from exc
        if self._wait_ready is not None:
            if self._wait_ready(self.settings.ready_timeout_s):
                return
            logging.info("Camera not ready after shutter open; using settle delay")
        self._sleep(self.settings.shutter_settle_s)

    def _acquire(self, exposure: float, step: int) -> np.ndarray:
        replicates = self.settings.replicates
        try:
            frames = self._capture(exposure, replicates)
        except Exception as exc:
            raise AcquisitionFailed(
                "Frame capture failed", exposure=exposure, step=step
            ) from exc
        stack = np.asarray(frames) if frames is not None else np.empty((0,))
        if stack.ndim != 3 or stack.shape[0] < 1:
            raise AcquisitionFailed(
                "Capture returned no usable frames",
                exposure=exposure,
                step=step,
                shape=tuple(stack.shape),
            )
        if stack.shape[0] != replicates:
            logging.warning(
                "Requested %d replicates at %g ms, got %d",
                replicates,
                exposure,
                stack.shape[0],
            )
        return stack

    def _sweep(
        self, label: str
    ) -> Tuple[List[float], List[np.ndarray], List[FrameStatSet]]:
        s = self.settings
        exposures: List[float] = []
        raw: List[np.ndarray] = []
        stats: List[FrameStatSet] = []
        for step in range(1, s.max_steps + 1):
            if self._cancel is not None and self._cancel.is_set():
                raise Cancelled("Sweep cancelled", channel=label, step=step)
            exposure = self.exposure_at(step)
            overshoot = exposure > s.max_exposure
            if overshoot and not s.force_max:
                logging.info(
                    "%s: %g ms exceeds maximum %g ms; sweep stopped",
                    label,
                    exposure,
                    s.max_exposure,
                )
                break

            frames = self._acquire(exposure, step)
            stat = compute_frame_stats(frames, exposure)
            exposures.append(exposure)
            raw.append(frames)
            stats.append(stat)
            logging.info(
                "%s step %d: exposure=%g ms mean=%.2f deviation=%.3f",
                label,
                step,
                exposure,
                stat.global_mean,
                stat.global_deviation,
            )

            if overshoot:
                logging.info("%s: forced maximum exposure reached", label)
                break
            if (
                not s.force_max
                and step > 1
                and stat.global_deviation < stats[-2].global_deviation
            ):
                logging.info(
                    "%s: deviation dropped at %g ms; saturation onset", label, exposure
                )
                break
        return exposures, raw, stats

    def run(self, label: str = "") -> SweepResult:
        """Run the sweep and return the finalized raw frames and statistics.

        Raises
        ------
        AcquisitionFailed
            If the capture capability fails; no partial series is returned.
        Cancelled
            If the cancel event is set between exposure steps.
        """
        with acquisition_lock:
            use_shutter = self._uses_shutter()
            if use_shutter:
                self._open_shutter()
            try:
                exposures, raw, stats = self._sweep(label)
            finally:
                if use_shutter:
                    self._shutter(False)
        if not stats:
            raise AcquisitionFailed(
                "Sweep recorded no exposure step",
                channel=label,
                min_exposure=self.settings.min_exposure,
                max_exposure=self.settings.max_exposure,
            )
        return SweepResult(
            raw=RawSeries.from_steps(zip(exposures, raw)),
            stats=SeriesStats(tuple(stats)),
        )
