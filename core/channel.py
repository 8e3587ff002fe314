# core/channel.py – Per-channel statistics with memoized derived results

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from core.analysis import (
    AbsorbanceMap,
    RegressionBounds,
    RegressionMap,
    absorbance_direct,
    absorbance_from_slopes,
    estimate_bounds,
    pixel_linear_regression,
)
from core.frame_stats import RawSeries, SeriesStats, compute_series_stats
from core.noise_model import NoiseModel, fit_noise_model, min_conf_pix
from core.sweep import ExposureSweepController
from utils import config as cfgutil
from utils.config import ProcessingSettings

__all__ = ["ChannelMeta", "ChannelStats"]


@dataclass(frozen=True)
class ChannelMeta:
    """Static description of one detector/wavelength channel."""

    name: str
    label: str
    width: int
    height: int
    bit_depth: int
    replicates: int

    @property
    def image_bit_depth(self) -> int:
        return cfgutil.image_bit_depth(self.bit_depth)


class ChannelStats:
    """Statistics of one channel and the results derived from them.

    The :class:`SeriesStats` is computed from the raw series on first access
    and recomputed wholesale whenever the raw series is replaced. The noise
    model, bounds and regression are cached against the exact statistics
    objects they were derived from, so a recomputation anywhere upstream
    invalidates them.
    """

    def __init__(
        self,
        meta: ChannelMeta,
        raw: RawSeries,
        *,
        settings: Optional[ProcessingSettings] = None,
        stats: Optional[SeriesStats] = None,
    ) -> None:
        self.meta = meta
        self.settings = settings or ProcessingSettings()
        self._lock = threading.RLock()
        self._raw = raw
        self._stats: Optional[SeriesStats] = stats
        self._stats_source: Optional[RawSeries] = raw if stats is not None else None
        self._noise: Optional[NoiseModel] = None
        self._noise_source: Optional[SeriesStats] = None
        self._bounds: Optional[RegressionBounds] = None
        self._bounds_key: Optional[tuple] = None
        self._regression: Optional[RegressionMap] = None
        self._regression_key: Optional[tuple] = None

    def __repr__(self) -> str:
        return f"ChannelStats({self.meta.name!r}, {self.meta.label!r})"

    # ───────────────────────────── construction

    @classmethod
    def from_raw(
        cls,
        name: str,
        label: str,
        raw: RawSeries,
        cfg: Mapping[str, Any],
        *,
        stats: Optional[SeriesStats] = None,
    ) -> "ChannelStats":
        if raw.step_count == 0:
            raise ValueError(f"Channel {label!r} has no exposure steps")
        replicates, height, width = raw.frames[0].shape
        meta = ChannelMeta(
            name=name,
            label=label,
            width=int(width),
            height=int(height),
            bit_depth=int(cfg.get("sensor", {}).get("bit_depth", 16)),
            replicates=int(replicates),
        )
        return cls(
            meta, raw, settings=cfgutil.processing_settings(cfg), stats=stats
        )

    @classmethod
    def from_sweep(
        cls,
        controller: ExposureSweepController,
        name: str,
        label: str,
        cfg: Mapping[str, Any],
    ) -> "ChannelStats":
        """Acquire a live sweep and wrap its raw frames and statistics."""
        result = controller.run(label)
        return cls.from_raw(name, label, result.raw, cfg, stats=result.stats)

    # ───────────────────────────── raw data

    @property
    def raw(self) -> RawSeries:
        return self._raw

    def replace_raw(self, raw: RawSeries) -> None:
        """Swap the backing raw series; every derived value is invalidated."""
        with self._lock:
            self._raw = raw

    # ───────────────────────────── memoized accessors

    def stats(self) -> SeriesStats:
        with self._lock:
            if self._stats is None or self._stats_source is not self._raw:
                self._stats = compute_series_stats(self._raw)
                self._stats_source = self._raw
            return self._stats

    def recompute_stats(self) -> SeriesStats:
        """Recompute statistics from the raw frames, discarding the cache."""
        with self._lock:
            logging.info("Recomputing statistics for %s", self.meta.label)
            self._stats = compute_series_stats(self._raw)
            self._stats_source = self._raw
            return self._stats

    def noise_model(self) -> NoiseModel:
        with self._lock:
            stats = self.stats()
            if self._noise is None or self._noise_source is not stats:
                self._noise = fit_noise_model(
                    stats, subsample_step=self.settings.noise_fit_subsample
                )
                self._noise_source = stats
            return self._noise

    def min_conf_pix(self, num_samples: Optional[int] = None) -> int:
        """Minimum reliable intensity; ``num_samples`` defaults to the step count."""
        if num_samples is None:
            num_samples = self.stats().step_count
        return min_conf_pix(
            self.noise_model(),
            num_samples,
            self.meta.bit_depth,
            z=self.settings.confidence_z,
            relative_error=self.settings.relative_error,
        )

    def bounds(self, background: "ChannelStats") -> RegressionBounds:
        """Linear-region bounds with this channel as the foreground reference."""
        with self._lock:
            fg_stats = self.stats()
            bg_stats = background.stats()
            key = (fg_stats, bg_stats)
            if self._bounds is None or self._bounds_key != key:
                self._bounds = estimate_bounds(
                    fg_stats, bg_stats, sigma=self.settings.bound_sigma
                )
                self._bounds_key = key
            return self._bounds

    def regression(
        self,
        foreground: "ChannelStats",
        background: "ChannelStats",
        *,
        cancel: Optional[threading.Event] = None,
    ) -> RegressionMap:
        """Per-pixel regression against ``background`` within ``foreground`` bounds."""
        with self._lock:
            stats = self.stats()
            bg_stats = background.stats()
            bounds = foreground.bounds(background)
            key = (stats, foreground.stats(), bg_stats)
            if self._regression is None or self._regression_key != key:
                logging.info(
                    "Regression for %s: %d steps, bounds [%.2f, %.2f]",
                    self.meta.label,
                    stats.step_count,
                    bounds.lower,
                    bounds.upper,
                )
                self._regression = pixel_linear_regression(
                    stats,
                    bg_stats,
                    bounds,
                    foreground=foreground.stats(),
                    chunk_rows=self.settings.regression_chunk_rows,
                    cancel=cancel,
                )
                self._regression_key = key
            return self._regression

    def absorbance(
        self,
        foreground: "ChannelStats",
        background: "ChannelStats",
        *,
        mode: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> AbsorbanceMap:
        """Absorbance of this channel relative to the ``foreground`` blank."""
        mode = mode or self.settings.absorbance_mode
        if mode == "slope_ratio":
            sample_map = self.regression(foreground, background, cancel=cancel)
            reference_map = foreground.regression(
                foreground, background, cancel=cancel
            )
            return absorbance_from_slopes(sample_map, reference_map)
        if mode == "direct":
            stats = self.stats()
            reference = foreground.stats()
            if reference.step_count < stats.step_count:
                logging.info(
                    "%s: direct absorbance limited to %d reference steps",
                    self.meta.label,
                    reference.step_count,
                )
                stats = SeriesStats(stats.steps[: reference.step_count])
            min_pix = self.min_conf_pix(self.stats().step_count)
            return absorbance_direct(
                stats, reference.mean_stack[: stats.step_count], min_pix
            )
        raise ValueError(f"Unknown absorbance mode: {mode}")
