# core/pipeline.py – High-level absorbance calibration pipeline

from __future__ import annotations

import dataclasses
import functools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import numpy as np

__all__ = [
    "ChannelResult",
    "process_channel",
    "analyse_channels",
    "run_pipeline",
    "run_simulation",
]

from utils.logger import log_memory_usage, apply_logging_config
import utils.config as cfgutil
from camera import SimulatedCamera
from core.analysis import AbsorbanceMap, RegressionMap, REGRESSION_LABELS
from core.channel import ChannelStats
from core.errors import Cancelled
from core.loader import load_raw_series
from core.noise_model import NoiseModel
from core.sweep import ExposureSweepController
from core.plotting import (
    plot_global_intensity,
    plot_global_deviation,
    plot_noise_model,
    plot_heatmap,
)
from core.report_gen import (
    save_stack,
    save_summary_txt,
    report_csv,
    report_html,
    save_noise_models_json,
)

pipeline_lock = threading.Lock()

ChannelSource = Union[ChannelStats, Callable[[], ChannelStats]]

FOREGROUND = "foreground"
BACKGROUND = "background"


@dataclass
class ChannelResult:
    """Outcome of one channel; ``error`` set means no maps were produced."""

    label: str
    channel: Optional[ChannelStats] = None
    noise_model: Optional[NoiseModel] = None
    min_conf_pix: Optional[int] = None
    regression: Optional[RegressionMap] = None
    absorbance: Optional[AbsorbanceMap] = None
    elapsed_s: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _save_channel_stacks(
    channel: ChannelStats, cfg: Dict[str, Any], out_dir: Path
) -> None:
    out = cfg.get("output", {})
    label = channel.meta.label
    stats = channel.stats()
    if out.get("save_raw", False):
        for exposure, frames in zip(channel.raw.exposures, channel.raw.frames):
            save_stack(
                out_dir / "raw" / f"{label}_{exposure:g}ms.tiff",
                frames,
                [f"{exposure:g}"] * len(frames),
            )
    if out.get("save_mean", True):
        save_stack(
            out_dir / "mean" / f"{label}_mean.tiff", stats.mean_stack, stats.labels()
        )
    if out.get("save_std", True):
        save_stack(
            out_dir / "std" / f"{label}_std.tiff",
            stats.deviation_stack,
            stats.labels(),
        )


def process_channel(
    channel: ChannelStats,
    foreground: ChannelStats,
    background: ChannelStats,
    cfg: Dict[str, Any],
    out_dir: Path,
    *,
    cancel: Optional[threading.Event] = None,
) -> ChannelResult:
    """Compute and save statistics, regression and absorbance for one channel.

    Errors are logged and reported in the returned :class:`ChannelResult`;
    they never affect other channels.
    """
    label = channel.meta.label
    out = cfg.get("output", {})
    start = time.perf_counter()
    try:
        _save_channel_stacks(channel, cfg, out_dir)
        model = channel.noise_model()
        mcp = channel.min_conf_pix()
        regression = channel.regression(foreground, background, cancel=cancel)
        if out.get("save_regression", True):
            save_stack(
                out_dir / "regression" / f"{label}_regression.tiff",
                regression.as_stack(),
                REGRESSION_LABELS,
            )
        absorbance = channel.absorbance(foreground, background, cancel=cancel)
        if out.get("save_absorbance", True):
            save_stack(
                out_dir / "absorbance" / f"{label}_absorbance.tiff",
                absorbance.absorbance,
                [label],
            )
    except Cancelled:
        raise
    except Exception as exc:
        logging.exception("Channel %s failed: %s", label, exc)
        return ChannelResult(
            label=label,
            channel=channel,
            elapsed_s=time.perf_counter() - start,
            error=f"{type(exc).__name__}: {exc}",
        )
    elapsed = time.perf_counter() - start
    logging.info("Channel %s completed in %.1f ms", label, elapsed * 1000)
    return ChannelResult(
        label=label,
        channel=channel,
        noise_model=model,
        min_conf_pix=mcp,
        regression=regression,
        absorbance=absorbance,
        elapsed_s=elapsed,
    )


def _summary_row(result: ChannelResult) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    if result.channel is not None:
        stats = result.channel.stats()
        row["Steps"] = stats.step_count
        row["Max Exposure"] = float(stats.exposures[-1])
    if result.regression is not None:
        reg = result.regression
        row["Upper Bound"] = reg.bounds.upper
        row["Lower Bound"] = reg.bounds.lower
        row["Average Intercept"] = reg.average_intercept
        row["Average Slope"] = reg.average_slope
        row["Average R^2"] = reg.average_r_squared
    if result.noise_model is not None:
        nm = result.noise_model
        row["Noise a0"] = nm.a0
        row["Noise a1"] = nm.a1
        row["Noise a2"] = nm.a2
        row["Noise R^2"] = nm.r_squared
    if result.min_conf_pix is not None:
        row["MinConfPix"] = result.min_conf_pix
    if result.absorbance is not None:
        values = result.absorbance.absorbance
        finite = values[np.isfinite(values)]
        row["Mean Absorbance"] = (
            float(np.mean(finite)) if finite.size else float("nan")
        )
    row["Elapsed"] = result.elapsed_s
    if result.error is not None:
        row["Error"] = result.error
    return row


def _plot_channel(result: ChannelResult, out_dir: Path) -> Dict[str, Path]:
    graphs: Dict[str, Path] = {}
    if result.channel is None:
        return graphs
    label = result.label
    stats = result.channel.stats()
    plot_dir = out_dir / "plots"
    plot_dir.mkdir(parents=True, exist_ok=True)
    graphs[f"{label}_intensity"] = plot_dir / f"{label}_intensity.png"
    plot_global_intensity(stats, label, graphs[f"{label}_intensity"])
    turnover = result.noise_model.turnover_index if result.noise_model else None
    graphs[f"{label}_deviation"] = plot_dir / f"{label}_deviation.png"
    plot_global_deviation(
        stats, label, graphs[f"{label}_deviation"], turnover=turnover
    )
    if result.noise_model is not None:
        graphs[f"{label}_noise_model"] = plot_dir / f"{label}_noise_model.png"
        plot_noise_model(
            stats, result.noise_model, label, graphs[f"{label}_noise_model"]
        )
    if result.absorbance is not None:
        graphs[f"{label}_absorbance"] = plot_dir / f"{label}_absorbance.png"
        plot_heatmap(
            result.absorbance.absorbance,
            f"{label} absorbance",
            graphs[f"{label}_absorbance"],
            label="OD",
        )
    return graphs


def _prepare_references(
    foreground: ChannelStats,
    background: ChannelStats,
    cancel: Optional[threading.Event],
) -> None:
    """Compute and publish the shared reference results before any task reads them."""
    try:
        background.stats()
        foreground.stats()
        foreground.noise_model()
        foreground.bounds(background)
        foreground.regression(foreground, background, cancel=cancel)
    except Cancelled:
        raise
    except Exception as exc:
        raise RuntimeError(
            f"Reference channels could not be computed: {exc}"
        ) from exc


def analyse_channels(
    channels: Iterable[Tuple[str, ChannelSource]],
    foreground: ChannelStats,
    background: ChannelStats,
    cfg: Dict[str, Any],
    out_dir: Path,
    *,
    n_channels: Optional[int] = None,
    progress: Optional[Callable[[int], None]] = None,
    status: Optional[Callable[[str], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Run every channel through the pipeline on a worker pool.

    Each entry of ``channels`` is a :class:`ChannelStats` or a callable that
    loads or acquires one; it is invoked here, in order, and the channel is
    submitted as soon as it exists. A failing callable only fails its channel.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    settings = cfgutil.processing_settings(cfg)

    if cancel is None:
        cancel = threading.Event()
    if status:
        status("Computing reference channels...")
    _prepare_references(foreground, background, cancel)
    log_memory_usage("after references: ")

    if n_channels is None:
        n_channels = len(cfgutil.channel_entries(cfg)) or 1
    workers = settings.workers if settings.workers > 0 else max(n_channels, 1)

    results: Dict[str, ChannelResult] = {}
    futures: Dict[str, Future] = {}
    with ThreadPoolExecutor(max_workers=workers) as pool:
        try:
            futures[FOREGROUND] = pool.submit(
                process_channel, foreground, foreground, background, cfg, out_dir,
                cancel=cancel,
            )
            for label, source in channels:
                if status:
                    status(f"Processing channel {label}")
                if callable(source):
                    try:
                        channel = source()
                    except Cancelled:
                        raise
                    except Exception as exc:
                        logging.exception(
                            "Channel %s could not be loaded: %s", label, exc
                        )
                        results[label] = ChannelResult(
                            label=label, error=f"{type(exc).__name__}: {exc}"
                        )
                        continue
                else:
                    channel = source
                logging.info("Submitting channel %s", label)
                futures[label] = pool.submit(
                    process_channel, channel, foreground, background, cfg, out_dir,
                    cancel=cancel,
                )
            for idx, (label, fut) in enumerate(futures.items(), start=1):
                results[label] = fut.result()
                if progress:
                    progress(int(80 * idx / len(futures)))
        except BaseException:
            # the pool joins its workers on exit; they stop at the next cancel check
            cancel.set()
            for fut in futures.values():
                fut.cancel()
            raise

    _save_channel_stacks(background, cfg, out_dir)
    log_memory_usage("after channels: ")
    summary = {label: _summary_row(res) for label, res in results.items()}
    rows = [{"Channel": label, **vals} for label, vals in summary.items()]
    save_summary_txt(
        {
            label: {m: v for m, v in vals.items() if m != "Error"}
            for label, vals in summary.items()
        },
        cfg,
        out_dir / "summary.txt",
    )
    report_csv(rows, cfg, out_dir / "channel_stats.csv")
    save_noise_models_json(
        {
            label: {
                **res.noise_model.as_dict(),
                "min_conf_pix": res.min_conf_pix,
            }
            for label, res in results.items()
            if res.noise_model is not None
        },
        cfg,
        out_dir / "noise_model.json",
    )

    graphs: Dict[str, Path] = {}
    if cfg.get("output", {}).get("plots", True):
        if status:
            status("Plotting graphs...")
        for res in results.values():
            graphs.update(_plot_channel(res, out_dir))
    report_html(summary, graphs, cfg, out_dir / "report.html")

    failed = [label for label, res in results.items() if not res.ok]
    if failed:
        logging.warning("Channels failed: %s", ", ".join(failed))
    if progress:
        progress(100)
    return {"summary": summary, "results": results, "graphs": graphs}


def run_pipeline(
    project: Path,
    cfg: Dict[str, Any],
    *,
    progress: Optional[Callable[[int], None]] = None,
    status: Optional[Callable[[str], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Analyse a project folder of replicate TIFF stacks."""
    apply_logging_config(cfg)
    project = Path(project)
    logging.info("Pipeline start: %s", project)
    with pipeline_lock:
        try:
            log_memory_usage("start: ")
            if status:
                status("Loading images...")
            if progress:
                progress(0)

            def _load(label: str) -> ChannelStats:
                folder = cfgutil.find_channel_folder(project, label, cfg)
                raw = load_raw_series(folder, cfg)
                return ChannelStats.from_raw(project.name, label, raw, cfg)

            foreground = _load(FOREGROUND)
            background = _load(BACKGROUND)
            entries = cfgutil.channel_entries(cfg)

            channels = [
                (label, functools.partial(_load, label)) for label, _ in entries
            ]
            out_dir = project / cfg["output"].get("output_dir", "output")
            result = analyse_channels(
                channels,
                foreground,
                background,
                cfg,
                out_dir,
                n_channels=len(entries),
                progress=progress,
                status=status,
                cancel=cancel,
            )
            logging.info("Pipeline completed")
            log_memory_usage("pipeline end: ")
            return result
        except Exception as e:  # pragma: no cover - log path
            logging.exception("Pipeline error: %s", e)
            raise


def _camera(
    cfg: Dict[str, Any], transmittance: float, seed_offset: int = 0
) -> SimulatedCamera:
    sim = cfg.get("simulation", {})
    seed = sim.get("seed")
    if seed is not None:
        # one noise stream per camera
        seed = int(seed) + seed_offset
    cam = SimulatedCamera(
        int(sim.get("width", 64)),
        int(sim.get("height", 48)),
        bit_depth=int(cfg.get("sensor", {}).get("bit_depth", 12)),
        dark_level=float(sim.get("dark_level", 100.0)),
        gain=float(sim.get("gain", 1.0)),
        read_noise=float(sim.get("read_noise", 2.0)),
        photon_rate=float(sim.get("photon_rate", 20.0)),
        transmittance=transmittance,
        seed=seed,
    )
    cam.open()
    return cam


def _sweep_channel(
    cfg: Dict[str, Any],
    label: str,
    transmittance: float,
    settings: cfgutil.SweepSettings,
    cancel: Optional[threading.Event],
    *,
    seed_offset: int = 0,
) -> ChannelStats:
    cam = _camera(cfg, transmittance, seed_offset)
    try:
        controller = ExposureSweepController(
            settings,
            cam.capture_replicate_frames,
            shutter=cam.set_shutter,
            wait_ready=cam.wait_ready,
            cancel=cancel,
        )
        return ChannelStats.from_sweep(controller, "simulation", label, cfg)
    finally:
        cam.close()


def run_simulation(
    cfg: Dict[str, Any],
    out_dir: Path,
    *,
    progress: Optional[Callable[[int], None]] = None,
    status: Optional[Callable[[str], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Acquire dark, blank and sample channels with :class:`SimulatedCamera`.

    The dark reference is swept to the maximum exposure so it covers every
    sample step; samples are analysed while the next one is acquired.
    """
    apply_logging_config(cfg)
    settings = cfgutil.sweep_settings(cfg)
    if cancel is None:
        cancel = threading.Event()
    transmittance = cfg.get("simulation", {}).get("transmittance", {}) or {}
    entries = cfgutil.channel_entries(cfg)
    with pipeline_lock:
        if status:
            status("Acquiring references...")
        dark_settings = dataclasses.replace(settings, force_max=True)
        background = _sweep_channel(
            cfg, BACKGROUND, 0.0, dark_settings, cancel, seed_offset=0
        )
        foreground = _sweep_channel(
            cfg, FOREGROUND, 1.0, settings, cancel, seed_offset=1
        )

        channels = [
            (
                label,
                functools.partial(
                    _sweep_channel,
                    cfg,
                    label,
                    float(transmittance.get(label, 0.5)),
                    settings,
                    cancel,
                    seed_offset=2 + i,
                ),
            )
            for i, (label, _) in enumerate(entries)
        ]
        return analyse_channels(
            channels,
            foreground,
            background,
            cfg,
            Path(out_dir),
            n_channels=len(entries),
            progress=progress,
            status=status,
            cancel=cancel,
        )
