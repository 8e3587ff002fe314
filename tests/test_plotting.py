#!/usr/bin/env python3
import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("matplotlib")

from core import plotting
from core.frame_stats import FrameStatSet, SeriesStats
from core.noise_model import NoiseModel


def _stats(exposures, means, deviations):
    steps = []
    for e, m, d in zip(exposures, means, deviations):
        mean = np.full((2, 2), m, np.float32) + np.arange(4).reshape(2, 2)
        steps.append(
            FrameStatSet(
                exposure=e,
                replicates=4,
                mean=mean.astype(np.float32),
                deviation=np.full((2, 2), d, np.float32),
                global_mean=float(mean.mean()),
                global_deviation=float(d),
                max_intensity=float(mean.max()),
                min_intensity=float(mean.min()),
            )
        )
    return SeriesStats(tuple(steps))


def test_plot_global_intensity(tmp_path):
    stats = _stats([1.0, 2.0, 4.0], [10, 20, 40], [1, 2, 3])
    fig = plotting.plot_global_intensity(
        stats, "red", tmp_path / "intensity.png", return_fig=True
    )
    assert (tmp_path / "intensity.png").is_file()
    ax = fig.axes[0]
    assert ax.get_xlabel() == "Exposure time (ms)"
    assert list(ax.lines[0].get_ydata()) == pytest.approx([11.5, 21.5, 41.5])


def test_plot_global_intensity_invalid_exposure(tmp_path):
    stats = _stats([0.0, 1.0], [10, 20], [1, 2])
    with pytest.raises(ValueError):
        plotting.plot_global_intensity(stats, "bad", tmp_path / "bad.png")


def test_plot_global_deviation_marks_turnover(tmp_path):
    stats = _stats([1.0, 2.0, 4.0, 8.0], [10, 20, 40, 80], [1, 2, 3, 1])
    fig = plotting.plot_global_deviation(
        stats, "blank", tmp_path / "dev.png", turnover=3, return_fig=True
    )
    ax = fig.axes[0]
    marker = [
        l
        for l in ax.lines
        if l.get_color() == "k" and l.get_linestyle() == "--"
    ]
    assert len(marker) == 1
    assert marker[0].get_xdata()[0] == pytest.approx(8.0)


def test_plot_noise_model(tmp_path):
    stats = _stats([1.0, 2.0, 4.0], [10, 20, 40], [1, 2, 3])
    model = NoiseModel(0.5, 0.05, 0.0, 0.98, 2, 8)
    fig = plotting.plot_noise_model(
        stats, model, "red", tmp_path / "noise.png", return_fig=True
    )
    ax = fig.axes[0]
    x = ax.collections[0].get_offsets().data[:, 0]
    assert x.size == 8  # steps before the turnover only
    assert ax.get_xlabel() == "Mean (DN)"
    assert ax.get_ylabel() == "Std (DN)"


def test_plot_noise_model_subsamples(tmp_path):
    stats = _stats([1.0, 2.0, 4.0], [10, 20, 40], [1, 2, 3])
    model = NoiseModel(0.5, 0.05, 0.0, 0.98, 3, 12)
    fig = plotting.plot_noise_model(
        stats, model, "red", tmp_path / "noise.png", max_points=5, return_fig=True
    )
    assert fig.axes[0].collections[0].get_offsets().shape[0] <= 5


def test_plot_heatmap_vmin_vmax(tmp_path):
    data = np.arange(4).reshape(2, 2)
    plotting.plot_heatmap(
        data,
        "heat",
        tmp_path / "heat.png",
        vmin=0.0,
        vmax=3.0,
    )
    assert (tmp_path / "heat.png").is_file()
