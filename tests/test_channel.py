#!/usr/bin/env python3
import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("scipy")

from camera import SimulatedCamera
from core.channel import ChannelStats
from core.errors import InsufficientBackgroundFrames
from core.frame_stats import RawSeries
from core.sweep import ExposureSweepController
from utils.config import load_config, sweep_settings

EXPOSURES = [2.0**i for i in range(9)]  # 1 .. 256 ms; blank saturates at 256


def _raw(transmittance, seed, exposures=EXPOSURES):
    cam = SimulatedCamera(8, 6, transmittance=transmittance, seed=seed)
    cam.open()
    return RawSeries.from_steps(
        (e, cam.capture_replicate_frames(e, 8)) for e in exposures
    )


@pytest.fixture(scope="module")
def cfg():
    return load_config()


@pytest.fixture(scope="module")
def references(cfg):
    blank = ChannelStats.from_raw("sim", "foreground", _raw(1.0, 1), cfg)
    dark = ChannelStats.from_raw("sim", "background", _raw(0.0, 2), cfg)
    return blank, dark


def test_meta_from_raw(cfg):
    channel = ChannelStats.from_raw("sim", "red", _raw(0.5, 3), cfg)
    assert channel.meta.width == 8
    assert channel.meta.height == 6
    assert channel.meta.replicates == 8
    assert channel.meta.bit_depth == 12
    assert channel.meta.image_bit_depth == 16


def test_stats_are_memoized_until_raw_changes(cfg):
    channel = ChannelStats.from_raw("sim", "red", _raw(0.5, 3), cfg)
    first = channel.stats()
    assert channel.stats() is first
    model = channel.noise_model()
    assert channel.noise_model() is model

    channel.replace_raw(_raw(0.5, 4))
    assert channel.stats() is not first
    assert channel.noise_model() is not model


def test_recompute_invalidates_noise_model(cfg):
    channel = ChannelStats.from_raw("sim", "red", _raw(0.5, 3), cfg)
    model = channel.noise_model()
    stats = channel.recompute_stats()
    assert stats is channel.stats()
    assert channel.noise_model() is not model


def test_blank_noise_model_turnover(references):
    blank, _ = references
    model = blank.noise_model()
    assert model.turnover_index == len(EXPOSURES) - 1
    assert 0 <= blank.min_conf_pix() <= 4095


def test_regression_is_memoized(references, cfg):
    blank, dark = references
    sample = ChannelStats.from_raw("sim", "red", _raw(0.5, 5), cfg)
    reg = sample.regression(blank, dark)
    assert sample.regression(blank, dark) is reg
    assert blank.bounds(dark) is blank.bounds(dark)
    assert reg.average_r_squared > 0.99


def test_short_background_keeps_shared_references(cfg):
    blank = ChannelStats.from_raw("sim", "foreground", _raw(1.0, 1), cfg)
    dark = ChannelStats.from_raw(
        "sim", "background", _raw(0.0, 2, EXPOSURES[:8]), cfg
    )
    dark_stats = dark.stats()
    bounds = blank.bounds(dark)
    sample = ChannelStats.from_raw("sim", "red", _raw(0.5, 5), cfg)

    with pytest.raises(InsufficientBackgroundFrames):
        sample.regression(blank, dark)
    assert dark.stats() is dark_stats
    assert blank.bounds(dark) is bounds


def test_slope_ratio_absorbance_of_half_transmittance(references, cfg):
    blank, dark = references
    sample = ChannelStats.from_raw("sim", "red", _raw(0.5, 6), cfg)
    result = sample.absorbance(blank, dark, mode="slope_ratio")
    assert np.nanmean(result.absorbance) == pytest.approx(0.301, abs=0.02)


def test_blank_absorbance_against_itself_is_zero(references):
    blank, dark = references
    result = blank.absorbance(blank, dark)
    assert np.allclose(result.absorbance, 0.0, atol=1e-6)


def test_direct_absorbance_uses_blank_steps(references, cfg):
    blank, dark = references
    sample = ChannelStats.from_raw("sim", "red", _raw(0.5, 7), cfg)
    result = sample.absorbance(blank, dark, mode="direct")
    assert result.mode == "direct"
    assert result.absorbance.shape == (6, 8)
    finite = result.absorbance[np.isfinite(result.absorbance)]
    assert np.all(finite > 0)


def test_unknown_mode(references, cfg):
    blank, dark = references
    with pytest.raises(ValueError):
        blank.absorbance(blank, dark, mode="ratio")


def test_from_sweep(cfg):
    cam = SimulatedCamera(8, 6, transmittance=1.0, seed=0)
    cam.open()
    acquisition = {
        "min_exposure_ms": 1,
        "max_exposure_ms": 1024,
        "replicates": 4,
        "shutter_settle_s": 0,
    }
    cfg = dict(cfg, acquisition=acquisition)
    controller = ExposureSweepController(
        sweep_settings(cfg),
        cam.capture_replicate_frames,
        shutter=cam.set_shutter,
        wait_ready=cam.wait_ready,
    )
    channel = ChannelStats.from_sweep(controller, "sim", "foreground", cfg)
    # blank saturates at 256 ms; the dropping step is recorded
    assert list(channel.stats().exposures) == EXPOSURES
    assert channel.raw.step_count == 9
    assert not cam.shutter_open
