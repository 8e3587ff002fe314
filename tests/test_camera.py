#!/usr/bin/env python3
import pytest

np = pytest.importorskip("numpy")

from camera import SimulatedCamera


def test_capture_requires_open():
    cam = SimulatedCamera(4, 3)
    with pytest.raises(RuntimeError):
        cam.capture_replicate_frames(1.0, 2)


def test_capture_shape_and_dtype():
    cam = SimulatedCamera(4, 3, seed=0)
    cam.open()
    frames = cam.capture_replicate_frames(2.0, 5)
    assert frames.shape == (5, 3, 4)
    assert frames.dtype == np.uint16
    assert cam.captures == [(2.0, 5)]


def test_closed_shutter_gives_dark_level():
    cam = SimulatedCamera(16, 16, dark_level=100.0, read_noise=1.0, seed=0)
    cam.open()
    cam.set_shutter(False)
    frames = cam.capture_replicate_frames(1000.0, 4)
    assert frames.mean() == pytest.approx(100.0, abs=0.5)


def test_signal_scales_with_transmittance():
    full = SimulatedCamera(16, 16, read_noise=0.0, transmittance=1.0, seed=0)
    half = SimulatedCamera(16, 16, read_noise=0.0, transmittance=0.5, seed=0)
    for cam in (full, half):
        cam.open()
    s_full = full.capture_replicate_frames(50.0, 4).mean() - full.dark_level
    s_half = half.capture_replicate_frames(50.0, 4).mean() - half.dark_level
    assert s_half / s_full == pytest.approx(0.5, abs=0.02)


def test_saturation_clips_at_full_scale():
    cam = SimulatedCamera(4, 4, bit_depth=10, seed=0)
    cam.open()
    frames = cam.capture_replicate_frames(10000.0, 3)
    assert cam.full_scale == 1023
    assert np.all(frames == 1023)
