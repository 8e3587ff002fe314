#!/usr/bin/env python3
import threading

import pytest

np = pytest.importorskip("numpy")

from core.errors import AcquisitionFailed, Cancelled
from core.sweep import ExposureSweepController
from utils.config import SweepSettings


class _Camera:
    """Two replicates ``level ± dev`` so mean and deviation are exact."""

    def __init__(self, saturate_at=None):
        self.saturate_at = saturate_at
        self.calls = []
        self.shutter = []

    def capture(self, exposure, replicates):
        self.calls.append(exposure)
        dev = exposure
        if self.saturate_at is not None and exposure >= self.saturate_at:
            dev = 0.5
        level = 100.0 + 10 * exposure
        return np.stack(
            [np.full((2, 3), level - dev), np.full((2, 3), level + dev)]
        )

    def set_shutter(self, open_):
        self.shutter.append(open_)


def _settings(**kw):
    base = dict(min_exposure=1.0, max_exposure=64.0, replicates=2)
    base.update(kw)
    return SweepSettings(**base)


def _controller(cam, sleeps=None, **kw):
    sleeps = [] if sleeps is None else sleeps
    return ExposureSweepController(
        _settings(**kw),
        cam.capture,
        shutter=cam.set_shutter,
        sleep=sleeps.append,
    )


def test_sweep_stops_after_deviation_drop():
    cam = _Camera(saturate_at=8)
    result = _controller(cam).run("blank")
    assert list(result.raw.exposures) == [1.0, 2.0, 4.0, 8.0]
    assert list(result.stats.deviations) == pytest.approx([1.0, 2.0, 4.0, 0.5])
    assert cam.shutter == [True, False]


def test_sweep_stops_at_max_exposure():
    cam = _Camera()
    result = _controller(cam, max_exposure=16.0).run()
    assert list(result.stats.exposures) == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert cam.calls == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_force_max_ignores_deviation_drop_and_shutter():
    cam = _Camera(saturate_at=8)
    result = _controller(cam, force_max=True).run("dark")
    # the first exposure beyond the maximum is still recorded
    assert list(result.raw.exposures) == [1, 2, 4, 8, 16, 32, 64, 128]
    assert cam.shutter == []


def test_sweep_respects_max_steps():
    cam = _Camera()
    result = _controller(cam, max_steps=3).run()
    assert result.stats.step_count == 3


def test_capture_failure_closes_shutter():
    cam = _Camera()

    def broken(exposure, replicates):
        raise IOError("usb gone")

    controller = ExposureSweepController(
        _settings(), broken, shutter=cam.set_shutter, sleep=lambda s: None
    )
    with pytest.raises(AcquisitionFailed) as excinfo:
        controller.run("red")
    assert isinstance(excinfo.value.__cause__, IOError)
    assert excinfo.value.context["step"] == 1
    assert cam.shutter == [True, False]


def test_empty_capture_is_rejected():
    controller = ExposureSweepController(
        _settings(), lambda e, n: [], sleep=lambda s: None
    )
    with pytest.raises(AcquisitionFailed):
        controller.run()


def test_cancel_between_steps():
    cam = _Camera()
    cancel = threading.Event()

    def capture(exposure, replicates):
        if exposure >= 2:
            cancel.set()
        return cam.capture(exposure, replicates)

    controller = ExposureSweepController(
        _settings(), capture, shutter=cam.set_shutter, cancel=cancel,
        sleep=lambda s: None,
    )
    with pytest.raises(Cancelled):
        controller.run()
    assert cam.calls == [1.0, 2.0]
    assert cam.shutter == [True, False]


def test_ready_signal_skips_settle_delay():
    cam = _Camera()
    sleeps = []
    controller = ExposureSweepController(
        _settings(max_exposure=2.0),
        cam.capture,
        shutter=cam.set_shutter,
        wait_ready=lambda timeout: True,
        sleep=sleeps.append,
    )
    controller.run()
    assert sleeps == []


@pytest.mark.parametrize("wait_ready", [None, lambda timeout: False])
def test_settle_delay_without_ready_signal(wait_ready):
    cam = _Camera()
    sleeps = []
    controller = ExposureSweepController(
        _settings(max_exposure=2.0, shutter_settle_s=0.25),
        cam.capture,
        shutter=cam.set_shutter,
        wait_ready=wait_ready,
        sleep=sleeps.append,
    )
    controller.run()
    assert sleeps == [0.25]


def test_exposure_doubles_from_minimum():
    controller = _controller(_Camera(), min_exposure=0.5)
    assert [controller.exposure_at(s) for s in (1, 2, 3, 4)] == [0.5, 1, 2, 4]


@pytest.mark.parametrize(
    "kw",
    [{"min_exposure": 0.0}, {"max_exposure": 0.5}, {"max_steps": 0}],
)
def test_invalid_settings(kw):
    with pytest.raises(ValueError):
        _settings(**kw)
