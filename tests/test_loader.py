#!/usr/bin/env python3
import pytest

np = pytest.importorskip("numpy")
tifffile = pytest.importorskip("tifffile")

from core.loader import discover_exposures, load_image_stack, load_raw_series
from utils.config import load_config


def _write_stack(folder, stack):
    folder.mkdir(parents=True)
    for i, frame in enumerate(stack):
        tifffile.imwrite(folder / f"frame{i}.tiff", frame)


def test_load_image_stack(tmp_path):
    stack = np.arange(3 * 2 * 2, dtype=np.uint16).reshape(3, 2, 2)
    _write_stack(tmp_path / "s", stack)
    loaded = load_image_stack(tmp_path / "s")
    assert loaded.shape == (3, 2, 2)
    assert np.array_equal(loaded, stack)


def test_load_image_stack_empty(tmp_path):
    (tmp_path / "empty").mkdir()
    with pytest.raises(FileNotFoundError):
        load_image_stack(tmp_path / "empty")


def test_discover_exposures(tmp_path):
    for name in ("16ms", "exp_2", "4", "notes"):
        (tmp_path / name).mkdir()
    assert discover_exposures(tmp_path) == [
        (2.0, "exp_2"),
        (4.0, "4"),
        (16.0, "16ms"),
    ]


def test_load_raw_series_configured_exposures(tmp_path):
    channel = tmp_path / "red"
    _write_stack(channel / "e1", np.full((2, 2, 2), 10, np.uint16))
    _write_stack(channel / "e2", np.full((2, 2, 2), 20, np.uint16))
    cfg = load_config()
    cfg["measurement"]["exposures"] = {
        "2": {"folder": "e2"},
        "1": {"folder": "e1"},
        "4": {"folder": "e4"},  # missing folder is skipped
    }
    raw = load_raw_series(channel, cfg)
    assert raw.exposures == (1.0, 2.0)
    assert int(raw.frames[1][0, 0, 0]) == 20


def test_load_raw_series_discovers_exposures(tmp_path):
    channel = tmp_path / "blank"
    _write_stack(channel / "1ms", np.ones((2, 2, 2), np.uint16))
    _write_stack(channel / "2ms", np.ones((2, 2, 2), np.uint16))
    raw = load_raw_series(channel, load_config())
    assert raw.step_count == 2


def test_load_raw_series_missing_channel(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_raw_series(tmp_path / "nope", load_config())
