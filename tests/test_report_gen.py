import pytest

yaml = pytest.importorskip("yaml")
tifffile = pytest.importorskip("tifffile")

from utils.config import load_config
from core.report_gen import (
    save_stack,
    save_summary_txt,
    report_csv,
    report_html,
    save_noise_models_json,
)
import numpy as np
import json


def _cfg(tmp_path, data):
    cfg_file = tmp_path / "config.yaml"
    with cfg_file.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh)
    return load_config(cfg_file)


def test_save_stack_labels_and_dtype(tmp_path):
    stack = np.arange(3 * 2 * 2, dtype=np.float64).reshape(3, 2, 2)
    out = tmp_path / "reg" / "red_regression.tiff"
    save_stack(out, stack, ["Y-Intercept", "Slope", "R^2"])
    with tifffile.TiffFile(out) as tif:
        data = tif.asarray()
        labels = tif.imagej_metadata["Labels"]
    assert data.dtype == np.float32
    assert np.allclose(data, stack)
    assert labels == ["Y-Intercept", "Slope", "R^2"]


def test_save_summary_txt_columns(tmp_path):
    cfg = _cfg(
        tmp_path,
        {
            "sensor": {"name": "cam0", "bit_depth": 10},
            "output": {"report_summary": True},
        },
    )
    summary = {
        "foreground": {"Average Slope": 20.0, "Steps": 9},
        "red": {"Average Slope": 10.0, "Steps": 10},
    }
    out_file = tmp_path / "summary.txt"
    save_summary_txt(summary, cfg, out_file)
    text = out_file.read_text(encoding="utf-8")
    assert "Sensor: cam0" in text
    assert "full scale 1023 DN" in text
    assert "Average Slope (DN/ms)" in text
    header = [line for line in text.splitlines() if line.startswith("Metric")][0]
    assert header.split() == ["Metric", "foreground", "red"]


def test_save_summary_txt_disabled(tmp_path):
    cfg = _cfg(tmp_path, {"output": {"report_summary": False}})
    out_file = tmp_path / "summary.txt"
    save_summary_txt({"red": {"Steps": 1}}, cfg, out_file)
    assert not out_file.exists()


def test_report_csv_union_of_columns(tmp_path):
    cfg = _cfg(tmp_path, {})
    rows = [
        {"Channel": "red", "Average Slope": 1.0},
        {"Channel": "bad", "Error": "InsufficientData: x"},
    ]
    out_file = tmp_path / "stats.csv"
    report_csv(rows, cfg, out_file)
    lines = out_file.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Channel,Average Slope,Error"
    assert lines[2].startswith("bad,,")


def test_report_html_summary_text(tmp_path):
    cfg = _cfg(tmp_path, {"output": {"report_html": True}})

    summary_path = tmp_path / "summary.txt"
    summary_text = "Line1\nLine2"
    summary_path.write_text(summary_text, encoding="utf-8")

    html_file = tmp_path / "report.html"
    report_html({}, {}, cfg, html_file)
    html = html_file.read_text(encoding="utf-8")
    assert "Line1" in html and "Line2" in html


def test_save_noise_models_json(tmp_path):
    cfg = _cfg(tmp_path, {"output": {"noise_model_json": True}})
    models = {"red": {"a0": 2.0, "a1": 0.01, "a2": 1e-5, "min_conf_pix": 120}}
    out_file = tmp_path / "noise.json"
    save_noise_models_json(models, cfg, out_file)
    txt = json.loads(out_file.read_text(encoding="utf-8"))
    assert txt["red"]["a0"] == pytest.approx(2.0)
    assert txt["red"]["min_conf_pix"] == 120
