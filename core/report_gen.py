# core/report_gen.py – Channel result writers (TIFF stacks, summary, CSV, JSON)

from __future__ import annotations

from pathlib import Path
from typing import Dict, Any, Mapping, Sequence
from datetime import datetime

import numpy as np
import tifffile

from utils import config as cfgutil
from utils.metrics import format_metric
import base64
import json
import csv

__all__ = [
    "save_stack",
    "save_summary_txt",
    "report_csv",
    "report_html",
    "save_noise_models_json",
]

# ──────────────────────────────────────────────── helpers


def _write_if_enabled(flag: bool, path: Path, writer) -> None:
    if flag:
        writer(path)


def _b64(img: Path) -> str:
    with img.open("rb") as fh:
        return base64.b64encode(fh.read()).decode()


def _meta_lines(cfg: Mapping[str, Any]) -> list[str]:
    lines: list[str] = []
    sensor_name = cfg.get("sensor", {}).get("name")
    if sensor_name:
        lines.append(f"Sensor: {sensor_name}")
    bits = int(cfg.get("sensor", {}).get("bit_depth", 0))
    if bits > 0:
        lines.append(f"Bit depth: {bits} (full scale {cfgutil.full_scale(cfg)} DN)")
    acq = cfg.get("acquisition", {})
    if acq:
        lines.append(
            "Acquisition: min_exposure_ms={}, max_exposure_ms={}, replicates={}".format(
                acq.get("min_exposure_ms"),
                acq.get("max_exposure_ms"),
                acq.get("replicates"),
            )
        )
    mode = cfg.get("processing", {}).get("absorbance_mode")
    if mode:
        lines.append(f"Absorbance mode: {mode}")
    lines.append(f"Date: {datetime.now().strftime('%Y-%m-%d')}")
    return lines


def _format_value(val: Any) -> str:
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return str(val)
    return f"{val:.4g}"


def _table_lines(summary: Mapping[str, Mapping[str, Any]]) -> list[str]:
    """Metric rows by channel column, padded to the widest cell."""
    channels = list(summary)
    metrics = sorted({m for vals in summary.values() for m in vals})
    table = [["Metric"] + channels]
    for metric in metrics:
        cells = [format_metric(metric)]
        cells += [
            _format_value(summary[ch].get(metric, float("nan"))) for ch in channels
        ]
        table.append(cells)
    widths = [max(len(row[i]) for row in table) for i in range(len(table[0]))]
    widths[0] = max(widths[0], 20)
    return ["  ".join(c.ljust(w) for c, w in zip(row, widths)) for row in table]


# ──────────────────────────────────────────────── public api


def save_stack(
    path: Path,
    stack: np.ndarray,
    labels: Sequence[str] | None = None,
) -> None:
    """Write ``(N,H,W)`` or ``(H,W)`` data as an ImageJ TIFF with slice labels."""
    data = np.asarray(stack)
    # ImageJ hyperstacks only hold uint8, uint16 and float32 samples
    if data.dtype not in (np.uint8, np.uint16, np.float32):
        data = data.astype(np.float32)
    metadata: Dict[str, Any] = {}
    if labels is not None:
        metadata["Labels"] = list(labels)
    path.parent.mkdir(parents=True, exist_ok=True)
    tifffile.imwrite(path, data, imagej=True, metadata=metadata)


def save_summary_txt(
    summary: Dict[str, Dict[str, Any]], cfg: Dict[str, Any], path: Path
) -> None:
    """Write the configuration header and a metric-by-channel table."""
    flag = cfg.get("output", {}).get("report_summary", True)

    def writer(p: Path) -> None:
        lines = _meta_lines(cfg) + [""]
        if summary:
            lines += _table_lines(summary) + [""]
        p.write_text("\n".join(lines), encoding="utf-8")

    _write_if_enabled(flag, path, writer)


def report_csv(rows: list[Dict[str, Any]], cfg: Dict[str, Any], path: Path) -> None:
    """One CSV row per channel; columns are the union of all row keys."""
    if not rows or not cfg.get("output", {}).get("report_csv", True):
        return
    fieldnames = list(dict.fromkeys(key for row in rows for key in row))
    with path.open("w", newline="", encoding="utf-8") as fh:
        w = csv.DictWriter(fh, fieldnames=fieldnames, restval="")
        w.writeheader()
        w.writerows(rows)


def report_html(
    summary: Dict[str, Dict[str, Any]],
    graphs: Dict[str, Path],
    cfg: Dict[str, Any],
    path: Path,
) -> None:
    """Self-contained HTML report with the summary text and embedded plots."""
    if not cfg.get("output", {}).get("report_html", True):
        return

    summary_file = path.parent / "summary.txt"
    if summary_file.is_file():
        summary_text = summary_file.read_text(encoding="utf-8")
    else:
        summary_text = "\n".join(_meta_lines(cfg) + [""] + _table_lines(summary))

    html = [
        "<html><head><meta charset='utf-8'>",
        "<title>Absorbance Calibration Report</title></head><body>",
        "<h1>Absorbance Calibration Summary</h1>",
        f"<pre>{summary_text}</pre>",
    ]
    errors = {ch: vals["Error"] for ch, vals in summary.items() if "Error" in vals}
    if errors:
        html.append("<h2>Failed channels</h2><ul>")
        html += [f"<li>{ch}: {msg}</li>" for ch, msg in errors.items()]
        html.append("</ul>")
    for key, img in graphs.items():
        if not img.exists():
            continue
        html.append(f"<h2>{key.replace('_', ' ').title()}</h2>")
        html.append(f"<img src='data:image/png;base64,{_b64(img)}' width='600'/>")
    html.append("</body></html>")
    path.write_text("\n".join(html), encoding="utf-8")


def save_noise_models_json(
    models: Mapping[str, Mapping[str, Any]], cfg: Dict[str, Any], path: Path
) -> None:
    """Save noise-model coefficients and ``min_conf_pix`` per channel as JSON."""
    flag = cfg.get("output", {}).get("noise_model_json", True)

    def writer(p: Path) -> None:
        out = {label: dict(vals) for label, vals in models.items()}
        p.write_text(json.dumps(out, indent=2), encoding="utf-8")

    _write_if_enabled(flag, path, writer)
