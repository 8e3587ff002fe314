"""Metric unit definitions."""

from __future__ import annotations

METRIC_UNITS: dict[str, str] = {
    "Steps": "",
    "Max Exposure": "ms",
    "Upper Bound": "DN",
    "Lower Bound": "DN",
    "Average Intercept": "DN",
    "Average Slope": "DN/ms",
    "Average R^2": "",
    "Noise a0": "DN",
    "Noise a1": "",
    "Noise a2": "1/DN",
    "Noise R^2": "",
    "MinConfPix": "DN",
    "Mean Absorbance": "OD",
    "Elapsed": "s",
}


def format_metric(name: str) -> str:
    """Return metric label with unit in parentheses."""

    unit = METRIC_UNITS.get(name, "")
    return f"{name} ({unit})" if unit else name
