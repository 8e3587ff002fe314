# core/errors.py – Error kinds raised by the statistics/regression engine

from __future__ import annotations

from typing import Any, Dict

__all__ = [
    "AbsorbanceError",
    "InsufficientReplicates",
    "InsufficientData",
    "InsufficientBackgroundFrames",
    "InconsistentRegressionBounds",
    "AcquisitionFailed",
    "Cancelled",
]


class AbsorbanceError(RuntimeError):
    """Base error carrying diagnostic ``context`` values."""

    def __init__(self, message: str, **context: Any) -> None:
        self.context: Dict[str, Any] = dict(context)
        if context:
            details = ", ".join(f"{k}={v!r}" for k, v in context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class InsufficientReplicates(AbsorbanceError):
    """Fewer than one replicate frame for an exposure step."""


class InsufficientData(AbsorbanceError):
    """Fewer than two exposure steps where a fit needs them."""


class InsufficientBackgroundFrames(AbsorbanceError):
    """Background series does not cover the sample's exposure steps."""


class InconsistentRegressionBounds(AbsorbanceError):
    """A pixel has no sample inside ``[lower, upper]``; aborts the regression."""


class AcquisitionFailed(AbsorbanceError):
    """The acquisition capability failed or returned unusable frames."""


class Cancelled(AbsorbanceError):
    """Cooperative cancellation was requested."""
