from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .waiter import ConvergenceReport


class ScaleError(Exception):
    """Base class for failures raised while running a scale benchmark."""


class SetupError(ScaleError):
    """Raised when the cluster has nothing to scale."""


class ApplyError(ScaleError):
    """Raised when the cluster rejects a resource mutation."""


class RestoreError(ScaleError):
    """Raised when MachineSets cannot be returned to their previous size."""


class ReadinessError(ScaleError):
    """Raised when the cluster-wide node readiness wait does not complete."""

    def __init__(self, message: str, report: ConvergenceReport | None = None) -> None:
        super().__init__(message)
        self.report = report


class MeasurementError(ScaleError):
    """Raised when the node latency collector fails to stop cleanly."""
