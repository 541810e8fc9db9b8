"""Exception hierarchy for the ingestion pipeline.

Noise rejection is decided as a typed outcome and raised as
``RejectedAsNoise`` only at the HTTP edge. Missing trend history is
not an error at all: the predictor returns None.
"""

from __future__ import annotations


class HydroAlertError(Exception):
    """Base class for all HydroAlert errors."""


class RejectedAsNoise(HydroAlertError):
    """A raw reading deviates implausibly from the device's baseline."""

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(f"{device_id}: {reason}")
        self.device_id = device_id
        self.reason = reason


class StoreUnavailable(HydroAlertError):
    """A persistence call failed (connection lost, timeout, locked DB)."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        detail = f"{operation} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.operation = operation
        self.cause = cause


class InvariantViolation(HydroAlertError):
    """Internal invariant broken; fatal to the current unit of work only."""


class EmptyWindowError(InvariantViolation):
    """Aggregation was asked to reduce a window with no readings."""
