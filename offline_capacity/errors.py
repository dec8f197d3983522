from __future__ import annotations


class CapacityEngineError(Exception):
    """Base class for capacity engine failures."""


class ControlPlaneError(CapacityEngineError):
    """A node manager control plane call failed."""

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CheckpointError(CapacityEngineError):
    """The schedule checkpoint could not be read or written."""
