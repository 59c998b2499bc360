"""
Exception taxonomy for the harness.

Validation errors abort the sweep before any job is launched. Everything
else is recorded against the configuration that caused it and the sweep
moves on.
"""


class HarnessError(Exception):
    """Base class for all harness errors."""


class ValidationError(HarnessError):
    """Invalid external input detected before the sweep starts."""


class ConfigValidationError(ValidationError):
    """A required configuration input is missing or malformed."""


class EmptyAxisError(ValidationError):
    """An axis was declared without any candidate values."""


class InsufficientInventoryError(ValidationError):
    """More nodes were requested than the host inventory holds."""

    def __init__(self, requested: int, available: int, source: str = ""):
        self.requested = requested
        self.available = available
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(
            f"Requested {requested} nodes but only {available} hosts available{where}"
        )


class LaunchError(HarnessError):
    """The external launcher could not be started."""


class LedgerError(HarnessError):
    """Durable run state is unreadable or inconsistent."""


class DuplicateRunError(LedgerError):
    """A Running record already exists for this identity in this session."""


class InvalidTransitionError(LedgerError):
    """A run record was asked to make a transition it cannot make."""


class SweepInterrupted(HarnessError):
    """The harness received a termination signal."""
