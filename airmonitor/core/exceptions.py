"""
Air Monitor - Exceptions
"""


class AirMonitorError(Exception):
    """Base error for the air monitor service."""


class ValidationError(AirMonitorError):
    """A required numeric field is missing or cannot be parsed."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class DeliveryError(AirMonitorError):
    """Pushing a message to a single subscriber failed."""


class BackendError(AirMonitorError):
    """A configured storage backend failed to complete a call."""


class BackendUnavailableError(BackendError):
    """The durable storage backend is not configured."""
