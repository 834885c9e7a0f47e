"""Exceptions raised by ServeTracker."""


class ServeTrackerError(Exception):
    """Base class for ServeTracker errors."""


class ValidationError(ServeTrackerError):
    """Required input is missing or malformed; raised before any remote call."""

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class BackendError(ServeTrackerError):
    """The remote backend rejected a request."""

    def __init__(self, message: str, status_code: int | None = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class BackendUnavailableError(BackendError):
    """The remote backend could not be reached."""
