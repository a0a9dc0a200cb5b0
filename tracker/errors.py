# tracker/errors.py
"""Domain errors. Each carries the HTTP status the API answers with."""


class TrackerError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TrackerError):
    status_code = 422


class NotFoundError(TrackerError):
    status_code = 404


class ConflictError(TrackerError):
    status_code = 409


class UnavailableError(TrackerError):
    """Platform has no public API. Permanent, never worth retrying."""
    status_code = 501


class UpstreamError(TrackerError):
    status_code = 502
    retryable = True
