"""
Custom exceptions for the media relay service.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay service errors."""
    pass


class ConfigurationError(RelayError):
    """Raised when configuration is invalid or missing."""
    pass


class RequestValidationError(RelayError):
    """Raised when an incoming request body or query is malformed."""
    pass


class OriginFetchError(RelayError):
    """Raised when the content origin returns a non-200 status."""

    def __init__(self, status: int, url: str = ''):
        super().__init__(f"Origin returned status {status} for {url}")
        self.status = status
        self.url = url


class AuthError(RelayError):
    """Raised when a storage backend session token cannot be acquired."""
    pass


class SinkError(RelayError):
    """Base exception for object sink failures."""
    pass


class ObjectNotFoundError(SinkError):
    """Raised when the requested object does not exist in a sink."""

    def __init__(self, key: str, sink: str = ''):
        super().__init__(f"Object not found: {key}" + (f" (sink: {sink})" if sink else ''))
        self.key = key
        self.sink = sink


class TransferToolError(SinkError):
    """Raised when the external transfer tool exits non-zero or its pipe breaks."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class SinkApiError(SinkError):
    """Raised when an object store SDK or HTTP call returns a non-success status."""

    def __init__(self, status: Optional[int], message: str):
        super().__init__(f"Storage API error: {status} - {message}")
        self.status = status
        self.message = message


class FanOutError(RelayError):
    """Raised when one or more tee consumers stopped reading before end of stream."""

    def __init__(self, broken: list):
        super().__init__(f"Stream consumers stopped early: {broken}")
        self.broken = broken


class RelayFailedError(RelayError):
    """
    Raised when at least one selected sink failed.

    Sinks that succeeded keep their copy; the outcome records both sides.
    """

    def __init__(self, outcome):
        failed = ', '.join(d.name for d in outcome.failed)
        super().__init__(f"Relay failed for sinks: {failed}")
        self.outcome = outcome

    @property
    def first_error(self) -> Exception:
        return self.outcome.first_error


class MoveError(RelayError):
    """Raised when the destination write of a move fails."""
    pass


class RetryExhaustedError(SinkError):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts
