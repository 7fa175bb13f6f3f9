"""Custom exceptions for Threadline."""

from typing import Optional


class ThreadlineError(Exception):
    """Base class for errors raised by Threadline."""


class GatewayError(ThreadlineError):
    """Raised when the upstream messaging gateway returns an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)


class MediaDecodeError(ThreadlineError):
    """Raised when a media payload cannot be decoded into bytes."""

