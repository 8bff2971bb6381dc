"""
Error taxonomy for the edit-session engine.

These exceptions are raised by validators and the content API client and
are caught at the saga/reducer boundary, where they become user-visible
messages. None of them should reach the host as an uncaught exception.
"""

from typing import Any, Optional


class BuilderError(Exception):
    # Base class for intended, meaningful failures.
    pass


class ValidationError(BuilderError):
    """
    Local rejection before any network call (blank text, duplicate label,
    duplicate answer, ordering rule). Never clears in-progress edit state.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class BackendRejection(BuilderError):
    """
    A 2xx response whose body encodes a semantic failure, e.g. a
    "duplicate" or "already belongs to" detail message.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class NetworkError(BuilderError):
    """Transport-level failure: connection error, timeout, non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LibraryCheckFailure(BuilderError):
    # Library lookup failed; callers fall back to creating new content.
    pass
