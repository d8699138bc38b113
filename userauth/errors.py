"""
Errors returned to API clients.

Every failure that reaches a client is an :class:`APIError`, tagged with an
:class:`ErrorKind`. The kind determines the HTTP status and the level at which
the failure is logged; handlers dispatch on the kind rather than on exception
classes.
"""

from typing import Any, NamedTuple, Optional
from enum import Enum
import logging

from . import status


class _KindInfo(NamedTuple):
    status_code: int
    default_message: str
    log_level: int


class ErrorKind(Enum):
    """Classes of client-visible failure."""

    BAD_REQUEST = _KindInfo(status.HTTP_400_BAD_REQUEST, 'Bad request',
                            logging.WARNING)
    """Malformed or missing input."""

    UNAUTHORIZED = _KindInfo(status.HTTP_401_UNAUTHORIZED,
                             'Unauthorized access', logging.WARNING)
    """Role escalation attempt, or missing/invalid bearer credential."""

    AUTHENTICATION = _KindInfo(status.HTTP_401_UNAUTHORIZED,
                               'Authentication failed', logging.WARNING)
    """Wrong password, or a refresh token that does not check out."""

    VERIFICATION = _KindInfo(status.HTTP_400_BAD_REQUEST,
                             'Verification failed', logging.WARNING)
    """Any failure of the OTP / verification-token flow."""

    NOT_FOUND = _KindInfo(status.HTTP_404_NOT_FOUND, 'Resource not found',
                          logging.WARNING)

    CONFLICT = _KindInfo(status.HTTP_409_CONFLICT, 'Resource already exists',
                         logging.WARNING)

    METHOD_NOT_ALLOWED = _KindInfo(status.HTTP_405_METHOD_NOT_ALLOWED,
                                   'Method not allowed', logging.WARNING)

    TOO_MANY_REQUESTS = _KindInfo(status.HTTP_429_TOO_MANY_REQUESTS,
                                  'Too many requests', logging.WARNING)

    INTERNAL = _KindInfo(status.HTTP_500_INTERNAL_SERVER_ERROR,
                         'Internal server error', logging.ERROR)
    """Unexpected or wrapped error. Details are never shown to clients."""

    @property
    def status_code(self) -> int:
        """HTTP status for this kind."""
        return self.value.status_code

    @property
    def log_level(self) -> int:
        """Level at which failures of this kind are logged."""
        return self.value.log_level


class APIError(Exception):
    """A failure to be rendered in the error envelope."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None,
                 errors: Optional[Any] = None) -> None:
        self.kind = kind
        self.message = message or kind.value.default_message
        self.errors = errors
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        """HTTP status for this failure."""
        return self.kind.status_code

    def __repr__(self) -> str:
        return f'APIError({self.kind.name}, {self.message!r})'


def bad_request(message: str = 'Bad request',
                errors: Optional[Any] = None) -> APIError:
    """Malformed or missing input."""
    return APIError(ErrorKind.BAD_REQUEST, message, errors)


def unauthorized(message: str = 'Unauthorized access') -> APIError:
    """Missing credentials or a forbidden self-assignment."""
    return APIError(ErrorKind.UNAUTHORIZED, message)


def authentication(message: str = 'Authentication failed') -> APIError:
    """Credentials were presented but did not check out."""
    return APIError(ErrorKind.AUTHENTICATION, message)


def verification(message: str = 'Verification failed',
                 errors: Optional[Any] = None) -> APIError:
    """The OTP flow failed. ``message`` is the human-readable reason."""
    return APIError(ErrorKind.VERIFICATION, message, errors)
