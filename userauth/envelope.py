"""The uniform response envelope."""

from typing import Any, Optional
from datetime import datetime

from pytz import UTC

from .domain import isoformat
from .errors import APIError


def _timestamp() -> Optional[str]:
    return isoformat(datetime.now(tz=UTC))


def success(message: str, data: Optional[Any] = None,
            status_code: int = 200) -> dict:
    """Envelope for a successful response."""
    response = {
        'success': True,
        'message': message,
        'statusCode': status_code,
        'timestamp': _timestamp(),
    }
    if data is not None:
        response['data'] = data
    return response


def failure(error: APIError) -> dict:
    """Envelope for an error response."""
    response = {
        'success': False,
        'message': error.message,
        'statusCode': error.status_code,
        'timestamp': _timestamp(),
    }
    if error.errors:
        response['errors'] = error.errors
    return response
