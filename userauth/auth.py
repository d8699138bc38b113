"""
Bearer-token authentication for protected routes.

Use :func:`authenticated` to protect a route. The decorated route is called
with an :class:`AuthContext` as the ``auth`` keyword argument:

.. code-block:: python

   @blueprint.route('/users/profile', methods=['GET'])
   @authenticated
   def profile(auth: AuthContext) -> Response:
       data, code, headers = users.profile(auth)
       ...

If the request carries no ``Authorization: Bearer <token>`` header, or the
token does not verify, or its user no longer exists, an Unauthorized
:class:`.APIError` is raised and the route is never called.
"""

from functools import wraps
from typing import Any, Callable, NamedTuple

from flask import request

from . import domain, errors, logging
from .services import sessions, users
from .services.exceptions import InvalidToken, ExpiredToken

logger = logging.getLogger(__name__)


class AuthContext(NamedTuple):
    """The authenticated caller of a request."""

    user: domain.User
    claims: domain.Claims
    token: str
    """The raw bearer token."""


def get_bearer_token() -> str:
    """Extract the bearer token from the request's Authorization header."""
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if not header:
        raise errors.unauthorized('Authentication required')
    if scheme.lower() != 'bearer' or not token.strip():
        raise errors.unauthorized('Malformed authorization header')
    return token.strip()


def authenticate_request() -> AuthContext:
    """Build an :class:`AuthContext` from the current request."""
    token = get_bearer_token()
    try:
        claims = sessions.decode_access_token(token)
    except ExpiredToken as e:
        raise errors.unauthorized('Access token has expired') from e
    except InvalidToken as e:
        logger.debug('Rejected access token: %s', e)
        raise errors.unauthorized('Invalid access token') from e
    user = users.get_by_id(claims.subject)
    if user is None:
        raise errors.unauthorized('Invalid access token')
    return AuthContext(user=user, claims=claims, token=token)


def authenticated(func: Callable) -> Callable:
    """Decorate a route so that it requires a valid access token."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        kwargs['auth'] = authenticate_request()
        return func(*args, **kwargs)
    return wrapper
