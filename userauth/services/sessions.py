"""
Password login, and the access/refresh token lifecycle.

Access and refresh tokens are signed JWTs, each with its own secret. An access
token is verified by its signature and expiry alone. A refresh token must also
match the hashed copy kept in the token store, so that it can be revoked: each
user has at most one refresh token on record, replaced at every login.
"""

import secrets
from datetime import datetime, timedelta
from typing import Tuple

import jwt
from pytz import UTC

from .. import domain, logging
from ..context import get_application_config
from . import hasher, tokens, users, verification
from .exceptions import AuthenticationFailed, InvalidToken, ExpiredToken

logger = logging.getLogger(__name__)

ACCESS = 'access'
REFRESH = 'refresh'


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _settings(use: str) -> Tuple[str, timedelta, str]:
    config = get_application_config()
    algorithm = config.get('JWT_ALGORITHM', 'HS256')
    if use == ACCESS:
        return (config['ACCESS_TOKEN_SECRET'],
                timedelta(seconds=int(config.get('ACCESS_TOKEN_EXPIRY',
                                                 '86400'))),
                algorithm)
    return (config['REFRESH_TOKEN_SECRET'],
            timedelta(seconds=int(config.get('REFRESH_TOKEN_EXPIRY',
                                             '604800'))),
            algorithm)


def _encode(user: domain.User, use: str) -> Tuple[str, datetime]:
    secret, lifetime, algorithm = _settings(use)
    issued_at = _now()
    expires_at = issued_at + lifetime
    payload = {
        'sub': user.user_id,
        'iat': int(issued_at.timestamp()),
        'exp': int(expires_at.timestamp()),
        'typ': use,
        'jti': secrets.token_hex(8)
    }
    token: str = jwt.encode(payload, secret, algorithm=algorithm)
    return token, expires_at


def _decode(token: str, use: str) -> domain.Claims:
    secret, _, algorithm = _settings(use)
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm],
                            options={'require': ['sub', 'iat', 'exp']})
    except jwt.exceptions.ExpiredSignatureError as e:
        raise ExpiredToken(f'{use.title()} token has expired') from e
    except jwt.exceptions.InvalidTokenError as e:
        raise InvalidToken(f'Invalid {use} token: {e}') from e
    if claims.get('typ') != use:
        raise InvalidToken(f'Expected a {use} token')
    return domain.Claims(
        subject=claims['sub'],
        issued_at=datetime.fromtimestamp(claims['iat'], tz=UTC),
        expires_at=datetime.fromtimestamp(claims['exp'], tz=UTC),
        token_use=claims['typ']
    )


def generate_access_token(user: domain.User) -> str:
    """Sign a short-lived access token for ``user``."""
    token, _ = _encode(user, ACCESS)
    return token


def generate_refresh_token(user: domain.User) -> str:
    """Sign a long-lived refresh token for ``user``."""
    token, _ = _encode(user, REFRESH)
    return token


def decode_access_token(token: str) -> domain.Claims:
    """
    Verify the signature and expiry of an access token.

    Raises
    ------
    :class:`.ExpiredToken`
    :class:`.InvalidToken`

    """
    return _decode(token, ACCESS)


def decode_refresh_token(token: str) -> domain.Claims:
    """
    Verify the signature and expiry of a refresh token.

    This does not consult the token store; see :func:`refresh`.
    """
    return _decode(token, REFRESH)


def authenticate(email: str, password: str) -> domain.User:
    """
    Check a user's password.

    Raises
    ------
    :class:`.AuthenticationFailed`
        Unknown e-mail address, or wrong password. The two are not
        distinguished.

    """
    found = users.get_with_password(email)
    if found is None:
        logger.debug('Login attempt for unknown address')
        raise AuthenticationFailed('Invalid email or password')
    user, password_hash = found
    if not hasher.check_secret(password, password_hash):
        logger.info('Wrong password for user %s', user.user_id)
        raise AuthenticationFailed('Invalid email or password')
    return user


def login(email: str, password: str) -> domain.LoginResult:
    """
    Log a user in with their password.

    Verified users get a new access token and a new refresh token; any refresh
    token they held before is revoked. Unverified users get no bearer tokens,
    only a verification token for the OTP flow.

    Returns
    -------
    :class:`.domain.LoginResult`

    Raises
    ------
    :class:`.AuthenticationFailed`
    :class:`.VerificationFailed`
        The user is unverified and their OTP is blocked.

    """
    user = authenticate(email, password)
    if not user.verified:
        logger.info('Unverified user %s diverted to verification',
                    user.user_id)
        return domain.LoginResult(
            user=user,
            verification_token=verification.pending_verification(user)
        )

    access_token = generate_access_token(user)
    refresh_token, expires_at = _encode(user, REFRESH)

    # Not atomic; a failure between the two leaves the user to log in again.
    existing = tokens.find_refresh_by_user(user.user_id)
    if existing is not None:
        tokens.delete_by_id(existing.token_id)
    tokens.create_refresh(user.user_id, refresh_token, expires_at)
    logger.info('User %s logged in', user.user_id)
    return domain.LoginResult(user=user, access_token=access_token,
                              refresh_token=refresh_token)


def refresh(refresh_token: str) -> str:
    """
    Get a new access token in exchange for a refresh token.

    The refresh token must be correctly signed and unexpired, and must match
    the record in the token store. It is not rotated.

    Returns
    -------
    str
        A new access token.

    Raises
    ------
    :class:`.AuthenticationFailed`

    """
    try:
        claims = decode_refresh_token(refresh_token)
    except ExpiredToken as e:
        raise AuthenticationFailed('Refresh token has expired') from e
    except InvalidToken as e:
        logger.info('Rejected refresh token: %s', e)
        raise AuthenticationFailed('Invalid refresh token') from e

    record = tokens.find_refresh_by_user(claims.subject)
    if record is None:
        raise AuthenticationFailed('Invalid refresh token')
    if record.is_blocked:
        raise AuthenticationFailed('Refresh token has been revoked')
    if record.expired:
        raise AuthenticationFailed('Refresh token has expired')
    if not hasher.check_secret(refresh_token, record.token_hash):
        raise AuthenticationFailed('Invalid refresh token')

    user = users.get_by_id(claims.subject)
    if user is None:
        raise AuthenticationFailed('Invalid refresh token')
    return generate_access_token(user)
