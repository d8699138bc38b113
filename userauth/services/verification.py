"""
One-time passwords and the verification state machine.

An OTP token is ``active`` when issued. Each verification attempt is counted
against it before anything else is checked. The failed check that spends
the last allowed attempt blocks the token, and so does any attempt beyond
the maximum. A blocked token becomes usable again (counters reset) once
the cooldown has passed since its last attempt. Past its expiry the token is
useless and is deleted; on a successful check it is consumed (deleted) and
the user is marked verified.

The OTP itself only ever leaves this module by e-mail. Clients correlate
their verify and resend calls with the public ``verification_token``.
"""

import secrets
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from pytz import UTC

from .. import domain, logging
from ..context import get_application_config
from ..tasks import dispatch_otp_email
from . import hasher, tokens, users
from .exceptions import (UnknownToken, VerificationFailed, ResendTooSoon,
                         AlreadyVerified)

logger = logging.getLogger(__name__)


class Validation(NamedTuple):
    """Outcome of :func:`validate_token_for_verification`."""

    valid: bool
    reason: Optional[str] = None
    token: Optional[domain.Token] = None
    """The token as it stands after validation (counters may be reset)."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _seconds(key: str, default: str) -> timedelta:
    return timedelta(seconds=int(get_application_config().get(key, default)))


def _otp_expiry() -> timedelta:
    return _seconds('OTP_EXPIRY', '600')


def _cooldown() -> timedelta:
    return _seconds('VERIFICATION_COOLDOWN', '1800')


def _resend_interval() -> timedelta:
    return _seconds('OTP_RESEND_INTERVAL', '60')


def _max_attempts() -> int:
    return int(get_application_config().get('MAX_VERIFICATION_ATTEMPTS', '5'))


def _blocked_reason(token: domain.Token, now: datetime) -> str:
    remaining = _cooldown()
    if token.last_attempt_at is not None:
        remaining -= now - token.last_attempt_at
    minutes = max(1, -(-int(remaining.total_seconds()) // 60))
    return ('Too many failed attempts. Please try again in'
            f' {minutes} minute{"s" if minutes != 1 else ""}')


def generate_otp() -> str:
    """Generate a six-digit one-time password in [100000, 999999]."""
    return str(secrets.randbelow(900000) + 100000)


def generate_token(nbytes: int = 32) -> str:
    """Generate a hex-encoded random token of ``nbytes`` bytes."""
    return secrets.token_hex(nbytes)


def generate_verification_token() -> str:
    """Generate the short public correlator for an OTP."""
    return generate_token(6)


def cooldown_elapsed(token: domain.Token,
                     now: Optional[datetime] = None) -> bool:
    """Whether the verification cooldown has passed for ``token``."""
    return token.cooldown_elapsed(_cooldown(), now or _now())


def issue_otp(user: domain.User, notify: bool = True,
              kind: str = 'otp') -> domain.IssuedOTP:
    """
    Issue a new OTP to ``user``, replacing any OTP they already hold.

    Parameters
    ----------
    user : :class:`.domain.User`
    notify : bool
        Whether to e-mail the OTP to the user.
    kind : str
        Which e-mail template to use.

    Returns
    -------
    :class:`.domain.IssuedOTP`

    """
    existing = tokens.find_by_user_and_type(user.user_id,
                                            domain.TokenTypes.OTP)
    if existing is not None:
        tokens.delete_by_id(existing.token_id)

    otp = generate_otp()
    token = tokens.create_otp(user.user_id, otp,
                              generate_verification_token(),
                              _now() + _otp_expiry())
    logger.debug('Issued OTP token %s to user %s', token.token_id,
                 user.user_id)
    if notify:
        dispatch_otp_email(user.email, otp, kind, username=user.username)
    return domain.IssuedOTP(token=token, otp=otp)


def validate_token_for_verification(token: domain.Token) -> Validation:
    """
    Check whether ``token`` may be used for a verification attempt.

    A blocked token whose cooldown has elapsed has its counters reset, and is
    valid. An expired token is deleted.

    Returns
    -------
    :class:`.Validation`

    """
    now = _now()
    if token.is_blocked:
        if not cooldown_elapsed(token, now):
            return Validation(False, _blocked_reason(token, now), token)
        try:
            token = tokens.reset_attempts(token.token_id)
        except UnknownToken:
            return Validation(False, 'Verification code has expired', token)
        logger.debug('Cooldown elapsed for token %s', token.token_id)
    if now > token.expires_at:
        tokens.delete_by_id(token.token_id)
        return Validation(False, 'Verification code has expired. Please'
                                 ' request a new one', token)
    return Validation(True, None, token)


def verify_otp(email: str, otp: str, verification_token: str) -> domain.User:
    """
    Check an OTP and mark its owner verified.

    The attempt is counted before the token's state or the OTP itself is
    checked, so that failed or refused attempts always count.

    Parameters
    ----------
    email : str
        Must belong to the owner of the token.
    otp : str
        The code the user received by e-mail.
    verification_token : str
        The public correlator returned when the OTP was issued.

    Returns
    -------
    :class:`.domain.User`
        The verified user.

    Raises
    ------
    :class:`.VerificationFailed`

    """
    token = tokens.find_by_verification_token(verification_token)
    if token is None or token.token_type != domain.TokenTypes.OTP:
        raise VerificationFailed('Invalid or expired verification token')

    user = users.get_by_id(token.user_id)
    if user is None or user.email != users.normalize_email(email):
        raise VerificationFailed('Verification token does not match this'
                                 ' email')
    if user.verified:
        return user

    max_attempts = _max_attempts()
    try:
        token = tokens.record_attempt(token.token_id, max_attempts,
                                      _cooldown())
    except UnknownToken as e:
        raise VerificationFailed('Invalid or expired verification token') \
            from e

    validation = validate_token_for_verification(token)
    if not validation.valid:
        logger.info('Refused verification attempt on token %s: %s',
                    token.token_id, validation.reason)
        raise VerificationFailed(validation.reason)
    token = validation.token or token

    if not hasher.check_secret(otp, token.token_hash):
        remaining = max(0, max_attempts - token.verification_attempts)
        logger.info('Wrong OTP for token %s; %i attempts left',
                    token.token_id, remaining)
        if remaining == 0:
            # Last attempt spent; resend and login must see the block too.
            try:
                token = tokens.block(token.token_id)
            except UnknownToken as e:
                raise VerificationFailed('Verification code has expired') \
                    from e
            raise VerificationFailed(_blocked_reason(token, _now()))
        raise VerificationFailed(f'Invalid OTP. {remaining} attempt'
                                 f'{"s" if remaining != 1 else ""} remaining')

    user = users.mark_verified(user.user_id)
    tokens.delete_by_id(token.token_id)
    logger.info('User %s verified', user.user_id)
    return user


def resend_otp(email: str) -> Optional[domain.IssuedOTP]:
    """
    Replace the user's OTP with a new one, and e-mail it.

    Returns
    -------
    :class:`.domain.IssuedOTP` or None
        ``None`` if there is no user with this address. Callers must not
        reveal that to the client.

    Raises
    ------
    :class:`.AlreadyVerified`
    :class:`.VerificationFailed`
        The current OTP is blocked, and its cooldown has not elapsed.
    :class:`.ResendTooSoon`
        The current OTP was issued less than the resend interval ago.

    """
    user = users.get_by_email(email)
    if user is None:
        logger.debug('OTP resend requested for unknown address')
        return None
    if user.verified:
        raise AlreadyVerified('This account is already verified')

    now = _now()
    existing = tokens.find_by_user_and_type(user.user_id,
                                            domain.TokenTypes.OTP)
    if existing is not None:
        if existing.is_blocked and not cooldown_elapsed(existing, now):
            raise VerificationFailed(_blocked_reason(existing, now))
        wait = _resend_interval() - (now - existing.created_at)
        if wait > timedelta(0):
            seconds = max(1, int(wait.total_seconds()))
            raise ResendTooSoon(f'Please wait {seconds} seconds before'
                                ' requesting a new code')
    return issue_otp(user)


def pending_verification(user: domain.User) -> str:
    """
    Get a verification token for an unverified user who has just logged in.

    An OTP issued within the resend interval is reused (and not re-sent);
    otherwise a new one is issued.

    Raises
    ------
    :class:`.VerificationFailed`
        The current OTP is blocked, and its cooldown has not elapsed.

    """
    now = _now()
    existing = tokens.find_by_user_and_type(user.user_id,
                                            domain.TokenTypes.OTP)
    if existing is not None:
        if existing.is_blocked and not cooldown_elapsed(existing, now):
            raise VerificationFailed(_blocked_reason(existing, now))
        if now - existing.created_at < _resend_interval() \
                and now <= existing.expires_at \
                and existing.verification_token:
            return existing.verification_token
    return issue_otp(user).verification_token
