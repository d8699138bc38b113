"""Defines the core data structures for the user accounts service."""

from typing import NamedTuple, Optional
from datetime import datetime, timedelta

from pytz import UTC


class Roles:
    """Known user roles."""

    CUSTOMER = 'customer'
    SELLER = 'seller'
    ADMIN = 'admin'
    SUPERADMIN = 'superadmin'

    ALL = [CUSTOMER, SELLER, ADMIN, SUPERADMIN]
    ELEVATED = [ADMIN, SUPERADMIN]
    """Roles that may not be chosen at self-registration."""

    DEFAULT = CUSTOMER


class TokenTypes:
    """Kinds of :class:`.Token` record."""

    OTP = 'otp'
    EMAIL_VERIFICATION = 'email_verification'
    PASSWORD_RESET = 'password_reset'
    REFRESH_TOKEN = 'refresh_token'

    ALL = [OTP, EMAIL_VERIFICATION, PASSWORD_RESET, REFRESH_TOKEN]


class User(NamedTuple):
    """A user account. Never carries the password hash."""

    user_id: str
    """Unique identifier for the user."""

    username: str
    """Unique, human-friendly username."""

    email: str
    """The user's primary e-mail address. Unique."""

    role: str = Roles.DEFAULT
    """One of :attr:`Roles.ALL`."""

    verified: bool = False
    """Whether or not the user has completed OTP verification."""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Token(NamedTuple):
    """
    A secret issued to a user, stored only as a hash.

    One shape serves every :class:`.TokenTypes` kind. OTP-family tokens also
    carry a public :attr:`verification_token` that clients echo back instead
    of the OTP itself.
    """

    token_id: str
    user_id: str
    token_type: str
    token_hash: str
    expires_at: datetime
    created_at: datetime

    verification_token: Optional[str] = None
    """Public correlator for OTP-family tokens."""

    verification_attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    is_blocked: bool = False

    @property
    def expired(self) -> bool:
        """Expired if the current time is later than :attr:`.expires_at`."""
        return datetime.now(tz=UTC) > self.expires_at

    def cooldown_elapsed(self, cooldown: timedelta,
                         now: Optional[datetime] = None) -> bool:
        """Whether ``cooldown`` has passed since the last attempt."""
        if self.last_attempt_at is None:
            return True
        if now is None:
            now = datetime.now(tz=UTC)
        return now - self.last_attempt_at >= cooldown


class Claims(NamedTuple):
    """Verified claims from a signed access or refresh token."""

    subject: str
    """The user ID."""

    issued_at: datetime
    expires_at: datetime
    token_use: str
    """Either ``access`` or ``refresh``."""


class IssuedOTP(NamedTuple):
    """A freshly issued OTP. :attr:`otp` must only ever be sent by e-mail."""

    token: Token
    otp: str

    @property
    def verification_token(self) -> str:
        """The public correlator that may be returned to the client."""
        return str(self.token.verification_token)


class LoginResult(NamedTuple):
    """Outcome of a password login."""

    user: User
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    verification_token: Optional[str] = None
    """Set instead of the bearer tokens when the user is not verified."""

    @property
    def needs_verification(self) -> bool:
        """The user must complete OTP verification before tokens issue."""
        return self.access_token is None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 in UTC, or ``None``."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def user_to_dict(user: User) -> dict:
    """Represent a :class:`.User` for API responses."""
    return {
        'id': user.user_id,
        'username': user.username,
        'email': user.email,
        'role': user.role,
        'verified': user.verified,
        'createdAt': isoformat(user.created_at),
        'updatedAt': isoformat(user.updated_at),
    }
