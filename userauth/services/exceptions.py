"""Provides exceptions raised by the stores and engines."""


class TokenStoreUnavailable(RuntimeError):
    """Could not talk to the token store."""


class UnknownToken(RuntimeError):
    """Failed to locate a token in the token store."""


class UserExists(RuntimeError):
    """A user with this username or e-mail address already exists."""


class NoSuchUser(RuntimeError):
    """User does not exist."""


class VerificationFailed(RuntimeError):
    """The OTP check failed. The message is safe to show to the client."""


class ResendTooSoon(RuntimeError):
    """A new OTP was requested before the resend interval elapsed."""


class AuthenticationFailed(RuntimeError):
    """Failed to authenticate user with provided credentials."""


class InvalidToken(ValueError):
    """Bearer token is malformed, forged, or of the wrong kind."""


class ExpiredToken(InvalidToken):
    """Bearer token signature is fine but it has expired."""


class AlreadyVerified(RuntimeError):
    """The user has already completed verification."""
