"""One-way hashing of passwords and issued secrets."""

import hashlib
from base64 import b64encode

import bcrypt

from ..context import get_application_config


def _prehash(value: str) -> bytes:
    # bcrypt only looks at the first 72 bytes; refresh tokens are longer.
    return b64encode(hashlib.sha256(value.encode('utf-8')).digest())


def _rounds() -> int:
    config = get_application_config()
    return int(config.get('BCRYPT_ROUNDS', '12'))


def hash_secret(value: str) -> str:
    """Generate a salted hash of a password, OTP or token."""
    hashed = bcrypt.hashpw(_prehash(value), bcrypt.gensalt(rounds=_rounds()))
    return hashed.decode('ascii')


def check_secret(value: str, hashed: str) -> bool:
    """Check a plaintext secret against a hash from :func:`hash_secret`."""
    try:
        return bcrypt.checkpw(_prehash(value), hashed.encode('ascii'))
    except (ValueError, UnicodeEncodeError):
        return False
