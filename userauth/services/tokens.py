"""
Internal service API for the token store.

Tokens (OTPs, refresh tokens, and friends) live in Redis as one hash per
record. Secrets are hashed before they are written; the plaintext never
reaches the store. Every key is given an absolute expiry equal to the token's
``expires_at``, so Redis evicts expired tokens on its own, whether or not
anyone reads them.

Keys::

    token:<token_id>                  hash with the token record
    token:user:<user_id>:<type>       id of the user's active token of <type>
    token:vt:<verification_token>     id of the token with that correlator
    token:user:<user_id>              set of all of the user's token ids

Writes that depend on a read (attempt accounting, deletion of index keys) are
optimistic transactions: the keys are WATCHed, and the operation is retried
if another client touches them before EXEC.
"""

import uuid
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional

import dateutil.parser
import redis
from flask import Flask, current_app, has_app_context
from pytz import UTC
from retry import retry

from .. import domain, logging
from ..context import get_application_config
from . import hasher
from .exceptions import TokenStoreUnavailable, UnknownToken

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _store_errors(func: Callable) -> Callable:
    """Translate connection problems into :class:`.TokenStoreUnavailable`."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except redis.exceptions.WatchError:
            raise
        except redis.exceptions.RedisError as e:
            raise TokenStoreUnavailable(f'Token store error: {e}') from e
    return wrapper


class TokenStore(object):
    """
    Manages a connection to Redis.

    The StrictRedis instance is thread safe, and connections are attached at
    the time a command is executed. This class provides a container for
    configuration, and the token record layout.
    """

    def __init__(self, host: str, port: int, db: int,
                 password: Optional[str] = None, fake: bool = False) -> None:
        """Open the connection to Redis."""
        if fake:
            import fakeredis
            logger.debug('Using fake Redis for the token store')
            self.r = fakeredis.FakeStrictRedis(decode_responses=True)
        else:
            logger.debug('New Redis connection at %s, port %s', host, port)
            self.r = redis.StrictRedis(host=host, port=port, db=db,
                                       password=password,
                                       decode_responses=True)

    # Key layout.

    @staticmethod
    def _key(token_id: str) -> str:
        return f'token:{token_id}'

    @staticmethod
    def _user_type_key(user_id: str, token_type: str) -> str:
        return f'token:user:{user_id}:{token_type}'

    @staticmethod
    def _user_set_key(user_id: str) -> str:
        return f'token:user:{user_id}'

    @staticmethod
    def _vt_key(verification_token: str) -> str:
        return f'token:vt:{verification_token}'

    def _index_keys(self, token: domain.Token) -> List[str]:
        keys = [self._user_type_key(token.user_id, token.token_type)]
        if token.verification_token:
            keys.append(self._vt_key(token.verification_token))
        return keys

    # Record encoding.

    @staticmethod
    def _encode(token: domain.Token) -> Dict[str, str]:
        return {
            'token_id': token.token_id,
            'user_id': token.user_id,
            'token_type': token.token_type,
            'token_hash': token.token_hash,
            'expires_at': token.expires_at.isoformat(),
            'created_at': token.created_at.isoformat(),
            'verification_token': token.verification_token or '',
            'verification_attempts': str(token.verification_attempts),
            'last_attempt_at': (token.last_attempt_at.isoformat()
                                if token.last_attempt_at else ''),
            'is_blocked': '1' if token.is_blocked else '0'
        }

    @staticmethod
    def _decode(data: Dict[str, str]) -> domain.Token:
        last_attempt_at = data.get('last_attempt_at')
        return domain.Token(
            token_id=data['token_id'],
            user_id=data['user_id'],
            token_type=data['token_type'],
            token_hash=data['token_hash'],
            expires_at=dateutil.parser.parse(data['expires_at']),
            created_at=dateutil.parser.parse(data['created_at']),
            verification_token=data.get('verification_token') or None,
            verification_attempts=int(data.get('verification_attempts', 0)),
            last_attempt_at=(dateutil.parser.parse(last_attempt_at)
                             if last_attempt_at else None),
            is_blocked=data.get('is_blocked') == '1'
        )

    # Creation.

    @_store_errors
    def create(self, user_id: str, token_type: str, secret: str,
               expires_at: datetime,
               verification_token: Optional[str] = None) -> domain.Token:
        """
        Hash ``secret`` and store a new token record.

        Parameters
        ----------
        user_id : str
        token_type : str
            One of :attr:`.domain.TokenTypes.ALL`.
        secret : str
            The plaintext OTP or token. Only its hash is stored.
        expires_at : :class:`datetime`
            The record is evicted from the store at this instant.
        verification_token : str or None
            Public correlator; required for OTP-family tokens.

        Returns
        -------
        :class:`.domain.Token`

        """
        if token_type not in domain.TokenTypes.ALL:
            raise ValueError(f'Unknown token type: {token_type}')
        token = domain.Token(
            token_id=uuid.uuid4().hex,
            user_id=user_id,
            token_type=token_type,
            token_hash=hasher.hash_secret(secret),
            expires_at=expires_at,
            created_at=_now(),
            verification_token=verification_token
        )
        key = self._key(token.token_id)
        user_set_key = self._user_set_key(user_id)

        # The per-user set lives as long as its longest-lived member.
        horizon = expires_at
        remaining = self.r.pttl(user_set_key)
        if remaining > 0:
            horizon = max(horizon, _now() + timedelta(milliseconds=remaining))

        with self.r.pipeline() as pipe:
            pipe.hset(key, mapping=self._encode(token))
            pipe.pexpireat(key, expires_at)
            for index_key in self._index_keys(token):
                pipe.set(index_key, token.token_id)
                pipe.pexpireat(index_key, expires_at)
            pipe.sadd(user_set_key, token.token_id)
            pipe.pexpireat(user_set_key, horizon)
            pipe.execute()
        logger.debug('Created %s token %s for user %s', token_type,
                     token.token_id, user_id)
        return token

    def create_otp(self, user_id: str, otp: str, verification_token: str,
                   expires_at: datetime) -> domain.Token:
        """Store a new OTP, correlated by ``verification_token``."""
        return self.create(user_id, domain.TokenTypes.OTP, otp, expires_at,
                           verification_token=verification_token)

    def create_refresh(self, user_id: str, refresh_token: str,
                       expires_at: datetime) -> domain.Token:
        """Store the hash of a signed refresh token."""
        return self.create(user_id, domain.TokenTypes.REFRESH_TOKEN,
                           refresh_token, expires_at)

    # Queries.

    @_store_errors
    def load(self, token_id: str) -> Optional[domain.Token]:
        """Get a token by ID, or ``None`` if it does not exist (any more)."""
        data = self.r.hgetall(self._key(token_id))
        if not data:
            return None
        return self._decode(data)

    def _load_indexed(self, index_key: str) -> Optional[domain.Token]:
        token_id: Optional[str] = self.r.get(index_key)
        if not token_id:
            return None
        return self.load(token_id)

    @_store_errors
    def find_by_user_and_type(self, user_id: str,
                              token_type: str) -> Optional[domain.Token]:
        """Get the user's active token of ``token_type``, if any."""
        token = self._load_indexed(self._user_type_key(user_id, token_type))
        if token is None or token.user_id != user_id \
                or token.token_type != token_type:
            return None
        return token

    @_store_errors
    def find_by_verification_token(self, verification_token: str) \
            -> Optional[domain.Token]:
        """Get a token by its public correlator."""
        token = self._load_indexed(self._vt_key(verification_token))
        if token is None or token.verification_token != verification_token:
            return None
        return token

    def find_refresh_by_user(self, user_id: str) -> Optional[domain.Token]:
        """Get the user's active refresh token record, if any."""
        return self.find_by_user_and_type(user_id,
                                          domain.TokenTypes.REFRESH_TOKEN)

    # Deletion.

    @_store_errors
    def delete_by_id(self, token_id: str) -> bool:
        """
        Delete a token and the index entries that point at it.

        Returns
        -------
        bool
            ``False`` if there was no such token.

        """
        token = self.load(token_id)
        if token is None:
            return False
        try:
            self._delete(token)
        except redis.exceptions.WatchError as e:
            raise TokenStoreUnavailable('Could not delete token') from e
        logger.debug('Deleted token %s', token_id)
        return True

    @retry(redis.exceptions.WatchError, tries=5, delay=0.01, backoff=2)
    def _delete(self, token: domain.Token) -> None:
        index_keys = self._index_keys(token)
        with self.r.pipeline() as pipe:
            pipe.watch(*index_keys)
            # Only drop index entries that still point at this token; a
            # newer token may have replaced them.
            owned = [key for key in index_keys
                     if pipe.get(key) == token.token_id]
            pipe.multi()
            pipe.delete(self._key(token.token_id), *owned)
            pipe.srem(self._user_set_key(token.user_id), token.token_id)
            pipe.execute()

    @_store_errors
    def delete_all_by_user(self, user_id: str) -> int:
        """
        Delete every token belonging to a user.

        Returns
        -------
        int
            The number of token records deleted.

        """
        user_set_key = self._user_set_key(user_id)
        token_ids: Iterable[str] = self.r.smembers(user_set_key)
        deleted = 0
        for token_id in token_ids:
            if self.delete_by_id(token_id):
                deleted += 1
        type_keys = [self._user_type_key(user_id, token_type)
                     for token_type in domain.TokenTypes.ALL]
        self.r.delete(user_set_key, *type_keys)
        logger.debug('Deleted %i tokens for user %s', deleted, user_id)
        return deleted

    # Attempt accounting.

    @_store_errors
    def record_attempt(self, token_id: str, max_attempts: int,
                       cooldown: timedelta) -> domain.Token:
        """
        Count a verification attempt against a token.

        This is atomic per token. If the token is blocked and ``cooldown``
        has elapsed since the previous attempt, its counters are reset first.
        The token is then blocked if ``max_attempts`` attempts have already
        been spent, and the attempt is counted.

        Parameters
        ----------
        token_id : str
        max_attempts : int
        cooldown : :class:`timedelta`

        Returns
        -------
        :class:`.domain.Token`
            The token as stored after this attempt.

        Raises
        ------
        :class:`.UnknownToken`
            The token does not exist, e.g. it has expired.
        :class:`.TokenStoreUnavailable`

        """
        try:
            return self._record_attempt(token_id, max_attempts, cooldown)
        except redis.exceptions.WatchError as e:
            raise TokenStoreUnavailable('Could not record attempt') from e

    @retry(redis.exceptions.WatchError, tries=5, delay=0.01, backoff=2)
    def _record_attempt(self, token_id: str, max_attempts: int,
                        cooldown: timedelta) -> domain.Token:
        key = self._key(token_id)
        with self.r.pipeline() as pipe:
            pipe.watch(key)
            data = pipe.hgetall(key)
            if not data:
                raise UnknownToken(f'Failed to find token {token_id}')
            token = self._decode(data)
            now = _now()
            attempts, blocked = token.verification_attempts, token.is_blocked
            if blocked and token.cooldown_elapsed(cooldown, now):
                attempts, blocked = 0, False
            if attempts >= max_attempts:
                blocked = True
            attempts += 1
            token = token._replace(verification_attempts=attempts,
                                   last_attempt_at=now, is_blocked=blocked)
            pipe.multi()
            pipe.hset(key, mapping={
                'verification_attempts': str(attempts),
                'last_attempt_at': now.isoformat(),
                'is_blocked': '1' if blocked else '0'
            })
            # Re-assert the expiry, in case the hash was evicted and written
            # back by this transaction.
            pipe.pexpireat(key, token.expires_at)
            pipe.execute()
        return token

    @_store_errors
    def reset_attempts(self, token_id: str) -> domain.Token:
        """Clear the attempt counter and unblock a token."""
        try:
            return self._update(token_id, verification_attempts=0,
                                is_blocked=False)
        except redis.exceptions.WatchError as e:
            raise TokenStoreUnavailable('Could not reset attempts') from e

    @_store_errors
    def block(self, token_id: str) -> domain.Token:
        """
        Block a token until the cooldown has passed since its last attempt.

        The attempt counter and ``last_attempt_at`` are left as they are.
        """
        try:
            return self._update(token_id, is_blocked=True)
        except redis.exceptions.WatchError as e:
            raise TokenStoreUnavailable('Could not block token') from e

    @retry(redis.exceptions.WatchError, tries=5, delay=0.01, backoff=2)
    def _update(self, token_id: str, **changes: Any) -> domain.Token:
        key = self._key(token_id)
        with self.r.pipeline() as pipe:
            pipe.watch(key)
            data = pipe.hgetall(key)
            if not data:
                raise UnknownToken(f'Failed to find token {token_id}')
            token = self._decode(data)._replace(**changes)
            encoded = self._encode(token)
            pipe.multi()
            pipe.hset(key, mapping={field: encoded[field]
                                    for field in changes})
            pipe.pexpireat(key, token.expires_at)
            pipe.execute()
        return token


def init_app(app: Flask) -> None:
    """Set default configuration parameters, and attach a store to the app."""
    app.config.setdefault('REDIS_HOST', 'localhost')
    app.config.setdefault('REDIS_PORT', '6379')
    app.config.setdefault('REDIS_DATABASE', '0')
    app.config.setdefault('REDIS_TOKEN', None)
    app.config.setdefault('REDIS_FAKE', False)
    app.extensions['token_store'] = get_token_store(app)


def get_token_store(app: Optional[Flask] = None) -> TokenStore:
    """Get a new connection to the token store."""
    config = get_application_config(app)
    host = config.get('REDIS_HOST', 'localhost')
    port = int(config.get('REDIS_PORT', '6379'))
    db = int(config.get('REDIS_DATABASE', '0'))
    password = config.get('REDIS_TOKEN', None)
    fake = bool(int(config.get('REDIS_FAKE', 0)))
    return TokenStore(host, port, db, password=password, fake=fake)


def current_store() -> TokenStore:
    """Get the :class:`.TokenStore` for this application."""
    if has_app_context() and 'token_store' in current_app.extensions:
        store: TokenStore = current_app.extensions['token_store']
        return store
    return get_token_store()


@wraps(TokenStore.create_otp)
def create_otp(user_id: str, otp: str, verification_token: str,
               expires_at: datetime) -> domain.Token:
    """Store a new OTP, correlated by ``verification_token``."""
    return current_store().create_otp(user_id, otp, verification_token,
                                      expires_at)


@wraps(TokenStore.create_refresh)
def create_refresh(user_id: str, refresh_token: str,
                   expires_at: datetime) -> domain.Token:
    """Store the hash of a signed refresh token."""
    return current_store().create_refresh(user_id, refresh_token, expires_at)


@wraps(TokenStore.find_by_user_and_type)
def find_by_user_and_type(user_id: str,
                          token_type: str) -> Optional[domain.Token]:
    """Get the user's active token of ``token_type``, if any."""
    return current_store().find_by_user_and_type(user_id, token_type)


@wraps(TokenStore.find_by_verification_token)
def find_by_verification_token(verification_token: str) \
        -> Optional[domain.Token]:
    """Get a token by its public correlator."""
    return current_store().find_by_verification_token(verification_token)


@wraps(TokenStore.find_refresh_by_user)
def find_refresh_by_user(user_id: str) -> Optional[domain.Token]:
    """Get the user's active refresh token record, if any."""
    return current_store().find_refresh_by_user(user_id)


@wraps(TokenStore.delete_by_id)
def delete_by_id(token_id: str) -> bool:
    """Delete a token and the index entries that point at it."""
    return current_store().delete_by_id(token_id)


@wraps(TokenStore.delete_all_by_user)
def delete_all_by_user(user_id: str) -> int:
    """Delete every token belonging to a user."""
    return current_store().delete_all_by_user(user_id)


@wraps(TokenStore.record_attempt)
def record_attempt(token_id: str, max_attempts: int,
                   cooldown: timedelta) -> domain.Token:
    """Count a verification attempt against a token."""
    return current_store().record_attempt(token_id, max_attempts, cooldown)


@wraps(TokenStore.reset_attempts)
def reset_attempts(token_id: str) -> domain.Token:
    """Clear the attempt counter and unblock a token."""
    return current_store().reset_attempts(token_id)


@wraps(TokenStore.block)
def block(token_id: str) -> domain.Token:
    """Block a token until the cooldown has passed since its last attempt."""
    return current_store().block(token_id)
