"""Tests for :mod:`userauth.services.tokens`."""

import os
import threading
from datetime import datetime, timedelta
from typing import List
from unittest import TestCase, mock

import redis
from pytz import UTC

from ... import domain
from .. import hasher, tokens
from ..exceptions import TokenStoreUnavailable, UnknownToken

COOLDOWN = timedelta(minutes=30)


@mock.patch.dict(os.environ, {'BCRYPT_ROUNDS': '4'})
class TestTokenStore(TestCase):
    """The token store keeps hashed tokens in Redis."""

    def setUp(self):
        """Get a store backed by fake Redis."""
        self.store = tokens.TokenStore('localhost', 6379, 0, fake=True)
        self.store.r.flushall()
        self.expires_at = datetime.now(tz=UTC) + timedelta(minutes=10)

    def test_create_otp(self):
        """An OTP is stored as a hash, with counters at zero."""
        token = self.store.create_otp('u1', '123456', 'abcdef012345',
                                      self.expires_at)
        self.assertEqual(token.token_type, domain.TokenTypes.OTP)
        self.assertNotEqual(token.token_hash, '123456')
        self.assertTrue(hasher.check_secret('123456', token.token_hash))

        loaded = self.store.load(token.token_id)
        self.assertEqual(loaded, token)
        self.assertEqual(loaded.verification_attempts, 0)
        self.assertIsNone(loaded.last_attempt_at)
        self.assertFalse(loaded.is_blocked)
        raw = self.store.r.hgetall(f'token:{token.token_id}')
        self.assertNotIn('123456', raw.values())

    def test_keys_expire_with_token(self):
        """Every key written for a token expires no later than the token."""
        token = self.store.create_otp('u1', '123456', 'abcdef012345',
                                      self.expires_at)
        keys = [f'token:{token.token_id}', 'token:user:u1:otp',
                'token:vt:abcdef012345', 'token:user:u1']
        for key in keys:
            remaining = self.store.r.pttl(key)
            self.assertGreater(remaining, 0, f'{key} has no expiry')
            self.assertLessEqual(remaining, 10 * 60 * 1000)

    def test_expired_token_is_evicted(self):
        """A token past its expiry is gone without anyone deleting it."""
        past = datetime.now(tz=UTC) - timedelta(seconds=1)
        token = self.store.create_otp('u1', '123456', 'abcdef012345', past)
        self.assertIsNone(self.store.load(token.token_id))
        self.assertIsNone(
            self.store.find_by_verification_token('abcdef012345')
        )
        self.assertIsNone(
            self.store.find_by_user_and_type('u1', domain.TokenTypes.OTP)
        )

    def test_find(self):
        """Tokens can be found by user and type, or by correlator."""
        otp = self.store.create_otp('u1', '123456', 'abcdef012345',
                                    self.expires_at)
        refresh = self.store.create_refresh('u1', 'a.refresh.token',
                                            self.expires_at)
        self.assertEqual(
            self.store.find_by_user_and_type('u1', domain.TokenTypes.OTP),
            otp
        )
        self.assertEqual(self.store.find_by_verification_token('abcdef012345'),
                         otp)
        self.assertEqual(self.store.find_refresh_by_user('u1'), refresh)
        self.assertIsNone(self.store.find_refresh_by_user('u2'))
        self.assertIsNone(self.store.find_by_verification_token('nope'))

    def test_unknown_type(self):
        """Only known token types may be created."""
        with self.assertRaises(ValueError):
            self.store.create('u1', 'session', 'foo', self.expires_at)

    def test_delete_by_id(self):
        """Deleting a token removes its index entries."""
        token = self.store.create_otp('u1', '123456', 'abcdef012345',
                                      self.expires_at)
        self.assertTrue(self.store.delete_by_id(token.token_id))
        self.assertIsNone(self.store.load(token.token_id))
        self.assertIsNone(self.store.r.get('token:vt:abcdef012345'))
        self.assertIsNone(self.store.r.get('token:user:u1:otp'))
        self.assertNotIn(token.token_id,
                         self.store.r.smembers('token:user:u1'))
        self.assertFalse(self.store.delete_by_id(token.token_id))

    def test_delete_keeps_newer_index(self):
        """Deleting an old token leaves the index of its successor alone."""
        old = self.store.create_otp('u1', '111111', 'aaaaaaaaaaaa',
                                    self.expires_at)
        new = self.store.create_otp('u1', '222222', 'bbbbbbbbbbbb',
                                    self.expires_at)
        self.store.delete_by_id(old.token_id)
        self.assertEqual(
            self.store.find_by_user_and_type('u1', domain.TokenTypes.OTP),
            new
        )

    def test_delete_all_by_user(self):
        """All of a user's tokens can be deleted at once."""
        self.store.create_otp('u1', '123456', 'abcdef012345',
                              self.expires_at)
        self.store.create_refresh('u1', 'a.refresh.token', self.expires_at)
        other = self.store.create_refresh('u2', 'b.refresh.token',
                                          self.expires_at)
        self.assertEqual(self.store.delete_all_by_user('u1'), 2)
        self.assertIsNone(self.store.find_refresh_by_user('u1'))
        self.assertIsNone(
            self.store.find_by_user_and_type('u1', domain.TokenTypes.OTP)
        )
        self.assertEqual(self.store.find_refresh_by_user('u2'), other)

    def test_connection_failed(self):
        """:class:`.TokenStoreUnavailable` is raised when Redis is down."""
        with mock.patch.object(self.store.r, 'hgetall') as mock_hgetall:
            mock_hgetall.side_effect = redis.exceptions.ConnectionError
            with self.assertRaises(TokenStoreUnavailable):
                self.store.load('foo')


@mock.patch.dict(os.environ, {'BCRYPT_ROUNDS': '4'})
class TestRecordAttempt(TestCase):
    """Verification attempts are counted atomically per token."""

    def setUp(self):
        """Create an OTP token."""
        self.store = tokens.TokenStore('localhost', 6379, 0, fake=True)
        self.store.r.flushall()
        self.token = self.store.create_otp(
            'u1', '123456', 'abcdef012345',
            datetime.now(tz=UTC) + timedelta(minutes=10)
        )

    def _attempt(self):
        return self.store.record_attempt(self.token.token_id, 5, COOLDOWN)

    def test_counts_attempts(self):
        """Each attempt is counted and stamped."""
        token = self._attempt()
        self.assertEqual(token.verification_attempts, 1)
        self.assertIsNotNone(token.last_attempt_at)
        self.assertFalse(token.is_blocked)
        self.assertEqual(self.store.load(self.token.token_id), token)

    def test_refuses_attempts_beyond_max(self):
        """An attempt beyond the maximum blocks a token not yet blocked."""
        for _ in range(5):
            self.assertFalse(self._attempt().is_blocked)
        token = self._attempt()
        self.assertTrue(token.is_blocked)
        self.assertEqual(token.verification_attempts, 6)
        self.assertTrue(self.store.load(self.token.token_id).is_blocked)

    def test_block(self):
        """A token can be blocked without touching its counters."""
        for _ in range(5):
            self._attempt()
        attempted = self.store.load(self.token.token_id)
        token = self.store.block(self.token.token_id)
        self.assertTrue(token.is_blocked)
        self.assertEqual(token.verification_attempts, 5)
        self.assertEqual(token.last_attempt_at, attempted.last_attempt_at)
        self.assertEqual(self.store.load(self.token.token_id), token)
        self.assertGreater(self.store.r.pttl(f'token:{self.token.token_id}'),
                           0)
        with self.assertRaises(UnknownToken):
            self.store.block('nope')

    def test_concurrent_attempts(self):
        """Simultaneous attempts are each counted exactly once."""
        count = 8
        barrier = threading.Barrier(count)
        results: List[domain.Token] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            while True:
                try:
                    token = self._attempt()
                except TokenStoreUnavailable:    # Lost the race too often.
                    continue
                with lock:
                    results.append(token)
                return

        threads = [threading.Thread(target=attempt) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(len(results), count)
        self.assertEqual(sorted(t.verification_attempts for t in results),
                         list(range(1, count + 1)))
        for token in results:
            self.assertEqual(token.is_blocked, token.verification_attempts > 5,
                             token)
        stored = self.store.load(self.token.token_id)
        self.assertEqual(stored.verification_attempts, count)
        self.assertTrue(stored.is_blocked)

    def test_cooldown_resets_blocked_token(self):
        """A blocked token is reset once the cooldown has elapsed."""
        for _ in range(6):
            self._attempt()
        long_ago = datetime.now(tz=UTC) - COOLDOWN - timedelta(minutes=1)
        self.store.r.hset(f'token:{self.token.token_id}', 'last_attempt_at',
                          long_ago.isoformat())
        token = self._attempt()
        self.assertFalse(token.is_blocked)
        self.assertEqual(token.verification_attempts, 1)

    def test_blocked_within_cooldown(self):
        """A blocked token stays blocked during the cooldown."""
        for _ in range(6):
            self._attempt()
        token = self._attempt()
        self.assertTrue(token.is_blocked)

    def test_expiry_is_kept(self):
        """Recording an attempt does not extend the token's life."""
        self._attempt()
        self.assertGreater(self.store.r.pttl(f'token:{self.token.token_id}'),
                           0)

    def test_unknown_token(self):
        """:class:`.UnknownToken` is raised for a missing token."""
        with self.assertRaises(UnknownToken):
            self.store.record_attempt('nope', 5, COOLDOWN)

    def test_reset_attempts(self):
        """Counters can be cleared explicitly."""
        for _ in range(6):
            self._attempt()
        token = self.store.reset_attempts(self.token.token_id)
        self.assertEqual(token.verification_attempts, 0)
        self.assertFalse(token.is_blocked)
        self.assertEqual(self.store.load(self.token.token_id), token)


class TestGetTokenStore(TestCase):
    """The store is configured from the application config."""

    @mock.patch(f'{tokens.__name__}.get_application_config')
    @mock.patch(f'{tokens.__name__}.redis.StrictRedis')
    def test_get_token_store(self, mock_redis, mock_get_config):
        """Connection parameters are read from the config."""
        mock_get_config.return_value = {
            'REDIS_HOST': 'redis.local',
            'REDIS_PORT': '6380',
            'REDIS_DATABASE': '2',
            'REDIS_TOKEN': 'foopass',
        }
        store = tokens.get_token_store()
        self.assertIs(store.r, mock_redis.return_value)
        mock_redis.assert_called_once_with(host='redis.local', port=6380,
                                           db=2, password='foopass',
                                           decode_responses=True)
