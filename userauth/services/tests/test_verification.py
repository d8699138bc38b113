"""Tests for :mod:`userauth.services.verification`."""

from datetime import datetime, timedelta
from unittest import TestCase, mock

from pytz import UTC

from ... import domain
from ...tests.base import AppTestCase
from .. import tokens, users, verification
from ..exceptions import VerificationFailed, ResendTooSoon, AlreadyVerified


class TestGenerate(TestCase):
    """OTPs and tokens come from a secure random source."""

    def test_otp_range(self):
        """OTPs are always six digits."""
        for _ in range(10000):
            otp = verification.generate_otp()
            self.assertEqual(len(otp), 6)
            self.assertTrue(otp.isdigit())
            self.assertTrue(100000 <= int(otp) <= 999999)

    def test_tokens(self):
        """Tokens are hex-encoded random bytes."""
        token = verification.generate_token()
        self.assertEqual(len(token), 64)
        int(token, 16)
        self.assertEqual(len(verification.generate_verification_token()), 12)
        self.assertNotEqual(verification.generate_token(),
                            verification.generate_token())


class VerificationTestCase(AppTestCase):
    """Provides an unverified user."""

    def setUp(self):
        """Create an unverified user."""
        super(VerificationTestCase, self).setUp()
        data = self.new_user_data()
        self.user = users.create(data['username'], data['email'],
                                 data['password'])

    def _rewind(self, token: domain.Token, field: str,
                delta: timedelta) -> None:
        value = datetime.now(tz=UTC) - delta
        self.store.r.hset(f'token:{token.token_id}', field, value.isoformat())


@mock.patch(f'{verification.__name__}.dispatch_otp_email')
class TestIssueOTP(VerificationTestCase):
    """Issuing an OTP stores its hash and e-mails the OTP."""

    def test_issue(self, mock_dispatch):
        """The OTP is e-mailed, and only its hash is stored."""
        issued = verification.issue_otp(self.user)
        self.assertEqual(issued.token.token_type, domain.TokenTypes.OTP)
        self.assertEqual(len(issued.verification_token), 12)
        self.assertNotEqual(issued.token.token_hash, issued.otp)
        mock_dispatch.assert_called_once_with(self.user.email, issued.otp,
                                              'otp',
                                              username=self.user.username)
        expires_in = issued.token.expires_at - datetime.now(tz=UTC)
        self.assertLessEqual(expires_in, timedelta(minutes=10))
        self.assertGreater(expires_in, timedelta(minutes=9))

    def test_replaces_existing(self, mock_dispatch):
        """A user holds at most one OTP."""
        first = verification.issue_otp(self.user)
        second = verification.issue_otp(self.user)
        self.assertIsNone(tokens.find_by_verification_token(
            first.verification_token
        ))
        self.assertEqual(
            tokens.find_by_user_and_type(self.user.user_id,
                                         domain.TokenTypes.OTP),
            second.token
        )


@mock.patch(f'{verification.__name__}.dispatch_otp_email')
class TestVerifyOTP(VerificationTestCase):
    """The OTP is checked against the attempt state machine."""

    def setUp(self):
        """Issue an OTP to the user."""
        super(TestVerifyOTP, self).setUp()
        with mock.patch(f'{verification.__name__}.dispatch_otp_email'):
            self.issued = verification.issue_otp(self.user)
        self.wrong = '100000' if self.issued.otp != '100000' else '100001'

    def _verify(self, otp: str) -> domain.User:
        return verification.verify_otp(self.user.email, otp,
                                       self.issued.verification_token)

    def test_round_trip(self, mock_dispatch):
        """The correct OTP verifies the user, and consumes the token."""
        user = self._verify(self.issued.otp)
        self.assertTrue(user.verified)
        self.assertTrue(users.get_by_id(self.user.user_id).verified)
        self.assertIsNone(tokens.find_by_verification_token(
            self.issued.verification_token
        ))
        # The user is verified; the token is gone.
        with self.assertRaises(VerificationFailed):
            self._verify(self.issued.otp)

    def test_wrong_otp(self, mock_dispatch):
        """A wrong OTP is counted, and reported with attempts left."""
        with self.assertRaisesRegex(VerificationFailed, '4 attempts'):
            self._verify(self.wrong)
        token = tokens.find_by_verification_token(
            self.issued.verification_token
        )
        self.assertEqual(token.verification_attempts, 1)
        self.assertFalse(users.get_by_id(self.user.user_id).verified)

    def test_blocked_after_max_attempts(self, mock_dispatch):
        """The fifth failure blocks the token; even the correct OTP fails."""
        for _ in range(4):
            with self.assertRaisesRegex(VerificationFailed, 'Invalid OTP'):
                self._verify(self.wrong)
        with self.assertRaisesRegex(VerificationFailed, 'Too many'):
            self._verify(self.wrong)
        token = tokens.find_by_verification_token(
            self.issued.verification_token
        )
        self.assertEqual(token.verification_attempts, 5)
        self.assertTrue(token.is_blocked)

        with self.assertRaisesRegex(VerificationFailed, 'Too many'):
            self._verify(self.issued.otp)
        self.assertFalse(users.get_by_id(self.user.user_id).verified)

    def test_no_new_otp_after_max_attempts(self, mock_dispatch):
        """Five failures cannot be escaped by asking for a new OTP."""
        for _ in range(5):
            with self.assertRaises(VerificationFailed):
                self._verify(self.wrong)
        self._rewind(self.issued.token, 'created_at', timedelta(seconds=61))
        with self.assertRaisesRegex(VerificationFailed, 'Too many'):
            verification.resend_otp(self.user.email)
        with self.assertRaisesRegex(VerificationFailed, 'Too many'):
            verification.pending_verification(self.user)
        mock_dispatch.assert_not_called()
        self.assertIsNotNone(tokens.find_by_verification_token(
            self.issued.verification_token
        ))

    def test_cooldown(self, mock_dispatch):
        """Once the cooldown has passed, the OTP is compared again."""
        for _ in range(6):
            with self.assertRaises(VerificationFailed):
                self._verify(self.wrong)
        token = tokens.find_by_verification_token(
            self.issued.verification_token
        )
        self.assertTrue(token.is_blocked)
        self._rewind(token, 'last_attempt_at', timedelta(minutes=31))

        with self.assertRaisesRegex(VerificationFailed, '4 attempts'):
            self._verify(self.wrong)
        token = tokens.find_by_verification_token(
            self.issued.verification_token
        )
        self.assertEqual(token.verification_attempts, 1)
        self.assertFalse(token.is_blocked)
        self.assertTrue(self._verify(self.issued.otp).verified)

    def test_email_mismatch(self, mock_dispatch):
        """The verification token must belong to the given address."""
        with self.assertRaisesRegex(VerificationFailed, 'does not match'):
            verification.verify_otp('someone@userauth.org', self.issued.otp,
                                    self.issued.verification_token)

    def test_email_case(self, mock_dispatch):
        """The address may be given in any case."""
        user = verification.verify_otp(self.user.email.upper(),
                                       self.issued.otp,
                                       self.issued.verification_token)
        self.assertTrue(user.verified)

    def test_unknown_verification_token(self, mock_dispatch):
        """An unknown verification token fails."""
        with self.assertRaises(VerificationFailed):
            verification.verify_otp(self.user.email, self.issued.otp,
                                    'notarealtoken')

    def test_expired(self, mock_dispatch):
        """An expired token is refused and deleted."""
        token = self.issued.token._replace(
            expires_at=datetime.now(tz=UTC) - timedelta(seconds=1)
        )
        validation = verification.validate_token_for_verification(token)
        self.assertFalse(validation.valid)
        self.assertIn('expired', validation.reason)
        self.assertIsNone(tokens.find_by_verification_token(
            self.issued.verification_token
        ))

    def test_validate_blocked(self, mock_dispatch):
        """A blocked token is invalid until the cooldown has passed."""
        now = datetime.now(tz=UTC)
        token = self.issued.token._replace(is_blocked=True,
                                           verification_attempts=6,
                                           last_attempt_at=now)
        validation = verification.validate_token_for_verification(token)
        self.assertFalse(validation.valid)
        self.assertIn('30 minutes', validation.reason)

        token = token._replace(last_attempt_at=now - timedelta(minutes=31))
        validation = verification.validate_token_for_verification(token)
        self.assertTrue(validation.valid)
        self.assertEqual(validation.token.verification_attempts, 0)

    def test_already_verified(self, mock_dispatch):
        """A verified user short-circuits to success."""
        users.mark_verified(self.user.user_id)
        user = self._verify(self.wrong)
        self.assertTrue(user.verified)


@mock.patch(f'{verification.__name__}.dispatch_otp_email')
class TestResendOTP(VerificationTestCase):
    """OTPs can be re-sent, at most once per interval."""

    def test_resend(self, mock_dispatch):
        """A new OTP replaces the old one once the interval has passed."""
        first = verification.issue_otp(self.user)
        with self.assertRaises(ResendTooSoon):
            verification.resend_otp(self.user.email)

        self._rewind(first.token, 'created_at', timedelta(seconds=61))
        second = verification.resend_otp(self.user.email)
        self.assertNotEqual(second.verification_token,
                            first.verification_token)
        self.assertEqual(mock_dispatch.call_count, 2)
        with self.assertRaises(VerificationFailed):
            verification.verify_otp(self.user.email, first.otp,
                                    first.verification_token)
        self.assertTrue(verification.verify_otp(
            self.user.email, second.otp, second.verification_token
        ).verified)

    def test_no_existing_token(self, mock_dispatch):
        """A user without an OTP gets one straight away."""
        issued = verification.resend_otp(self.user.email)
        self.assertIsNotNone(issued)
        mock_dispatch.assert_called_once()

    def test_unknown_email(self, mock_dispatch):
        """Nothing is sent for an unknown address."""
        self.assertIsNone(verification.resend_otp('nobody@userauth.org'))
        mock_dispatch.assert_not_called()

    def test_already_verified(self, mock_dispatch):
        """Verified users do not get new OTPs."""
        users.mark_verified(self.user.user_id)
        with self.assertRaises(AlreadyVerified):
            verification.resend_otp(self.user.email)

    def test_blocked(self, mock_dispatch):
        """A blocked OTP cannot be replaced during the cooldown."""
        issued = verification.issue_otp(self.user)
        self._rewind(issued.token, 'created_at', timedelta(minutes=2))
        self.store.r.hset(f'token:{issued.token.token_id}',
                          mapping={'is_blocked': '1',
                                   'verification_attempts': '6',
                                   'last_attempt_at':
                                       datetime.now(tz=UTC).isoformat()})
        with self.assertRaisesRegex(VerificationFailed, 'Too many'):
            verification.resend_otp(self.user.email)


@mock.patch(f'{verification.__name__}.dispatch_otp_email')
class TestPendingVerification(VerificationTestCase):
    """Unverified users who log in are pointed at their OTP."""

    def test_reuses_recent_otp(self, mock_dispatch):
        """An OTP issued within the interval is reused, not re-sent."""
        issued = verification.issue_otp(self.user)
        self.assertEqual(verification.pending_verification(self.user),
                         issued.verification_token)
        self.assertEqual(mock_dispatch.call_count, 1)

    def test_issues_new_otp(self, mock_dispatch):
        """An older OTP is replaced."""
        issued = verification.issue_otp(self.user)
        self._rewind(issued.token, 'created_at', timedelta(seconds=61))
        verification_token = verification.pending_verification(self.user)
        self.assertNotEqual(verification_token, issued.verification_token)
        self.assertEqual(mock_dispatch.call_count, 2)
