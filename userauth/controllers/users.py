"""
Controllers for registration, verification, and login.

Each controller validates the request body, calls the services, and returns
the response envelope along with a status code and headers. Failures are
raised as :class:`.APIError`, and rendered by the application's error
handlers.
"""

from datetime import datetime
from typing import Any, Optional, Tuple

from pytz import UTC

from .. import domain, envelope, errors, logging, status
from ..auth import AuthContext
from ..errors import APIError, ErrorKind
from ..services import sessions, users, verification
from ..services.exceptions import UserExists, VerificationFailed, \
    ResendTooSoon, AlreadyVerified, AuthenticationFailed
from .forms import form_data, RegistrationForm, LoginForm, VerifyOTPForm, \
    ResendOTPForm, RefreshTokenForm

logger = logging.getLogger(__name__)

ResponseData = Tuple[dict, int, dict]

RESEND_MESSAGE = ('If an account exists for this email, a new verification'
                  ' code has been sent')


def _invalid(form: Any) -> APIError:
    missing = [name for name, field in form._fields.items()
               if field.flags.required and not field.data]
    if missing:
        message = f'Missing required fields: {", ".join(missing)}'
    else:
        message = 'Invalid request data'
    return errors.bad_request(message, form.errors)


def health() -> ResponseData:
    """Report that the service is up."""
    data = {'status': 'ok',
            'timestamp': domain.isoformat(datetime.now(tz=UTC))}
    return envelope.success('Server is healthy', data), status.HTTP_200_OK, {}


def register(payload: Optional[Any]) -> ResponseData:
    """
    Create a new account, and e-mail an OTP to verify it.

    Parameters
    ----------
    payload : dict
        Should include ``username``, ``email``, ``password``, and optionally
        ``role``.

    Returns
    -------
    dict
        Response envelope. The data carries the new user and the
        ``verificationToken`` to use with the OTP.
    int
        Status code. 201 if all goes well.
    dict
        Headers to add to the response.

    """
    form = RegistrationForm(form_data(payload))
    if not form.validate():
        logger.debug('Registration data is not valid: %s', form.errors)
        raise _invalid(form)

    role = form.role.data or domain.Roles.DEFAULT
    if role in domain.Roles.ELEVATED:
        logger.warning('Refused self-registration with role %s', role)
        raise errors.unauthorized(
            'You are not allowed to register as admin or superadmin'
        )

    try:
        user = users.create(form.username.data, form.email.data.strip(),
                            form.password.data, role)
    except UserExists as e:
        raise APIError(ErrorKind.CONFLICT, str(e)) from e

    issued = verification.issue_otp(user)
    data = {'user': domain.user_to_dict(user),
            'verificationToken': issued.verification_token}
    message = ('User registered successfully. Please verify your email with'
               ' the OTP we sent you')
    code = status.HTTP_201_CREATED
    return envelope.success(message, data, code), code, {}


def verify_otp(payload: Optional[Any]) -> ResponseData:
    """Check the OTP for an account, and mark it verified."""
    form = VerifyOTPForm(form_data(payload))
    if not form.validate():
        raise _invalid(form)
    try:
        verification.verify_otp(form.email.data, form.otp.data.strip(),
                                 form.verificationToken.data.strip())
    except VerificationFailed as e:
        raise errors.verification(str(e)) from e
    return envelope.success('Email verified successfully',
                            {'verified': True}), status.HTTP_200_OK, {}


def resend_otp(payload: Optional[Any]) -> ResponseData:
    """
    Issue a new OTP.

    Whether or not an account exists for the address is not revealed.
    """
    form = ResendOTPForm(form_data(payload))
    if not form.validate():
        raise _invalid(form)
    try:
        issued = verification.resend_otp(form.email.data)
    except AlreadyVerified:
        logger.debug('OTP resend requested for a verified account')
        issued = None
    except ResendTooSoon as e:
        raise APIError(ErrorKind.TOO_MANY_REQUESTS, str(e)) from e
    except VerificationFailed as e:
        raise errors.verification(str(e)) from e

    if issued is None:
        # Unknown and verified addresses get a decoy of the same shape.
        verification_token = verification.generate_verification_token()
    else:
        verification_token = issued.verification_token
    data = {'verificationToken': verification_token}
    return envelope.success(RESEND_MESSAGE, data), status.HTTP_200_OK, {}


def login(payload: Optional[Any]) -> ResponseData:
    """
    Log a user in with e-mail and password.

    Verified users receive an access token and a refresh token. Unverified
    users receive verification data instead, and must complete the OTP flow.
    """
    form = LoginForm(form_data(payload))
    if not form.validate():
        raise _invalid(form)
    try:
        result = sessions.login(form.email.data, form.password.data)
    except AuthenticationFailed as e:
        raise errors.authentication(str(e)) from e
    except VerificationFailed as e:
        raise errors.verification(str(e)) from e

    user_data = domain.user_to_dict(result.user)
    if result.needs_verification:
        data = {
            'user': user_data,
            'verificationData': {
                'verificationToken': result.verification_token,
                'message': 'Please verify your email with the OTP sent to'
                           ' your inbox'
            }
        }
        return envelope.success('Email verification required', data), \
            status.HTTP_200_OK, {}

    data = {'user': user_data,
            'accessToken': result.access_token,
            'refreshToken': result.refresh_token}
    return envelope.success('Login successful', data), status.HTTP_200_OK, {}


def refresh_token(payload: Optional[Any]) -> ResponseData:
    """Exchange a refresh token for a new access token."""
    form = RefreshTokenForm(form_data(payload))
    if not form.validate():
        raise _invalid(form)
    try:
        access_token = sessions.refresh(form.refreshToken.data.strip())
    except AuthenticationFailed as e:
        raise errors.authentication(str(e)) from e
    return envelope.success('Access token refreshed',
                            {'accessToken': access_token}), \
        status.HTTP_200_OK, {}


def profile(auth: AuthContext) -> ResponseData:
    """Get the profile of the authenticated user."""
    return envelope.success('Profile retrieved successfully',
                            domain.user_to_dict(auth.user)), \
        status.HTTP_200_OK, {}
