"""Request body validation."""

from typing import Any, Optional

from werkzeug.datastructures import MultiDict
from wtforms import Form, PasswordField, StringField
from wtforms.validators import AnyOf, DataRequired, Email, Length, Optional \
    as OptionalValue

from .. import domain


def form_data(payload: Optional[Any]) -> MultiDict:
    """
    Adapt a JSON request body for use with a :class:`wtforms.Form`.

    Strings are kept, and integers (e.g. an OTP sent as a number) are
    converted to strings; anything else is treated as missing.
    """
    if not isinstance(payload, dict):
        return MultiDict()
    data = []
    for key, value in payload.items():
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str):
            data.append((key, value))
    return MultiDict(data)


class RegistrationForm(Form):
    """New user account."""

    username = StringField('Username', validators=[DataRequired(),
                                                   Length(min=3, max=50)])
    email = StringField('Email', validators=[DataRequired(), Email()])
    password = PasswordField('Password', validators=[DataRequired(),
                                                     Length(min=8, max=128)])
    role = StringField('Role', validators=[OptionalValue(),
                                           AnyOf(domain.Roles.ALL)])


class LoginForm(Form):
    """Log in form."""

    email = StringField('Email', validators=[DataRequired()])
    password = PasswordField('Password', validators=[DataRequired()])


class VerifyOTPForm(Form):
    """Submit the OTP received by e-mail."""

    email = StringField('Email', validators=[DataRequired()])
    otp = StringField('OTP', validators=[DataRequired()])
    verificationToken = StringField('Verification token',
                                    validators=[DataRequired()])


class ResendOTPForm(Form):
    """Request a new OTP."""

    email = StringField('Email', validators=[DataRequired()])


class RefreshTokenForm(Form):
    """Exchange a refresh token for an access token."""

    refreshToken = StringField('Refresh token', validators=[DataRequired()])
