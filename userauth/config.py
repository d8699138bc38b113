"""Flask configuration."""

import os
import secrets

VERSION = '0.3.0'
"""The application version."""

#################### General config for app ####################
SECRET_KEY = os.environ.get('SECRET_KEY', secrets.token_urlsafe(16))
"""Sets the `Flask` secret key. Not used for bearer tokens."""

SERVER_NAME = os.environ.get('SERVER_NAME')

#################### User store ####################
SQLALCHEMY_DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI',
                                         'sqlite:///userauth.db')
"""Database holding user accounts."""

SQLALCHEMY_TRACK_MODIFICATIONS = False

CREATE_DB = bool(int(os.environ.get('CREATE_DB', '0')))
"""Create the user tables when the application starts."""

#################### Token store ####################
REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
REDIS_PORT = os.environ.get('REDIS_PORT', '6379')
REDIS_DATABASE = os.environ.get('REDIS_DATABASE', '0')
REDIS_TOKEN = os.environ.get('REDIS_TOKEN', None)
"""This is the password used in the AUTH procedure."""

REDIS_FAKE = bool(int(os.environ.get('REDIS_FAKE', '0')))
"""Use the FakeRedis library instead of a redis service.

Useful for testing and development."""

#################### Bearer tokens ####################
ACCESS_TOKEN_SECRET = os.environ.get('ACCESS_TOKEN_SECRET',
                                     secrets.token_urlsafe(32))
"""Signs access tokens.

If unset, a random secret is generated for this process, and tokens will not
survive a restart or be accepted by other workers."""

REFRESH_TOKEN_SECRET = os.environ.get('REFRESH_TOKEN_SECRET',
                                      secrets.token_urlsafe(32))
"""Signs refresh tokens. Must differ from ``ACCESS_TOKEN_SECRET``."""

ACCESS_TOKEN_EXPIRY = os.environ.get('ACCESS_TOKEN_EXPIRY', '86400')
"""Lifetime of an access token, in seconds."""

REFRESH_TOKEN_EXPIRY = os.environ.get('REFRESH_TOKEN_EXPIRY', '604800')
"""Lifetime of a refresh token, in seconds."""

JWT_ALGORITHM = os.environ.get('JWT_ALGORITHM', 'HS256')

#################### One-time passwords ####################
OTP_EXPIRY = os.environ.get('OTP_EXPIRY', '600')
"""Lifetime of an OTP and its verification token, in seconds."""

MAX_VERIFICATION_ATTEMPTS = os.environ.get('MAX_VERIFICATION_ATTEMPTS', '5')
"""Failed OTP checks allowed before the token is blocked."""

VERIFICATION_COOLDOWN = os.environ.get('VERIFICATION_COOLDOWN', '1800')
"""Seconds after the last attempt before a blocked token is usable again."""

OTP_RESEND_INTERVAL = os.environ.get('OTP_RESEND_INTERVAL', '60')
"""Minimum number of seconds between two OTPs issued to the same user."""

BCRYPT_ROUNDS = os.environ.get('BCRYPT_ROUNDS', '12')
"""Work factor for password and token hashes."""

#################### Mail ####################
MAIL_SERVER = os.environ.get('MAIL_SERVER', 'localhost')
MAIL_PORT = os.environ.get('MAIL_PORT', '25')
MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
MAIL_USE_TLS = bool(int(os.environ.get('MAIL_USE_TLS', '0')))
EMAIL_SENDER = os.environ.get('EMAIL_SENDER', 'no-reply@localhost')
"""Address from which OTP messages are sent."""

#################### Celery ####################
CELERY_BROKER_URL = os.environ.get(
    'CELERY_BROKER_URL',
    f'redis://{REDIS_HOST}:{REDIS_PORT}/1'
)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND',
                                       CELERY_BROKER_URL)
CELERY_ALWAYS_EAGER = bool(int(os.environ.get('CELERY_ALWAYS_EAGER', '0')))
"""Run tasks in-process. Useful for testing and development."""

#################### Logging ####################
LOGLEVEL = os.environ.get('LOGLEVEL', '20')
LOG_JSON = bool(int(os.environ.get('LOG_JSON', '0')))
"""Emit log records as JSON objects."""
