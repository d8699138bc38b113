"""Composes and sends the service's e-mail messages."""

import smtplib
from email.message import EmailMessage
from typing import Any, Dict, NamedTuple, Optional

from .. import logging
from ..context import get_application_config

logger = logging.getLogger(__name__)


class _Template(NamedTuple):
    sender_name: str
    subject: str
    text: str
    html: str


TEMPLATES: Dict[str, _Template] = {
    'otp': _Template(
        sender_name='OTP VERIFICATION',
        subject='Your verification code',
        text=(
            'Your verification code is {otp}.\n\n'
            'It expires in {minutes} minutes. If you did not request this'
            ' code, you can ignore this message.\n'
        ),
        html=(
            '<p>Your verification code is <strong>{otp}</strong>.</p>'
            '<p>It expires in {minutes} minutes. If you did not request this'
            ' code, you can ignore this message.</p>'
        )
    ),
    'email_verification': _Template(
        sender_name='EMAIL VERIFICATION',
        subject='Verify your e-mail address',
        text=(
            'Hello {username},\n\n'
            'Please confirm your e-mail address with the code {otp}.'
            ' It expires in {minutes} minutes.\n'
        ),
        html=(
            '<p>Hello {username},</p>'
            '<p>Please confirm your e-mail address with the code'
            ' <strong>{otp}</strong>. It expires in {minutes} minutes.</p>'
        )
    )
}
"""Message templates by kind."""


def build_message(kind: str, recipient: str, **context: Any) -> EmailMessage:
    """
    Render a message from one of the :data:`TEMPLATES`.

    Parameters
    ----------
    kind : str
        Key in :data:`TEMPLATES`.
    recipient : str
        Address of the recipient.
    context : kwargs
        Values for the template placeholders. ``minutes`` defaults to the
        configured OTP lifetime.

    Returns
    -------
    :class:`email.message.EmailMessage`

    """
    try:
        template = TEMPLATES[kind]
    except KeyError as e:
        raise ValueError(f'No such message template: {kind}') from e
    config = get_application_config()
    context.setdefault('minutes', int(config.get('OTP_EXPIRY', '600')) // 60)
    sender = config.get('EMAIL_SENDER', 'no-reply@localhost')

    message = EmailMessage()
    message['Subject'] = template.subject
    message['From'] = f'{template.sender_name} <{sender}>'
    message['To'] = recipient
    message.set_content(template.text.format(**context))
    message.add_alternative(template.html.format(**context), subtype='html')
    return message


class MailSession(object):
    """An open session with an SMTP service."""

    def __init__(self, host: str = "", port: int = 0,
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 use_tls: bool = False) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls

    def _new_connection(self) -> smtplib.SMTP:
        conn = smtplib.SMTP(host=self._host, port=self._port)
        if self._use_tls:
            conn.starttls()
        if self._username:
            conn.login(self._username, self._password or '')
        return conn

    def send_message(self, message: EmailMessage) -> None:
        """Deliver ``message`` over a new SMTP connection."""
        conn = self._new_connection()
        try:
            conn.send_message(message)
        finally:
            conn.quit()
        logger.debug('Sent "%s" to %s', message['Subject'], message['To'])


def get_session() -> MailSession:
    """Get a :class:`.MailSession` using the current configuration."""
    config = get_application_config()
    return MailSession(
        host=config.get('MAIL_SERVER', 'localhost'),
        port=int(config.get('MAIL_PORT', '25')),
        username=config.get('MAIL_USERNAME'),
        password=config.get('MAIL_PASSWORD'),
        use_tls=bool(int(config.get('MAIL_USE_TLS', 0)))
    )


def send(kind: str, recipient: str, **context: Any) -> None:
    """Render and deliver a message."""
    get_session().send_message(build_message(kind, recipient, **context))
