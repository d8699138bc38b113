"""Asynchronous tasks."""

import smtplib
from typing import Any

from celery import shared_task

from . import logging
from .services import mail

logger = logging.getLogger(__name__)


@shared_task
def send_otp_email(recipient: str, otp: str, kind: str = 'otp',
                   **context: Any) -> None:
    """
    Send a one-time password to ``recipient``.

    Parameters
    ----------
    recipient : str
        E-mail address of the user.
    otp : str
        The plaintext one-time password. It is never logged.
    kind : str
        Message template; see :data:`.mail.TEMPLATES`.

    """
    try:
        mail.send(kind, recipient, otp=otp, **context)
    except (smtplib.SMTPException, OSError) as e:
        logger.error('Failed to send %s message to %s: %s', kind, recipient, e)
        raise
    logger.info('Sent %s message to %s', kind, recipient)


def dispatch_otp_email(recipient: str, otp: str, kind: str = 'otp',
                       **context: Any) -> None:
    """
    Enqueue :func:`send_otp_email` without waiting for it.

    Delivery problems never reach the caller; they are only logged.
    """
    try:
        send_otp_email.delay(recipient, otp, kind, **context)
    except Exception as e:
        logger.error('Could not enqueue %s message to %s: %s', kind,
                     recipient, e)
