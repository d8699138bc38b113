"""
Logging for the user accounts service.

Use :func:`getLogger` in place of :func:`logging.getLogger`, so that every
module logs through the same handler and format. Set ``LOG_JSON=1`` to emit
one JSON object per record, which is what the log shipper expects.
"""

import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from .context import get_application_config

_handler: Optional[logging.Handler] = None


def _get_handler() -> logging.Handler:
    global _handler
    if _handler is None:
        config = get_application_config()
        _handler = logging.StreamHandler(sys.stdout)
        if bool(int(config.get('LOG_JSON', '0'))):
            formatter: logging.Formatter = jsonlogger.JsonFormatter(
                '%(asctime)s %(levelname)s %(name)s %(message)s',
                rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
            )
        else:
            formatter = logging.Formatter(
                '%(asctime)s - %(process)d: [%(name)s] %(levelname)s:'
                ' %(message)s'
            )
        _handler.setFormatter(formatter)
    return _handler


def getLogger(name: str) -> logging.Logger:
    """Get a logger that writes to the service's shared handler."""
    config = get_application_config()
    logger = logging.getLogger(name)
    handler = _get_handler()
    if handler not in logger.handlers:
        logger.addHandler(handler)
    logger.setLevel(int(config.get('LOGLEVEL', '20')))
    logger.propagate = False
    return logger
