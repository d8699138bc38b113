"""Web Server Gateway Interface entry-point."""

import os
from typing import Optional

from flask import Flask

from userauth.factory import create_web_app

__flask_app__: Optional[Flask] = None


def _load_environ(environ: dict) -> None:
    """Copy deployment settings from the first request's environ."""
    for key, value in environ.items():
        # Keep ``SERVER_NAME`` explicitly configured, either in config.py or
        # via an os.environ var loaded by config.py; uWSGI may pass in the
        # container hostname here. Request headers are not settings.
        if key == 'SERVER_NAME' or key.startswith('HTTP_'):
            continue
        if isinstance(value, str):
            os.environ[key] = value


def application(environ, start_response):    # type: ignore
    """WSGI application."""
    global __flask_app__
    if __flask_app__ is None:
        _load_environ(environ)
        __flask_app__ = create_web_app()
    return __flask_app__(environ, start_response)
