"""Access to application configuration."""

import os
from typing import Any, Optional, Mapping

from flask import current_app, has_app_context


def get_application_config(app: Optional[Any] = None) -> Mapping:
    """
    Get a configuration from the current app, or fall back to env.

    Parameters
    ----------
    app : :class:`flask.Flask`

    Returns
    -------
    dict-like
        This is either the current Flask application configuration, or
        ``os.environ``. Either of these should support the ``get()`` method.
    """
    if app is not None:
        config: Mapping = app.config
        return config
    if has_app_context():
        return current_app.config
    return os.environ
