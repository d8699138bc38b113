"""Application factory for the user accounts service."""

import time

from celery import Celery
from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException

from . import celeryconfig, envelope, logging
from .errors import APIError, ErrorKind
from .routes import api
from .services import tokens, users

logger = logging.getLogger(__name__)

celery_app = Celery('userauth', include=['userauth.tasks'])
celery_app.config_from_object(celeryconfig)

_HTTP_KINDS = {
    400: (ErrorKind.BAD_REQUEST, None),
    401: (ErrorKind.UNAUTHORIZED, None),
    404: (ErrorKind.NOT_FOUND, 'Route not found'),
    405: (ErrorKind.METHOD_NOT_ALLOWED, None),
    409: (ErrorKind.CONFLICT, None),
    429: (ErrorKind.TOO_MANY_REQUESTS, None),
}


def create_web_app() -> Flask:
    """Initialize and configure the user accounts application."""
    app = Flask('userauth')
    app.config.from_pyfile('config.py')

    users.init_app(app)
    tokens.init_app(app)
    init_celery(app)

    app.register_blueprint(api.blueprint)
    register_error_handlers(app)
    register_request_logging(app)

    if app.config['CREATE_DB']:
        with app.app_context():
            users.create_all()

    return app


def create_worker_app() -> Celery:
    """Initialize the Celery application, bound to a Flask app context."""
    flask_app = create_web_app()
    flask_app.app_context().push()
    return celery_app


def init_celery(app: Flask) -> None:
    """Take the broker settings from the Flask configuration."""
    celery_app.conf.update(
        broker_url=app.config['CELERY_BROKER_URL'],
        result_backend=app.config['CELERY_RESULT_BACKEND'],
        task_always_eager=app.config['CELERY_ALWAYS_EAGER']
    )
    # Shared tasks are bound to the default app.
    celery_app.set_default()


def register_error_handlers(app: Flask) -> None:
    """Render every error in the response envelope."""
    app.register_error_handler(APIError, handle_api_error)
    app.register_error_handler(HTTPException, handle_http_exception)
    app.register_error_handler(Exception, handle_unexpected_error)


def _render(error: APIError, status_code: int) -> Response:
    body = envelope.failure(error)
    body['statusCode'] = status_code
    response: Response = jsonify(body)
    response.status_code = status_code
    return response


def handle_api_error(error: APIError) -> Response:
    """Render an :class:`.APIError`, and log it at the level for its kind."""
    logger.log(error.kind.log_level, '%s %s failed: [%s] %s', request.method,
               request.path, error.kind.name, error.message)
    return _render(error, error.status_code)


def handle_http_exception(error: HTTPException) -> Response:
    """Render exceptions raised by werkzeug, e.g. for unknown routes."""
    status_code = error.code or 500
    kind, message = _HTTP_KINDS.get(
        status_code,
        (ErrorKind.INTERNAL if status_code >= 500 else ErrorKind.BAD_REQUEST,
         None)
    )
    if message is None and kind is not ErrorKind.INTERNAL:
        message = error.description
    api_error = APIError(kind, message)
    logger.log(kind.log_level, '%s %s failed: %i %s', request.method,
               request.path, status_code, api_error.message)
    return _render(api_error, status_code)


def handle_unexpected_error(error: Exception) -> Response:
    """Wrap anything else as an internal error. Details stay in the log."""
    logger.exception('Unhandled error on %s %s: %s', request.method,
                     request.path, error)
    api_error = APIError(ErrorKind.INTERNAL)
    return _render(api_error, api_error.status_code)


def register_request_logging(app: Flask) -> None:
    """Log each request on completion."""
    @app.before_request
    def start_timer() -> None:
        g.request_started = time.monotonic()

    @app.after_request
    def log_request(response: Response) -> Response:
        started = g.get('request_started')
        duration = (time.monotonic() - started) * 1000 if started else 0.0
        logger.info('%s %s %i %.1fms %s', request.method, request.path,
                    response.status_code, duration, request.remote_addr,
                    extra={'method': request.method, 'path': request.path,
                           'status_code': response.status_code,
                           'duration_ms': round(duration, 1),
                           'remote_addr': request.remote_addr})
        return response
