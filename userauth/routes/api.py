"""Provides routes for the user accounts API."""

from flask import Blueprint, request
from flask.json import jsonify

from ..auth import AuthContext, authenticated
from ..controllers import users

blueprint = Blueprint('api', __name__)


def _payload() -> dict:
    # Ignore Content-Type header; malformed bodies count as empty.
    return request.get_json(force=True, silent=True)


@blueprint.route('/health', methods=['GET'])
def health() -> tuple:
    """Health check endpoint."""
    data, status_code, headers = users.health()
    return jsonify(data), status_code, headers


@blueprint.route('/users/register', methods=['POST'])
def register() -> tuple:
    """Create a new user account."""
    data, status_code, headers = users.register(_payload())
    return jsonify(data), status_code, headers


@blueprint.route('/users/verify-otp', methods=['POST'])
def verify_otp() -> tuple:
    """Verify an account with the OTP sent by e-mail."""
    data, status_code, headers = users.verify_otp(_payload())
    return jsonify(data), status_code, headers


@blueprint.route('/users/resend-otp', methods=['POST'])
def resend_otp() -> tuple:
    """Send a new OTP."""
    data, status_code, headers = users.resend_otp(_payload())
    return jsonify(data), status_code, headers


@blueprint.route('/users/login', methods=['POST'])
def login() -> tuple:
    """Log in with e-mail and password."""
    data, status_code, headers = users.login(_payload())
    return jsonify(data), status_code, headers


@blueprint.route('/users/refresh-token', methods=['POST'])
def refresh_token() -> tuple:
    """Get a new access token."""
    data, status_code, headers = users.refresh_token(_payload())
    return jsonify(data), status_code, headers


@blueprint.route('/users/profile', methods=['GET'])
@authenticated
def profile(auth: AuthContext) -> tuple:
    """Get the authenticated user's profile."""
    data, status_code, headers = users.profile(auth)
    return jsonify(data), status_code, headers
