# Overview: Request authentication decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service
from .services.auth_service import is_admin_user


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Require a valid bearer session token.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired, idle, or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        user = session_service.validate_session(token)
        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """
    Require an authenticated admin (email domain in ADMIN_EMAIL_DOMAINS).

    Returns 401 without a valid session, 403 for non-admins.
    """
    @wraps(f)
    @require_auth
    def decorated_function(*args, **kwargs):
        if not is_admin_user(g.current_user):
            return jsonify({"error": "Forbidden"}), 403
        return f(*args, **kwargs)

    return decorated_function
