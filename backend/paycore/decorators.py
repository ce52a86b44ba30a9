# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_admin_key(f):
    """
    Require the operator API key on admin endpoints.

    SECURITY: Returns
    - 503 if ADMIN_API_KEY is not configured (admin API disabled)
    - 401 if the Authorization header is missing or the key does not match

    Expects: Authorization: Bearer <ADMIN_API_KEY>
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_KEY") or ""
        if not expected:
            return jsonify({"error": "Admin API is not configured"}), 503

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        if not hmac.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning("Rejected admin request to %s from %s", request.path, request.remote_addr)
            return jsonify({"error": "Invalid API key"}), 401

        return f(*args, **kwargs)

    return decorated_function
