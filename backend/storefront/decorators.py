# Overview: Request decorators for API routes (identity context, error translation).

from functools import wraps
from flask import current_app, g, jsonify, request

from .validation import DomainError


def load_request_identity() -> None:
    """
    Copy caller identity set by the upstream auth layer into flask.g.

    - g.user_id: X-User-Id (acting staff member or signed-in customer), or None
    - g.request_id: X-Request-Id, carried into voucher audit rows
    """
    g.user_id = (request.headers.get("X-User-Id") or "").strip() or None
    g.request_id = (request.headers.get("X-Request-Id") or "").strip() or None


def error_response(exc: DomainError):
    body = {"error": str(exc)}
    if exc.details:
        body["details"] = exc.details
    return jsonify(body), exc.status_code


def json_errors(f):
    """
    Translate service exceptions into JSON responses.

    DomainError subclasses map to their status_code (400/404/409).
    Anything else is logged with traceback and returned as a 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except DomainError as e:
            return error_response(e)
        except Exception:
            current_app.logger.exception("Unhandled error in %s %s", request.method, request.path)
            return jsonify({"error": "Internal server error"}), 500

    return decorated_function
