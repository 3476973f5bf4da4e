# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import directory_service


def require_actor(f):
    """
    Resolve the acting user for a mutating request.

    The caller is already authenticated upstream and passes its user id in
    the X-Actor-Id header. Sets g.actor_id.

    Returns 401 if the header is missing, not an integer, or names no active
    user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get("X-Actor-Id", "").strip()
        if not raw:
            return jsonify({"error": "X-Actor-Id header required"}), 401
        try:
            actor_id = int(raw)
        except ValueError:
            return jsonify({"error": "X-Actor-Id must be a user id"}), 401

        if not directory_service.user_exists(actor_id):
            return jsonify({"error": "Unknown or inactive actor"}), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
