# Overview: Request decorators for API routes.

from functools import wraps

from flask import g, jsonify, request

ACTOR_HEADER = "X-User-Id"


def with_actor(f):
    """
    Expose the acting user as g.actor_id.

    Authentication happens upstream; the X-User-Id header it forwards is
    trusted as-is and only used for audit fields (created_by, audit events,
    reconciliation issues). A missing header leaves g.actor_id = None.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(ACTOR_HEADER)
        if raw is None or not raw.strip():
            g.actor_id = None
        else:
            try:
                g.actor_id = int(raw.strip())
            except ValueError:
                return jsonify({"error": f"{ACTOR_HEADER} must be an integer", "kind": "ValidationError"}), 400
        return f(*args, **kwargs)

    return decorated_function
