from functools import wraps
from flask import current_app, g, jsonify, request

def load_current_user():
    # Authentication happens upstream; the gateway forwards the verified identity
    id_header = current_app.config.get("USER_ID_HEADER", "X-User-Id")
    roles_header = current_app.config.get("USER_ROLES_HEADER", "X-User-Roles")

    user_id = (request.headers.get(id_header) or "").strip()
    g.user_id = user_id or None
    raw_roles = request.headers.get(roles_header) or ""
    g.roles = {r.strip().upper() for r in raw_roles.split(",") if r.strip()} if user_id else set()

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user_id", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
