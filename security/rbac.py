from functools import wraps
from flask import g, jsonify

def has_role(role_name: str) -> bool:
    if getattr(g, "user_id", None) is None:
        return False
    roles = getattr(g, "roles", set())
    return role_name in roles or "SUPER_ADMIN" in roles

def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if getattr(g, "user_id", None) is None:
                return jsonify(error="Authentication required"), 401

            user_roles = getattr(g, "roles", set())
            if "SUPER_ADMIN" not in user_roles and not user_roles.intersection(set(role_names)):
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
