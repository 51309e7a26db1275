from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, has_request_context, jsonify, redirect, request, url_for

from app.backoffice.models import User


def permission_keys(user: User | None) -> frozenset[str]:
    """All permission keys granted to ``user`` through its roles (cached per request for g.current_user)."""
    if user is None or not user.is_active:
        return frozenset()
    cacheable = has_request_context() and g.get("current_user") is user
    if cacheable and "permission_keys" in g:
        return g.permission_keys
    keys = frozenset(p.key for role in user.roles for p in role.permissions)
    if cacheable:
        g.permission_keys = keys
    return keys


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def _wants_json() -> bool:
    if request.is_json:
        return True
    accept = request.accept_mimetypes
    return accept.best_match(["text/html", "application/json"]) == "application/json"


def _login_redirect():
    target = request.full_path.rstrip("?") if request.query_string else request.path
    return redirect(url_for("auth.login_get", next=target))


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Anonymous callers go to the login form (AJAX callers get a JSON 401);
    signed-in users without ``permission_key`` get a 403.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = g.get("current_user")
            if user is None or not user.is_active:
                if _wants_json():
                    body = {"success": False, "error": True, "message": "Authentication required.", "data": {}}
                    return jsonify(body), 401
                return _login_redirect()
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
