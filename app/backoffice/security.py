import secrets

from flask import Flask, Request, render_template, request, session

_UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_SKIP_PREFIXES = ("/static/", "/health", "/healthz")


def ensure_csrf_token() -> str:
    token = session.get("csrf_token")
    if not token:
        token = session["csrf_token"] = secrets.token_urlsafe(32)
    return token


def _submitted_token(req: Request) -> str | None:
    # header first: the install steps post JSON through $.ajax
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if token or not req.is_json:
        return token
    body = req.get_json(silent=True)
    return body.get("csrf_token") if isinstance(body, dict) else None


def validate_csrf(req: Request) -> bool:
    token = _submitted_token(req)
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def init_csrf(app: Flask, *, exempt: tuple[str, ...] = ()) -> None:
    """Session-token CSRF guard for every state-changing request (off when CSRF_ENABLED is false)."""

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_SKIP_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in _UNSAFE_METHODS or not app.config.get("CSRF_ENABLED", True):
            return None
        if request.endpoint in exempt or validate_csrf(request):
            return None
        app.logger.warning("CSRF check failed: endpoint=%s", request.endpoint)
        return render_template("errors/400.html", message="CSRF token missing or invalid."), 400
