from __future__ import annotations

import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, session, url_for
from flask_babel import gettext
from werkzeug.security import check_password_hash

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import Company, User

bp = Blueprint("auth", __name__)

_SESSION_KEYS = ("user_id", "company_id")


class LoginThrottle:
    """In-process sliding window of login attempts per client IP."""

    def __init__(self, limit: int = 5, window: timedelta = timedelta(minutes=5)):
        self.limit = limit
        self.window = window
        self._attempts: dict[str, deque[datetime]] = defaultdict(deque)

    def _prune(self, ip: str) -> deque[datetime]:
        attempts = self._attempts[ip]
        cutoff = datetime.utcnow() - self.window
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        return attempts

    def blocked(self, ip: str) -> bool:
        return len(self._prune(ip)) >= self.limit

    def hit(self, ip: str) -> None:
        self._prune(ip).append(datetime.utcnow())

    def reset(self, ip: str) -> None:
        self._attempts.pop(ip, None)


throttle = LoginThrottle()


def enabled_companies(user: User) -> list[Company]:
    return sorted((c for c in user.companies if c.enabled), key=lambda c: c.id)


def _end_session() -> None:
    for key in _SESSION_KEYS:
        session.pop(key, None)


def load_current_user() -> None:
    """
    before_request: resolve g.current_user from the session and tag the request with an id.
    A user that was disabled or deleted since login is signed out here.
    """
    g.request_id = g.get("request_id") or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return
    user = db_session().get(User, int(user_id))
    if user is None or not user.is_active:
        current_app.logger.info("Signing out missing/disabled user_id=%s", user_id)
        _end_session()
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    return render_template("auth/login.html", next=(request.args.get("next") or "").strip())


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if throttle.blocked(ip):
        flash(gettext("Too many login attempts. Please wait 5 minutes."), "danger")
        return redirect(url_for("auth.login_get"))
    throttle.hit(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash(gettext("Invalid credentials."), "danger")
        return redirect(url_for("auth.login_get"))

    throttle.reset(ip)
    session["user_id"] = user.id
    companies = enabled_companies(user)
    if companies:
        session["company_id"] = companies[0].id
    else:
        # no tenant yet: admin pages still work, apps pages answer 400
        session.pop("company_id", None)

    record_event(
        s,
        actor=user,
        action="auth.login",
        entity_type="User",
        entity_id=str(user.id),
        company_id=session.get("company_id"),
    )
    s.commit()
    # local paths only (no open redirects)
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("admin.index"))


@bp.post("/companies/<int:company_id>/switch")
def switch_company(company_id: int):
    user = g.get("current_user")
    if user is None:
        return redirect(url_for("auth.login_get"))
    if company_id not in {c.id for c in enabled_companies(user)}:
        abort(403)

    session["company_id"] = company_id
    s = db_session()
    record_event(s, actor=user, action="auth.company_switch", entity_type="Company", entity_id=str(company_id), company_id=company_id)
    s.commit()

    referrer = request.referrer
    if referrer and referrer.startswith(request.host_url):
        return redirect(referrer)
    return redirect(url_for("admin.index"))


@bp.get("/logout")
def logout():
    user = g.get("current_user")
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    _end_session()
    return redirect(url_for("routes.index"))
