from __future__ import annotations

import hashlib
import re
from datetime import date, datetime, time, timedelta

from babel import Locale, UnknownLocaleError
from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for
from flask_babel import gettext
from sqlalchemy import or_
from werkzeug.security import generate_password_hash
from werkzeug.utils import secure_filename

from app.backoffice.audit import current_company_id, record_event
from app.backoffice.db import db_session
from app.backoffice.models import AuditEvent, Company, Role, Upload, User
from app.backoffice.modules.apps.models import Module
from app.backoffice.rbac import require_permission, user_has_permission
from app.backoffice.storage import new_key, storage_from_config

bp = Blueprint("admin", __name__)

PICTURE_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")
AUDIT_LIMIT = 200


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _is_valid_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return bool(re.match(pattern, email))


def _password_errors(password: str, confirm: str, *, required: bool) -> list[str]:
    if not password:
        return [gettext("Password is required.")] if required else []
    if len(password) < 8:
        return [gettext("Password must be at least 8 characters.")]
    if password != confirm:
        return [gettext("Passwords do not match.")]
    return []


def allowed_locales() -> list[tuple[str, str]]:
    """(code, display name) pairs for the language selector."""
    out = []
    for code in current_app.config.get("LOCALES") or []:
        try:
            label = Locale.parse(code).get_display_name() or code
        except (ValueError, UnknownLocaleError):
            label = code
        out.append((code, label))
    return out


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cid = current_company_id()
    company = s.get(Company, cid) if cid else None
    modules = []
    if cid:
        modules = (
            s.query(Module)
            .filter(Module.company_id == cid, Module.deleted_at.is_(None))
            .order_by(Module.alias.asc())
            .all()
        )
    return render_template("admin/index.html", company=company, modules=modules)


def _day_filter(name: str) -> tuple[str, date | None]:
    """Raw ``YYYY-MM-DD`` query value plus its parsed date; flashes when it does not parse."""
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return raw, None
    try:
        return raw, date.fromisoformat(raw)
    except ValueError:
        flash(gettext("%(field)s must be YYYY-MM-DD", field=name), "danger")
        return raw, None


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """Newest audit events of the current company (plus company-less ones such as failed logins)."""
    s = db_session()
    filters = {k: (request.args.get(k) or "").strip() for k in ("action", "actor_email")}
    raw_from, day_from = _day_filter("date_from")
    raw_to, day_to = _day_filter("date_to")

    q = s.query(AuditEvent)
    cid = current_company_id()
    if cid is not None:
        q = q.filter(or_(AuditEvent.company_id == cid, AuditEvent.company_id.is_(None)))
    if filters["action"]:
        q = q.filter(AuditEvent.action.startswith(filters["action"]))
    if filters["actor_email"]:
        q = q.filter(AuditEvent.actor_user_email.contains(filters["actor_email"].lower()))
    if day_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(day_from, time.min))
    if day_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(day_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.id.desc()).limit(AUDIT_LIMIT).all()
    return render_template("admin/audit/list.html", events=events, date_from=raw_from, date_to=raw_to, **filters)


# ============================================================================
# USERS
# ============================================================================

@bp.get("/users")
@require_permission("users.read")
def users_list():
    s = db_session()
    users = s.query(User).order_by(User.name.asc(), User.email.asc()).all()
    return render_template("admin/users/list.html", users=users)


@bp.get("/users/new")
@require_permission("users.create")
def users_new_get():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    companies = s.query(Company).filter(Company.enabled.is_(True)).order_by(Company.name.asc()).all()
    return render_template("admin/users/new.html", roles=roles, companies=companies, locales=allowed_locales())


@bp.post("/users/new")
@require_permission("users.create")
def users_new_post():
    s = db_session()
    u = _current_user()

    name = (request.form.get("name") or "").strip()
    email = (request.form.get("email") or "").strip().lower()
    locale = (request.form.get("locale") or current_app.config["BABEL_DEFAULT_LOCALE"]).strip()

    errors = []
    if not name:
        errors.append(gettext("Name is required."))
    if not email:
        errors.append(gettext("Email is required."))
    elif not _is_valid_email(email):
        errors.append(gettext("Invalid email format."))
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append(gettext("An account with this email already exists."))
    if locale not in dict(allowed_locales()):
        errors.append(gettext("Unsupported language."))
    errors.extend(
        _password_errors(request.form.get("password") or "", request.form.get("password_confirmation") or "", required=True)
    )

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_new_get"))

    new_user = User(
        name=name,
        email=email,
        locale=locale,
        password_hash=generate_password_hash(request.form["password"]),
        is_active=True,
    )
    s.add(new_user)
    s.flush()
    _apply_associations(s, new_user, u)

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "roles": [r.key for r in new_user.roles]},
    )
    s.commit()
    flash(gettext("Account created for %(email)s.", email=email), "success")
    return redirect(url_for("admin.users_list"))


def _apply_associations(s, user: User, actor: User) -> None:
    """Companies/roles are only touched when the actor may read them."""
    if user_has_permission(actor, "companies.read"):
        ids = [int(x) for x in request.form.getlist("companies") if x.isdigit()]
        user.companies = s.query(Company).filter(Company.id.in_(ids)).all() if ids else []
    if user_has_permission(actor, "roles.read"):
        ids = [int(x) for x in request.form.getlist("roles") if x.isdigit()]
        user.roles = s.query(Role).filter(Role.id.in_(ids)).all() if ids else []


@bp.get("/users/<int:user_id>/edit")
@require_permission("users.read")
def users_edit(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    companies = s.query(Company).order_by(Company.name.asc()).all()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return render_template(
        "admin/users/edit.html",
        user=user,
        companies=companies,
        roles=roles,
        locales=allowed_locales(),
    )


@bp.post("/users/<int:user_id>/edit")
@require_permission("users.update")
def users_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    name = (request.form.get("name") or "").strip()
    email = (request.form.get("email") or "").strip().lower()
    locale = (request.form.get("locale") or user.locale).strip()
    password = request.form.get("password") or ""

    errors = []
    if not name:
        errors.append(gettext("Name is required."))
    if not _is_valid_email(email):
        errors.append(gettext("Invalid email format."))
    elif s.query(User).filter(User.email == email, User.id != user.id).one_or_none():
        errors.append(gettext("An account with this email already exists."))
    if locale not in dict(allowed_locales()):
        errors.append(gettext("Unsupported language."))
    errors.extend(_password_errors(password, request.form.get("password_confirmation") or "", required=False))

    picture = request.files.get("picture")
    if picture and picture.filename and (picture.mimetype or "") not in PICTURE_TYPES:
        errors.append(gettext("Picture must be a PNG, JPEG, GIF or WebP image."))

    enabled = request.form.get("enabled", "1") == "1"
    if user.id == u.id and not enabled:
        errors.append(gettext("You cannot disable your own account."))

    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("admin.users_edit", user_id=user_id))

    before = {
        "name": user.name,
        "email": user.email,
        "locale": user.locale,
        "enabled": user.is_active,
        "companies": sorted(c.id for c in user.companies),
        "roles": sorted(r.key for r in user.roles),
    }

    user.name = name
    user.email = email
    user.locale = locale
    user.is_active = enabled
    if password:
        user.password_hash = generate_password_hash(password)
    _apply_associations(s, user, u)
    if picture and picture.filename:
        previous = user.picture
        user.picture = _store_upload(s, picture, u)
        if previous is not None:
            s.flush()
            _discard_upload(s, previous, u)

    after = {
        "name": user.name,
        "email": user.email,
        "locale": user.locale,
        "enabled": user.is_active,
        "companies": sorted(c.id for c in user.companies),
        "roles": sorted(r.key for r in user.roles),
    }
    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after, "password_changed": bool(password)},
    )
    s.commit()
    flash(gettext("Account updated for %(email)s.", email=user.email), "success")
    return redirect(url_for("admin.users_edit", user_id=user_id))


# ============================================================================
# UPLOADS
# ============================================================================

def _store_upload(s, f, actor: User) -> Upload:
    data = f.read()
    filename = secure_filename(f.filename or "") or "picture.bin"
    key = new_key("pictures", filename)
    storage_from_config(current_app.config).put_bytes(key, data, content_type=f.mimetype)
    upload = Upload(
        filename=filename,
        content_type=(f.mimetype or "application/octet-stream").strip(),
        size_bytes=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        storage_key=key,
        uploaded_by_user_id=actor.id,
    )
    s.add(upload)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="upload.create",
        entity_type="Upload",
        entity_id=str(upload.id),
        metadata={"filename": filename, "size": len(data)},
    )
    return upload


def _discard_upload(s, upload: Upload, actor: User) -> bool:
    """Delete a replaced picture unless another account still shows it."""
    if s.query(User.id).filter(User.picture_id == upload.id).first() is not None:
        return False
    storage_from_config(current_app.config).delete(upload.storage_key)
    record_event(
        s,
        actor=actor,
        action="upload.delete",
        entity_type="Upload",
        entity_id=str(upload.id),
        metadata={"filename": upload.filename, "replaced": True},
    )
    s.delete(upload)
    return True


@bp.get("/uploads/<int:upload_id>/download")
@require_permission("users.read")
def uploads_download(upload_id: int):
    s = db_session()
    upload = s.get(Upload, upload_id)
    if not upload:
        abort(404)
    try:
        fobj = storage_from_config(current_app.config).open(upload.storage_key)
    except FileNotFoundError:
        current_app.logger.warning("Upload %s missing from storage (key=%s)", upload.id, upload.storage_key)
        abort(404)
    return send_file(fobj, mimetype=upload.content_type, as_attachment=True, download_name=upload.basename)


@bp.post("/uploads/<int:upload_id>/delete")
@require_permission("users.update")
def uploads_delete(upload_id: int):
    s = db_session()
    u = _current_user()
    upload = s.get(Upload, upload_id)
    if not upload:
        abort(404)

    for owner in s.query(User).filter(User.picture_id == upload.id).all():
        owner.picture = None
    storage_from_config(current_app.config).delete(upload.storage_key)
    record_event(
        s,
        actor=u,
        action="upload.delete",
        entity_type="Upload",
        entity_id=str(upload.id),
        metadata={"filename": upload.filename},
    )
    s.delete(upload)
    s.commit()

    flash(gettext("%(name)s deleted.", name=upload.basename), "success")
    referrer = request.referrer
    if referrer and referrer.startswith(request.host_url):
        return redirect(referrer)
    return redirect(url_for("admin.users_list"))
