from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from typing import Any

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for
from flask_babel import gettext
from sqlalchemy.exc import SQLAlchemyError

from app.backoffice.audit import current_company_id, record_event
from app.backoffice.db import db_session
from app.backoffice.models import get_setting, set_setting
from app.backoffice.modules.apps.client import MarketplaceError, client_from_config
from app.backoffice.modules.apps.commands import run_install_command
from app.backoffice.modules.apps.models import Module, ModuleHistory
from app.backoffice.modules.apps.service import (
    AppsError,
    disable_module,
    download_module,
    enable_module,
    install_module,
    paths_from_config,
    short_version,
    uninstall_module,
    unzip_module,
    update_module,
)
from app.backoffice.rbac import require_permission

bp = Blueprint("apps", __name__)

API_TOKEN_KEY = "general.api_token"


def _company_id() -> int:
    cid = current_company_id()
    if cid is None:
        abort(400, description="No active company.")
    return cid


def _api_token() -> str | None:
    return get_setting(db_session(), current_company_id(), API_TOKEN_KEY)


def _client():
    return client_from_config(current_app.config, api_token=_api_token())


def _paths():
    return paths_from_config(current_app.config)


def _failure(message: str, status: int = 400):
    return jsonify({"success": False, "error": True, "message": message, "data": {}}), status


def _payload() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        return body
    return request.values.to_dict()


def require_api_token(*, json: bool = False) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Marketplace calls need the company's API token; send the user to the token form otherwise."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            if _api_token():
                return fn(*args, **kwargs)
            message = gettext("Please enter your marketplace API token first.")
            if json:
                return _failure(message)
            flash(message, "warning")
            return redirect(url_for("apps.token_form"))

        return wrapped

    return decorator


@bp.errorhandler(AppsError)
@bp.errorhandler(MarketplaceError)
def _pipeline_error(e: Exception):
    current_app.logger.warning("Apps action failed (endpoint=%s request_id=%s): %s", request.endpoint, getattr(g, "request_id", None), e)
    flash(str(e), "danger")
    alias = (request.view_args or {}).get("alias")
    if alias and request.endpoint != "apps.show":
        return redirect(url_for("apps.show", alias=alias))
    return redirect(url_for("apps.index"))


def _active_module(alias: str) -> Module | None:
    s = db_session()
    return (
        s.query(Module)
        .filter(Module.company_id == _company_id(), Module.alias == alias, Module.deleted_at.is_(None))
        .one_or_none()
    )


def _used_elsewhere(alias: str, company_id: int) -> bool:
    """Module files are shared; another company may still have ``alias`` installed."""
    s = db_session()
    return (
        s.query(Module.id)
        .filter(Module.alias == alias, Module.company_id != company_id, Module.deleted_at.is_(None))
        .first()
        is not None
    )


def _download_path(path: str, version: str) -> str:
    app_version = short_version(current_app.config.get("APP_VERSION") or "")
    return "/".join([path, version, app_version, _api_token() or ""])


def _record_history(module: Module, data: dict[str, Any], description: str, action: str) -> ModuleHistory:
    s = db_session()
    history = ModuleHistory(
        company_id=module.company_id,
        module_id=module.id,
        category=data.get("category"),
        version=data.get("version"),
        description=description,
    )
    s.add(history)
    record_event(
        s,
        actor=getattr(g, "current_user", None),
        action=action,
        entity_type="Module",
        entity_id=str(module.id),
        metadata={"alias": module.alias, "version": data.get("version")},
    )
    return history


# ---------- Token ----------
@bp.get("/token")
@require_permission("apps.view")
def token_form():
    return render_template("apps/token.html", has_token=bool(_api_token()))


@bp.post("/token")
@require_permission("apps.install")
def token_save():
    s = db_session()
    token = (request.form.get("api_token") or "").strip()
    if not token:
        flash(gettext("API token is required."), "danger")
        return redirect(url_for("apps.token_form"))

    client = client_from_config(current_app.config, api_token=token)
    if not client.check_token():
        flash(gettext("The marketplace rejected this API token."), "danger")
        return redirect(url_for("apps.token_form"))

    set_setting(s, _company_id(), API_TOKEN_KEY, token)
    record_event(s, actor=g.current_user, action="apps.token_update", entity_type="Setting", entity_id=API_TOKEN_KEY)
    s.commit()
    flash(gettext("API token saved."), "success")
    return redirect(url_for("apps.index"))


# ---------- Browse ----------
@bp.get("/")
@require_permission("apps.view")
@require_api_token()
def index():
    s = db_session()
    installed = (
        s.query(Module)
        .filter(Module.company_id == _company_id(), Module.deleted_at.is_(None))
        .order_by(Module.alias.asc())
        .all()
    )
    try:
        catalogue = _client().list_modules()
    except MarketplaceError as e:
        current_app.logger.warning("Marketplace catalogue unavailable: %s", e)
        flash(gettext("The marketplace is not reachable right now."), "warning")
        catalogue = []
    return render_template("apps/index.html", installed=installed, catalogue=catalogue)


@bp.get("/<alias>")
@require_permission("apps.view")
@require_api_token()
def show(alias: str):
    enable = False
    installed = False

    module = _client().get_module(alias)
    if not module:
        return render_template("apps/not_found.html", alias=alias), 404

    check = _active_module(alias)
    if check:
        installed = True
        if check.status:
            enable = True

    return render_template("apps/show.html", module=module, alias=alias, installed=installed, enable=enable)


# ---------- Install steps (AJAX) ----------
@bp.route("/steps", methods=["GET", "POST"])
@require_permission("apps.view")
@require_api_token(json=True)
def steps():
    payload = _payload()
    name = payload.get("name") or ""

    json_: dict[str, list[dict[str, str]]] = {"step": []}
    json_["step"].append({"text": gettext("Downloading %(module)s", module=name), "url": url_for("apps.download")})
    json_["step"].append({"text": gettext("Extracting %(module)s files", module=name), "url": url_for("apps.unzip")})
    json_["step"].append({"text": gettext("Installing %(module)s files", module=name), "url": url_for("apps.install")})
    return jsonify(json_)


@bp.post("/download")
@require_permission("apps.view")
@require_api_token(json=True)
def download():
    payload = _payload()
    path = (payload.get("path") or "").strip("/")
    version = (payload.get("version") or "").strip()
    if not path or not version:
        return _failure(gettext("Path and version are required."))

    return jsonify(download_module(_client(), _paths(), _download_path(path, version)))


@bp.post("/unzip")
@require_permission("apps.view")
@require_api_token(json=True)
def unzip():
    return jsonify(unzip_module(_paths(), _payload().get("path") or ""))


@bp.post("/install")
@require_permission("apps.install")
@require_api_token(json=True)
def install():
    s = db_session()
    paths = _paths()
    result = install_module(paths, _payload().get("path") or "")

    if result["success"]:
        data = result["data"]
        company_id = _company_id()
        try:
            run_install_command(s, paths, data["alias"], company_id)
            s.commit()
        except (AppsError, SQLAlchemyError) as e:
            s.rollback()
            current_app.logger.error("Install command failed for %s: %s", data.get("alias"), e)
            if not _used_elsewhere(data["alias"], company_id):
                shutil.rmtree(data["path"], ignore_errors=True)
            return jsonify({"success": False, "error": True, "message": str(e), "data": data}), 500

        flash(gettext("%(module)s installed!", module=data.get("name")), "success")

    return jsonify(result)


# ---------- Lifecycle ----------
def _require_module(alias: str) -> Module:
    module = _active_module(alias)
    if module is None:
        abort(404)
    return module


@bp.post("/<alias>/uninstall")
@require_permission("apps.uninstall")
@require_api_token()
def uninstall(alias: str):
    s = db_session()
    module = _require_module(alias)

    json_ = uninstall_module(_paths(), alias, remove_files=not _used_elsewhere(alias, module.company_id))
    name = json_["data"].get("name") or alias
    message = gettext("%(module)s uninstalled!", module=name)

    # history first: it must reference a live module row
    _record_history(module, json_["data"], message, "apps.uninstall")
    s.flush()
    module.deleted_at = datetime.utcnow()
    module.status = False
    s.commit()

    flash(message, "success")
    return redirect(url_for("apps.show", alias=alias))


@bp.post("/<alias>/update")
@require_permission("apps.update")
@require_api_token()
def update(alias: str):
    s = db_session()
    module = _require_module(alias)

    json_ = update_module(
        _paths(),
        alias,
        _client(),
        app_version=short_version(current_app.config.get("APP_VERSION") or ""),
        api_token=_api_token() or "",
    )
    message = gettext("%(module)s updated!", module=json_["data"].get("name") or alias)

    module.updated_at = datetime.utcnow()
    _record_history(module, json_["data"], message, "apps.update")
    s.commit()

    flash(message, "success")
    return redirect(url_for("apps.show", alias=alias))


@bp.post("/<alias>/enable")
@require_permission("apps.update")
@require_api_token()
def enable(alias: str):
    s = db_session()
    module = _require_module(alias)

    json_ = enable_module(_paths(), alias)
    message = gettext("%(module)s enabled!", module=json_["data"].get("name") or alias)

    module.status = True
    module.updated_at = datetime.utcnow()
    _record_history(module, json_["data"], message, "apps.enable")
    s.commit()

    flash(message, "success")
    return redirect(url_for("apps.show", alias=alias))


@bp.post("/<alias>/disable")
@require_permission("apps.update")
@require_api_token()
def disable(alias: str):
    s = db_session()
    module = _require_module(alias)

    json_ = disable_module(_paths(), alias)
    message = gettext("%(module)s disabled!", module=json_["data"].get("name") or alias)

    module.status = False
    module.updated_at = datetime.utcnow()
    _record_history(module, json_["data"], message, "apps.disable")
    s.commit()

    flash(message, "success")
    return redirect(url_for("apps.show", alias=alias))
