import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, current_app, flash, g, has_request_context, redirect, render_template, request, url_for
from flask_babel import Babel, gettext

from app.backoffice.config import load_config
from app.backoffice.db import init_db, teardown_db_session
from app.backoffice.security import init_csrf
from app.backoffice.routes import bp as routes_bp
from app.backoffice.auth import bp as auth_bp, load_current_user
from app.backoffice.admin import bp as admin_bp
from app.backoffice.modules.apps.admin import bp as apps_bp
from app.backoffice.modules.apps.commands import apps_cli

logger = logging.getLogger(__name__)


def _select_locale() -> str | None:
    """The signed-in user's language, else the browser's best allowed match."""
    allowed = current_app.config.get("LOCALES") or []
    user = g.get("current_user")
    if user is not None and user.locale in allowed:
        return user.locale
    if has_request_context():
        return request.accept_languages.best_match(allowed)
    return None


def _check_production(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    db_url = str(app.config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _log_config_problems(app: Flask) -> None:
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing))
    if not str(app.config.get("MARKETPLACE_URL") or "").startswith(("http://", "https://")):
        app.logger.error("MARKETPLACE_URL must be an http(s) URL; apps marketplace calls will fail.")


def _register_template_helpers(app: Flask) -> None:
    from app.backoffice.audit import current_company_id
    from app.backoffice.rbac import user_has_permission

    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            return user_has_permission(g.get("current_user"), key)

        return {"has_perm": has_perm, "current_company_id": current_company_id()}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        return value.strftime(format) if hasattr(value, "strftime") else str(value)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(400)
    def _err_400(e):
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):
        missing = g.get("missing_permission")
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, g.get("request_id"))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):
        flash(gettext("File too large."), "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer)
        return redirect(url_for("admin.index"))

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", g.get("request_id"))
        return render_template("errors/500.html"), 500


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production(app)

    Babel(app, locale_selector=_select_locale)
    init_csrf(app, exempt=("auth.login_post",))
    _register_template_helpers(app)

    init_db(app)
    if hasattr(os, "register_at_fork"):
        # gunicorn forks workers; never share pooled connections across processes
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is not None:
                engine.dispose()

        os.register_at_fork(after_in_child=_after_fork_child)

    _log_config_problems(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(apps_bp, url_prefix="/apps")
    app.cli.add_command(apps_cli)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)
    _register_error_handlers(app)

    logger.info("create_app() complete (env=%s)", app.config.get("ENV"))
    return app
