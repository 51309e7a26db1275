from flask import Blueprint, current_app, g, jsonify, redirect, render_template, url_for
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.backoffice.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    # signed-in users land on their company dashboard
    if g.get("current_user") is not None:
        return redirect(url_for("admin.index"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Readiness: the app is up and the database answers."""
    try:
        db_session().execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        current_app.logger.error("Health check: database unavailable: %s", e)
        return jsonify({"ok": False, "database": "unavailable"}), 503
    return jsonify({"ok": True, "database": "ok", "version": current_app.config.get("APP_VERSION")})


@bp.get("/healthz")
def healthz():
    """Liveness only; never touches the database."""
    return "ok", 200
