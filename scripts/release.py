"""
Release phase: migrate, seed, and prepare the module folders.

Refuses to touch a sqlite database when ENV=production. Safe to re-run.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def prepare_module_dirs() -> list[Path]:
    from app.backoffice.config import load_settings

    settings = load_settings()
    dirs = [Path(settings.modules_path), Path(settings.modules_tmp_path)]
    if settings.storage_backend == "local":
        dirs.append(Path(settings.uploads_path))
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def run_release() -> None:
    db_url = _database_url()

    print("[release] applying migrations", flush=True)
    migrate(db_url)

    print("[release] seeding permissions, admin role and default company", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)

    for d in prepare_module_dirs():
        print(f"[release] ready: {d}", flush=True)
    print("[release] done", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
