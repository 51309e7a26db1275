#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then hand the process over to gunicorn.

Usage:
    python scripts/start.py

Env: PORT (default 8080), WEB_CONCURRENCY (default 2), GUNICORN_TIMEOUT (default 120).
The install step downloads and unpacks archives inside the request, hence the long timeout.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, low: int = 1, high: int = 65535) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if not low <= value <= high:
        print(f"ERROR: {name}={raw!r} must be an integer between {low} and {high}.", flush=True)
        sys.exit(1)
    return value


def gunicorn_argv() -> list[str]:
    port = _int_env("PORT", 8080)
    workers = _int_env("WEB_CONCURRENCY", 2, high=64)
    timeout = _int_env("GUNICORN_TIMEOUT", 120, high=3600)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    argv = gunicorn_argv()

    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print("Starting: " + " ".join(argv), flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
