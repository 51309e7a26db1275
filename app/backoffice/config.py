import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    app_version: str
    marketplace_url: str
    marketplace_timeout: int
    modules_path: str
    modules_tmp_path: str
    uploads_path: str

    locales: tuple[str, ...]
    default_locale: str

    csrf_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def load_settings() -> Settings:
    cwd = os.getcwd()
    locales = tuple(x.strip() for x in _getenv("LOCALES", "en_GB,de_DE,es_ES,fr_FR,tr_TR").split(",") if x.strip())
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///backoffice.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        app_version=_getenv("APP_VERSION", "1.0.0"),
        marketplace_url=_getenv("MARKETPLACE_URL", "https://marketplace.example.com/api"),
        marketplace_timeout=_getint("MARKETPLACE_TIMEOUT", 30),
        modules_path=_getenv("MODULES_PATH", os.path.join(cwd, "modules")),
        modules_tmp_path=_getenv("MODULES_TMP_PATH", os.path.join(cwd, "storage", "tmp")),
        uploads_path=_getenv("UPLOADS_PATH", os.path.join(cwd, "storage", "uploads")),
        locales=locales or ("en_GB",),
        default_locale=_getenv("DEFAULT_LOCALE", "en_GB"),
        csrf_enabled=_getenv("CSRF_ENABLED", "1") != "0",
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "UPLOADS_PATH": s.uploads_path,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # apps marketplace
        "APP_VERSION": s.app_version,
        "MARKETPLACE_URL": s.marketplace_url,
        "MARKETPLACE_TIMEOUT": s.marketplace_timeout,
        "MODULES_PATH": s.modules_path,
        "MODULES_TMP_PATH": s.modules_tmp_path,
        # localization (Flask-Babel)
        "LOCALES": list(s.locales),
        "BABEL_DEFAULT_LOCALE": s.default_locale,
        # security defaults
        "CSRF_ENABLED": s.csrf_enabled,
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # picture uploads (5MB)
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
