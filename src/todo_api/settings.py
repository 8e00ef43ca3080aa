from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from dotenv import load_dotenv

_DEV_JWT_SECRET = "dev-only-insecure-secret-change-me"


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - APP_ENV: 'development' (default), 'production' or 'test'
    - PERSISTENCE_BACKEND: 'sqlite' (default) or 'memory'
    - SQLITE_DB_PATH: path to sqlite db file. Default './data/todos.db'
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; only
      honored in production, every origin is allowed otherwise
    - JWT_SECRET: token signing secret (required when APP_ENV=production)
    - JWT_EXPIRES_DAYS: bearer token lifetime in days (default 30)
    - BCRYPT_ROUNDS: bcrypt cost factor (default 12)
    - UPLOAD_DIR: root directory for stored uploads. Default './uploads'
    - MAX_UPLOAD_BYTES: upload size limit (default 5 MB)
    - HOST / PORT: listening address (default 0.0.0.0:5000)
    - LOG_LEVEL: root log level (default INFO)
    - LOG_FILE: optional path of a log file
    """

    app_env: str
    persistence_backend: str
    sqlite_db_path: str
    cors_allow_origins: List[str]
    jwt_secret: str
    jwt_expires_days: int
    bcrypt_rounds: int
    upload_dir: str
    max_upload_bytes: int
    host: str
    port: int
    log_level: str
    log_file: Optional[str]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def _get_env(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_int(value: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if parsed < minimum:
        return default
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Return application settings.

    When ``environ`` is omitted the process environment is used, after loading
    a local ``.env`` file (existing variables win). Passing a mapping builds
    settings from that mapping only, which is what tests do.

    Raises:
        ValueError: APP_ENV is 'production' and JWT_SECRET is not set.
    """
    if environ is None:
        load_dotenv(override=False)
        environ = os.environ

    app_env = _get_env(environ, "APP_ENV", "development").strip().lower()
    if app_env not in {"development", "production", "test"}:
        app_env = "development"

    backend = _get_env(environ, "PERSISTENCE_BACKEND", "sqlite").strip().lower()
    if backend not in {"memory", "sqlite"}:
        backend = "sqlite"

    jwt_secret = _get_env(environ, "JWT_SECRET", "").strip()
    if not jwt_secret:
        if app_env == "production":
            raise ValueError("JWT_SECRET must be set when APP_ENV=production")
        jwt_secret = _DEV_JWT_SECRET

    log_file = _get_env(environ, "LOG_FILE", "").strip() or None

    return Settings(
        app_env=app_env,
        persistence_backend=backend,
        sqlite_db_path=_get_env(environ, "SQLITE_DB_PATH", "./data/todos.db").strip(),
        cors_allow_origins=_parse_origins(_get_env(environ, "CORS_ALLOW_ORIGINS", "*")),
        jwt_secret=jwt_secret,
        jwt_expires_days=_parse_int(_get_env(environ, "JWT_EXPIRES_DAYS", "30"), 30),
        bcrypt_rounds=_parse_int(_get_env(environ, "BCRYPT_ROUNDS", "12"), 12, minimum=4, maximum=31),
        upload_dir=_get_env(environ, "UPLOAD_DIR", "./uploads").strip(),
        max_upload_bytes=_parse_int(_get_env(environ, "MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)), 5 * 1024 * 1024),
        host=_get_env(environ, "HOST", "0.0.0.0").strip(),
        port=_parse_int(_get_env(environ, "PORT", "5000"), 5000, maximum=65535),
        log_level=_get_env(environ, "LOG_LEVEL", "INFO").strip().upper(),
        log_file=log_file,
    )
