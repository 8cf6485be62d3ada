import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    token_max_age_seconds: int
    log_level: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///crm.db"),
        token_max_age_seconds=_getenv_int("TOKEN_MAX_AGE_SECONDS", 8 * 60 * 60),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "TOKEN_MAX_AGE_SECONDS": s.token_max_age_seconds,
        "LOG_LEVEL": s.log_level,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # JSON bodies only; nothing here uploads files
        "MAX_CONTENT_LENGTH": 1024 * 1024,
    }
