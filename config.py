"""
Environment-driven settings for the messenger service
"""
import logging
import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = "sqlite:///./messenger.db"
SEVEN_DAYS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    archive_messages: bool = True
    pending_ttl_seconds: int = SEVEN_DAYS
    retention_sweep_interval_seconds: int = 3600
    login_max_failures: int = 5
    login_lockout_seconds: int = 60
    max_image_bytes: int = 10_000_000
    push_preview_chars: int = 40
    messages_per_minute: int = 30
    log_level: str = "INFO"
    port: int = 8000


def normalize_database_url(url: str) -> str:
    # Render and Heroku hand out postgres:// which SQLAlchemy no longer accepts
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_settings() -> Settings:
    """Build Settings from the process environment, validating every value."""
    return Settings(
        database_url=normalize_database_url(
            os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
        ),
        archive_messages=_bool_env("ARCHIVE_MESSAGES", True),
        pending_ttl_seconds=_int_env("PENDING_TTL_SECONDS", SEVEN_DAYS, minimum=1),
        retention_sweep_interval_seconds=_int_env(
            "RETENTION_SWEEP_INTERVAL_SECONDS", 3600, minimum=1
        ),
        login_max_failures=_int_env("LOGIN_MAX_FAILURES", 5, minimum=1),
        login_lockout_seconds=_int_env("LOGIN_LOCKOUT_SECONDS", 60, minimum=1),
        max_image_bytes=_int_env("MAX_IMAGE_BYTES", 10_000_000, minimum=1),
        push_preview_chars=_int_env("PUSH_PREVIEW_CHARS", 40, minimum=1),
        messages_per_minute=_int_env("MESSAGES_PER_MINUTE", 30, minimum=1),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        port=_int_env("PORT", 8000, minimum=1),
    )


def configure_logging(level: str = "INFO") -> None:
    # No-op when the host (uvicorn, pytest) already installed handlers
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
