"""Environment-driven settings.

Read once at import into the frozen SETTINGS singleton.  Every value is
validated here, so a typo in a deployment manifest fails at startup with
the variable's name instead of surfacing as a lock that never times out.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getenv_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = _getenv(name, default).lower()
    if raw not in choices:
        raise ValueError(f"{name} must be {'|'.join(choices)} (got {raw!r})")
    return raw


def _getenv_float(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero (got {raw!r})")
    return value


def _getenv_int(name: str, default: str, *, minimum: int = 0) -> int:
    raw = _getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {raw!r})")
    return value


def _getenv_optional(name: str) -> str | None:
    return _getenv(name, "") or None


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    # Enrollment consistency knobs
    lock_timeout_seconds: float = 10.0
    lock_lease_seconds: float = 30.0
    idempotency_ttl_hours: int = 24
    statement_timeout_ms: int = 5000
    progress_tolerance: int = 1
    payment_webhook_secret: str | None = None
    jwt_public_key: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    return Settings(  # type: ignore[arg-type]
        app_env=_getenv_choice("APP_ENV", "dev", ("dev", "test", "prod")),
        log_level=_getenv_choice("LOG_LEVEL", "info", ("debug", "info", "warning", "error")),
        log_json=_getenv("LOG_JSON", "false").lower() in ("1", "true", "yes"),
        port=_getenv_int("PORT", "8000", minimum=1),
        database_url=_getenv_optional("DATABASE_URL"),
        redis_url=_getenv_optional("REDIS_URL"),
        lock_timeout_seconds=_getenv_float("LOCK_TIMEOUT_SECONDS", "10"),
        lock_lease_seconds=_getenv_float("LOCK_LEASE_SECONDS", "30"),
        idempotency_ttl_hours=_getenv_int("IDEMPOTENCY_TTL_HOURS", "24", minimum=1),
        statement_timeout_ms=_getenv_int("STATEMENT_TIMEOUT_MS", "5000"),
        progress_tolerance=_getenv_int("PROGRESS_TOLERANCE", "1"),
        payment_webhook_secret=_getenv_optional("PAYMENT_WEBHOOK_SECRET"),
        jwt_public_key=_getenv_optional("JWT_PUBLIC_KEY"),
    )


SETTINGS = load_settings()
