from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUTHY = ("1", "true", "yes", "on")


def _getenv(name: str, default: str) -> str:
    # Centralize env access so casting and validation live in one place
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None

    # Progress engine thresholds (percent, except the retry count).
    progress_tolerance: int = 5
    video_completion_threshold: int = 80
    certification_threshold: int = 80
    write_retry_attempts: int = 3

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
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    video_threshold = _getenv_int("VIDEO_COMPLETION_THRESHOLD", 80)
    certification_threshold = _getenv_int("CERTIFICATION_THRESHOLD", 80)
    for name, value in (
        ("VIDEO_COMPLETION_THRESHOLD", video_threshold),
        ("CERTIFICATION_THRESHOLD", certification_threshold),
    ):
        if value > 100:
            raise ValueError(f"{name} must be a percentage 0-100 (got {value})")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv("LOG_JSON", "false").lower() in _TRUTHY,
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        progress_tolerance=_getenv_int("PROGRESS_TOLERANCE", 5),
        video_completion_threshold=video_threshold,
        certification_threshold=certification_threshold,
        write_retry_attempts=_getenv_int("WRITE_RETRY_ATTEMPTS", 3, minimum=1),
    )


# Module-level singleton so imports are cheap
SETTINGS = load_settings()
