from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_PRESET_QUESTIONS: tuple[str, ...] = (
    "Is this session still available?",
    "What should I bring to the session?",
    "Is this suitable for beginners?",
    "Where exactly does the session take place?",
    "Can I reschedule if something comes up?",
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_separated_tuple(value: str | None, *, separator: str, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(separator)]
    return tuple(item for item in items if item)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Booking Chat"
    api_prefix: str = "/api/v1"
    thread_store_backend: str = "inmemory"
    database_url: str = ""
    history_limit: int = 500
    preview_length: int = 120
    # Mirrors the restricted-mode whitelist on the write path for untrusted clients.
    gate_server_enforcement: bool = True
    preset_questions: tuple[str, ...] = DEFAULT_PRESET_QUESTIONS
    feed_resubscribe_initial_delay_seconds: float = 0.5
    feed_resubscribe_max_delay_seconds: float = 10.0
    feed_resubscribe_max_attempts: int = 5
    runtime_config_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("BOOKING_CHAT_APP_NAME", "Booking Chat"),
        api_prefix=os.getenv("BOOKING_CHAT_API_PREFIX", "/api/v1"),
        thread_store_backend=_normalize_mode(
            os.getenv("THREAD_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        history_limit=_as_int(os.getenv("HISTORY_LIMIT"), 500),
        preview_length=_as_int(os.getenv("PREVIEW_LENGTH"), 120),
        gate_server_enforcement=_as_bool(os.getenv("GATE_SERVER_ENFORCEMENT"), True),
        preset_questions=_as_separated_tuple(
            os.getenv("PRESET_QUESTIONS"),
            separator="|",
            default=DEFAULT_PRESET_QUESTIONS,
        ),
        feed_resubscribe_initial_delay_seconds=_as_float(
            os.getenv("FEED_RESUBSCRIBE_INITIAL_DELAY_SECONDS"), 0.5
        ),
        feed_resubscribe_max_delay_seconds=_as_float(os.getenv("FEED_RESUBSCRIBE_MAX_DELAY_SECONDS"), 10.0),
        feed_resubscribe_max_attempts=_as_int(os.getenv("FEED_RESUBSCRIBE_MAX_ATTEMPTS"), 5),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.thread_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when THREAD_STORE_BACKEND=postgres")
    if not settings.preset_questions:
        issues.append("PRESET_QUESTIONS resolved to an empty catalog; restricted threads cannot send anything")
    if len(set(settings.preset_questions)) != len(settings.preset_questions):
        issues.append("PRESET_QUESTIONS contains duplicate entries")
    if settings.history_limit <= 0:
        issues.append("HISTORY_LIMIT must be a positive integer")
    if settings.preview_length < 4:
        issues.append("PREVIEW_LENGTH must be at least 4 characters")
    if settings.feed_resubscribe_initial_delay_seconds > settings.feed_resubscribe_max_delay_seconds:
        issues.append(
            "FEED_RESUBSCRIBE_INITIAL_DELAY_SECONDS cannot exceed FEED_RESUBSCRIBE_MAX_DELAY_SECONDS"
        )
    return tuple(issues)
