from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "E-Sign Reminder Service"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    reminder_sweep_max_workers: int = 4
    reminder_sweep_batch_size: int = 100
    reminder_send_timeout_seconds: float = 30.0
    reminder_retry_lookback_hours: int = 24
    reminder_claim_timeout_minutes: int = 15
    reminder_max_attempts: int = 3
    reminder_cleanup_default_days: int = 90
    # Delivery transports. "stub" never leaves the process.
    email_sender_type: str = "stub"
    email_enabled: bool = False
    email_api_base_url: str = ""
    email_api_key: str = ""
    messaging_sender_type: str = "stub"
    messaging_enabled: bool = False
    messaging_api_base_url: str = ""
    messaging_api_key: str = ""
    transport_timeout_seconds: int = 20
    runtime_secret_guard_mode: str = "warn"

    @property
    def uses_database(self) -> bool:
        return self.reminder_store_backend.strip().lower() == "postgres"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SIGNATURE_APP_NAME", "E-Sign Reminder Service"),
        api_prefix=os.getenv("SIGNATURE_API_PREFIX", "/api/v1"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        reminder_sweep_max_workers=_as_int(os.getenv("REMINDER_SWEEP_MAX_WORKERS"), 4),
        reminder_sweep_batch_size=_as_int(os.getenv("REMINDER_SWEEP_BATCH_SIZE"), 100),
        reminder_send_timeout_seconds=_as_float(os.getenv("REMINDER_SEND_TIMEOUT_SECONDS"), 30.0),
        reminder_retry_lookback_hours=_as_int(os.getenv("REMINDER_RETRY_LOOKBACK_HOURS"), 24),
        reminder_claim_timeout_minutes=_as_int(os.getenv("REMINDER_CLAIM_TIMEOUT_MINUTES"), 15),
        reminder_max_attempts=_as_int(os.getenv("REMINDER_MAX_ATTEMPTS"), 3),
        reminder_cleanup_default_days=_as_int(os.getenv("REMINDER_CLEANUP_DEFAULT_DAYS"), 90),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), False),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        messaging_sender_type=_normalize_mode(
            os.getenv("MESSAGING_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        messaging_enabled=_as_bool(os.getenv("MESSAGING_ENABLED"), False),
        messaging_api_base_url=os.getenv("MESSAGING_API_BASE_URL", ""),
        messaging_api_key=os.getenv("MESSAGING_API_KEY", ""),
        transport_timeout_seconds=_as_int(os.getenv("TRANSPORT_TIMEOUT_SECONDS"), 20),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.email_sender_type == "http":
        if not settings.email_api_base_url.strip():
            issues.append("EMAIL_API_BASE_URL is required when EMAIL_SENDER_TYPE=http")
        if not settings.email_api_key.strip():
            issues.append("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http")
    if settings.messaging_sender_type == "http":
        if not settings.messaging_api_base_url.strip():
            issues.append("MESSAGING_API_BASE_URL is required when MESSAGING_SENDER_TYPE=http")
        if not settings.messaging_api_key.strip():
            issues.append("MESSAGING_API_KEY is required when MESSAGING_SENDER_TYPE=http")
    if settings.reminder_send_timeout_seconds < settings.transport_timeout_seconds:
        issues.append(
            "REMINDER_SEND_TIMEOUT_SECONDS is shorter than TRANSPORT_TIMEOUT_SECONDS; "
            "sends will be abandoned before the provider call gives up"
        )
    return tuple(issues)
