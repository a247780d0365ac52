from __future__ import annotations

import os
from dataclasses import dataclass


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Review Runner"
    api_prefix: str = "/api/v1"
    app_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    database_url: str = ""
    store_backend: str = "inmemory"
    queue_backend: str = "inmemory"
    # Delivery providers.
    delivery_adapter: str = "stub"
    delivery_timeout_seconds: float = 15.0
    sendgrid_api_key: str = ""
    sendgrid_api_base_url: str = "https://api.sendgrid.com"
    email_from_address: str = "notification@review-runner.co.uk"
    email_from_name: str = "Review Runner"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    # Dispatch worker.
    worker_poll_interval_seconds: float = 1.0
    worker_batch_size: int = 10
    worker_max_attempts: int = 3
    worker_retry_base_seconds: float = 5.0
    worker_retry_max_seconds: float = 300.0
    worker_lease_seconds: int = 300
    # Scheduling rules.
    schedule_horizon_days: int = 183
    sms_soft_limit: int = 160
    runtime_secret_guard_mode: str = "warn"

    @property
    def uses_live_delivery(self) -> bool:
        return self.delivery_adapter == "provider"

    def provider_configured(self, channel: str) -> bool:
        normalized = channel.strip().upper()
        if normalized == "EMAIL":
            return bool(self.sendgrid_api_key.strip())
        if normalized == "SMS":
            return bool(
                self.twilio_account_sid.strip()
                and self.twilio_auth_token.strip()
                and self.twilio_from_number.strip()
            )
        return False


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REVIEW_RUNNER_APP_NAME", "Review Runner"),
        api_prefix=os.getenv("REVIEW_RUNNER_API_PREFIX", "/api/v1"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        database_url=os.getenv("DATABASE_URL", ""),
        store_backend=os.getenv("REVIEW_STORE_BACKEND", "inmemory"),
        queue_backend=os.getenv("DISPATCH_QUEUE_BACKEND", "inmemory"),
        delivery_adapter=_normalize_mode(
            os.getenv("DELIVERY_ADAPTER"),
            default="stub",
            allowed={"stub", "provider"},
        ),
        delivery_timeout_seconds=_as_float(os.getenv("DELIVERY_TIMEOUT_SECONDS"), 15.0),
        sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
        sendgrid_api_base_url=os.getenv("SENDGRID_API_BASE_URL", "https://api.sendgrid.com"),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "notification@review-runner.co.uk"),
        email_from_name=os.getenv("EMAIL_FROM_NAME", "Review Runner"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        worker_poll_interval_seconds=_as_float(os.getenv("WORKER_POLL_INTERVAL_SECONDS"), 1.0),
        worker_batch_size=_as_int(os.getenv("WORKER_BATCH_SIZE"), 10),
        worker_max_attempts=_as_int(os.getenv("WORKER_MAX_ATTEMPTS"), 3),
        worker_retry_base_seconds=_as_float(os.getenv("WORKER_RETRY_BASE_SECONDS"), 5.0),
        worker_retry_max_seconds=_as_float(os.getenv("WORKER_RETRY_MAX_SECONDS"), 300.0),
        worker_lease_seconds=_as_int(os.getenv("WORKER_LEASE_SECONDS"), 300),
        schedule_horizon_days=_as_int(os.getenv("SCHEDULE_HORIZON_DAYS"), 183),
        sms_soft_limit=_as_int(os.getenv("SMS_SOFT_LIMIT"), 160),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    persistent = {settings.store_backend.strip().lower(), settings.queue_backend.strip().lower()}
    if "postgres" in persistent and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a postgres store or queue backend is selected")
    if not settings.uses_live_delivery:
        return tuple(issues)
    if _is_placeholder(settings.sendgrid_api_key, defaults={"dev-sendgrid-key", "SG.xxx"}):
        issues.append("SENDGRID_API_KEY is empty or uses a placeholder value")
    if not settings.twilio_account_sid.strip():
        issues.append("TWILIO_ACCOUNT_SID is required when DELIVERY_ADAPTER=provider")
    if _is_placeholder(settings.twilio_auth_token, defaults={"dev-twilio-token"}):
        issues.append("TWILIO_AUTH_TOKEN is empty or uses a placeholder value")
    if not settings.twilio_from_number.strip():
        issues.append("TWILIO_FROM_NUMBER is required when DELIVERY_ADAPTER=provider")
    return tuple(issues)
