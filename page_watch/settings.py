from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml


ENVIRONMENTS = ("development", "production")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_float_csv(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    out: list[float] = []
    for part in str(raw).split(","):
        item = part.strip()
        if not item:
            continue
        try:
            out.append(float(item))
        except ValueError:
            return tuple(default)
    return tuple(out) if out else tuple(default)


def _environment_default() -> str:
    env = _env_str("PAGE_WATCH_ENV", "development").lower()
    return env if env in ENVIRONMENTS else "development"


@dataclass(frozen=True)
class WatchSettings:
    db_path: str = field(default_factory=lambda: _env_str("PAGE_WATCH_DB_PATH", "/data/page-watch.db"))
    environment: str = field(default_factory=_environment_default)
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO"))
    # Calendar rollovers for SMS usage (top of hour, local midnight, first of month) use this zone.
    timezone: str = field(default_factory=lambda: _env_str("PAGE_WATCH_TIMEZONE", "UTC"))

    # Page fetch
    fetch_timeout_seconds: float = field(default_factory=lambda: _env_float("PAGE_WATCH_FETCH_TIMEOUT_SECONDS", 30.0))
    user_agent: str = field(
        default_factory=lambda: _env_str("PAGE_WATCH_USER_AGENT", "PageWatch-Bot/1.0 (Website Monitor)")
    )

    # SMS limits (per user)
    max_sms_per_user_per_hour: int = field(default_factory=lambda: _env_int("PAGE_WATCH_MAX_SMS_PER_HOUR", 10))
    max_sms_per_user_per_day: int = field(default_factory=lambda: _env_int("PAGE_WATCH_MAX_SMS_PER_DAY", 50))
    max_monthly_cost_usd: float = field(default_factory=lambda: _env_float("PAGE_WATCH_MAX_MONTHLY_COST_USD", 10.0))
    cost_per_sms_usd: float = field(default_factory=lambda: _env_float("PAGE_WATCH_COST_PER_SMS_USD", 0.0075))
    cost_warning_percent: float = field(default_factory=lambda: _env_float("PAGE_WATCH_COST_WARNING_PERCENT", 75.0))
    cost_critical_percent: float = field(default_factory=lambda: _env_float("PAGE_WATCH_COST_CRITICAL_PERCENT", 90.0))
    # One delay per retry; attempts = len(delays) (the last delay is never slept).
    sms_retry_delays_seconds: tuple[float, ...] = field(
        default_factory=lambda: _env_float_csv("PAGE_WATCH_SMS_RETRY_DELAYS", (1.0, 4.0, 16.0))
    )

    # SMS provider (Twilio)
    twilio_account_sid: str = field(default_factory=lambda: os.getenv("TWILIO_ACCOUNT_SID", "").strip())
    twilio_auth_token: str = field(default_factory=lambda: os.getenv("TWILIO_AUTH_TOKEN", "").strip())
    twilio_phone_number: str = field(default_factory=lambda: os.getenv("TWILIO_PHONE_NUMBER", "").strip())
    twilio_webhook_url: str = field(default_factory=lambda: os.getenv("TWILIO_WEBHOOK_URL", "").strip())

    # Email provider (Resend)
    resend_api_key: str = field(default_factory=lambda: os.getenv("RESEND_API_KEY", "").strip())
    email_from: str = field(
        default_factory=lambda: _env_str("PAGE_WATCH_EMAIL_FROM", "notifications@pagewatch.local")
    )

    # Used to build the dashboard link in notification emails.
    frontend_url: str = field(default_factory=lambda: _env_str("FRONTEND_URL", "http://localhost:3000"))

    # Scheduler token guards the check trigger; admin token guards cost endpoints.
    scheduler_token: str = field(default_factory=lambda: os.getenv("PAGE_WATCH_SCHEDULER_TOKEN", "").strip())
    admin_token: str = field(default_factory=lambda: os.getenv("PAGE_WATCH_ADMIN_TOKEN", "").strip())

    host: str = field(default_factory=lambda: _env_str("PAGE_WATCH_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PAGE_WATCH_PORT", 8120))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def sms_retry_attempts(self) -> int:
        return max(1, len(self.sms_retry_delays_seconds))


def load_settings(path: Path | None = None) -> WatchSettings:
    """
    Environment defaults, optionally overlaid with a YAML mapping of field names.
    """
    settings = WatchSettings()
    if path is None:
        return settings

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")

    known = {f.name for f in fields(WatchSettings)}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")

    overrides: dict[str, Any] = dict(data)
    if "sms_retry_delays_seconds" in overrides:
        overrides["sms_retry_delays_seconds"] = tuple(float(x) for x in overrides["sms_retry_delays_seconds"])
    env = str(overrides.get("environment", settings.environment)).strip().lower()
    if env not in ENVIRONMENTS:
        raise ValueError(f"environment must be one of: {', '.join(ENVIRONMENTS)}")
    overrides["environment"] = env
    return replace(settings, **overrides)
