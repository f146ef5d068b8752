from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any


PATTERN_TYPES = ("contains", "not_contains", "regex")

STATUS_PENDING = "pending"
STATUS_FOUND = "found"
STATUS_NOT_FOUND = "not_found"
STATUS_ERROR = "error"
MONITOR_STATUSES = (STATUS_PENDING, STATUS_FOUND, STATUS_NOT_FOUND, STATUS_ERROR)
CHECK_STATUSES = (STATUS_FOUND, STATUS_NOT_FOUND, STATUS_ERROR)

NOTIFY_PATTERN_FOUND = "pattern_found"
NOTIFY_PATTERN_LOST = "pattern_lost"
NOTIFY_ERROR = "error"
NOTIFICATION_TYPES = (NOTIFY_PATTERN_FOUND, NOTIFY_PATTERN_LOST, NOTIFY_ERROR)

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_TYPES = (CHANNEL_EMAIL, CHANNEL_SMS)

RECORD_SENT = "sent"
RECORD_FAILED = "failed"
RECORD_DELIVERED = "delivered"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationChannel:
    type: str
    address: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "address": self.address}


@dataclass(frozen=True)
class Monitor:
    id: str
    user_id: str
    name: str
    url: str
    pattern: str
    pattern_type: str = "contains"
    check_interval: int = 300
    is_active: bool = True
    last_status: str = STATUS_PENDING
    last_checked: datetime | None = None
    notification_channels: tuple[NotificationChannel, ...] = ()

    def with_status(self, status: str, checked_at: datetime) -> "Monitor":
        return replace(self, last_status=status, last_checked=checked_at)


@dataclass(frozen=True)
class CheckResult:
    status: str
    response_time_ms: int
    content_snippet: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class NotificationEvent:
    monitor: Monitor
    type: str
    initial: bool = False
    content_snippet: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class NotificationRecord:
    monitor_id: str
    user_id: str
    type: str
    channel: str
    message: str
    status: str
    error_message: str | None = None
    message_id: str | None = None
    created_at: datetime | None = None
    id: str | None = None


@dataclass(frozen=True)
class SmsUsage:
    user_id: str
    hourly_count: int
    daily_count: int
    monthly_count: int
    monthly_cost_usd: float
    last_reset_hour: datetime
    last_reset_day: datetime
    last_reset_month: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "hourly_count": self.hourly_count,
            "daily_count": self.daily_count,
            "monthly_count": self.monthly_count,
            "monthly_cost_usd": self.monthly_cost_usd,
            "last_reset_hour": self.last_reset_hour.isoformat(),
            "last_reset_day": self.last_reset_day.isoformat(),
            "last_reset_month": self.last_reset_month.isoformat(),
        }


@dataclass(frozen=True)
class CheckLogEntry:
    monitor_id: str
    status: str
    response_time_ms: int | None
    content_snippet: str | None
    error_message: str | None
    checked_at: datetime
    id: str | None = None


@dataclass
class NotificationStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    by_channel: dict[str, int] = field(default_factory=dict)
