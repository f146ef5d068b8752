from __future__ import annotations

from datetime import datetime
from typing import Protocol

from page_watch.models import CheckLogEntry, CheckResult, Monitor, NotificationRecord, SmsUsage


class StoreError(RuntimeError):
    """Persistence failed; the operation may be retried."""


class WatchStore(Protocol):
    """
    The persistence operations the check pipeline depends on.

    Implementations raise StoreError for any backend failure and never leak
    driver exceptions across this boundary.
    """

    async def create_monitor(self, monitor: Monitor) -> Monitor: ...

    async def get_monitor(self, monitor_id: str, user_id: str) -> Monitor | None: ...

    async def update_monitor_status(self, monitor_id: str, *, status: str, checked_at: datetime) -> None: ...

    async def insert_check_log(self, monitor_id: str, result: CheckResult, *, checked_at: datetime) -> str: ...

    async def list_check_logs(self, monitor_id: str, *, limit: int = 50) -> list[CheckLogEntry]: ...

    async def insert_notification(self, record: NotificationRecord) -> str: ...

    async def list_notifications(self, user_id: str, *, since: datetime | None = None) -> list[NotificationRecord]: ...

    async def update_notification_delivery(
        self, message_id: str, *, status: str, error_message: str | None, updated_at: datetime
    ) -> bool: ...

    async def get_sms_usage(self, user_id: str) -> SmsUsage | None: ...

    async def increment_sms_usage(
        self,
        user_id: str,
        *,
        cost_usd: float,
        hour_start: datetime,
        day_start: datetime,
        month_start: datetime,
        now: datetime,
    ) -> None: ...

    async def list_sms_usage(self) -> list[SmsUsage]: ...

    async def reset_monthly_usage(self, *, month_start: datetime, now: datetime) -> int: ...
