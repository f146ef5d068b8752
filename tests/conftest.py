from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import pytest

from page_watch.models import (
    CheckLogEntry,
    CheckResult,
    Monitor,
    NotificationChannel,
    NotificationRecord,
    SmsUsage,
)
from page_watch.settings import WatchSettings
from page_watch.sms import SmsDeliveryStatus, SmsProviderError, SmsReceipt
from page_watch.store import StoreError


class MemoryStore:
    """In-process WatchStore with the same semantics as SqliteStore."""

    def __init__(self) -> None:
        self.monitors: dict[str, Monitor] = {}
        self.check_logs: list[CheckLogEntry] = []
        self.notifications: list[NotificationRecord] = []
        self.usage: dict[str, SmsUsage] = {}
        self.fail_notification_inserts = False
        self.fail_check_log = False
        self.fail_usage_reads = False

    async def create_monitor(self, monitor: Monitor) -> Monitor:
        monitor_id = monitor.id or str(uuid.uuid4())
        created = replace(monitor, id=monitor_id)
        self.monitors[monitor_id] = created
        return created

    async def get_monitor(self, monitor_id: str, user_id: str) -> Monitor | None:
        m = self.monitors.get(monitor_id)
        if m is None or m.user_id != user_id:
            return None
        return m

    async def update_monitor_status(self, monitor_id: str, *, status: str, checked_at: datetime) -> None:
        m = self.monitors.get(monitor_id)
        if m is not None:
            self.monitors[monitor_id] = m.with_status(status, checked_at)

    async def insert_check_log(self, monitor_id: str, result: CheckResult, *, checked_at: datetime) -> str:
        if self.fail_check_log:
            raise StoreError("database unavailable")
        entry = CheckLogEntry(
            id=str(uuid.uuid4()),
            monitor_id=monitor_id,
            status=result.status,
            response_time_ms=result.response_time_ms,
            content_snippet=result.content_snippet,
            error_message=result.error_message,
            checked_at=checked_at,
        )
        self.check_logs.append(entry)
        return str(entry.id)

    async def list_check_logs(self, monitor_id: str, *, limit: int = 50) -> list[CheckLogEntry]:
        rows = [e for e in self.check_logs if e.monitor_id == monitor_id]
        return list(reversed(rows))[:limit]

    async def insert_notification(self, record: NotificationRecord) -> str:
        if self.fail_notification_inserts:
            raise StoreError("notifications table unavailable")
        stored = replace(record, id=record.id or str(uuid.uuid4()))
        self.notifications.append(stored)
        return str(stored.id)

    async def list_notifications(self, user_id: str, *, since: datetime | None = None) -> list[NotificationRecord]:
        rows = [
            r
            for r in self.notifications
            if r.user_id == user_id and (since is None or (r.created_at is not None and r.created_at >= since))
        ]
        return list(reversed(rows))

    async def update_notification_delivery(
        self, message_id: str, *, status: str, error_message: str | None, updated_at: datetime
    ) -> bool:
        matched = False
        for i, r in enumerate(self.notifications):
            if r.message_id == message_id and r.channel == "sms":
                self.notifications[i] = replace(r, status=status, error_message=error_message or r.error_message)
                matched = True
        return matched

    async def get_sms_usage(self, user_id: str) -> SmsUsage | None:
        if self.fail_usage_reads:
            raise StoreError("sms_usage unavailable")
        return self.usage.get(user_id)

    async def increment_sms_usage(
        self,
        user_id: str,
        *,
        cost_usd: float,
        hour_start: datetime,
        day_start: datetime,
        month_start: datetime,
        now: datetime,
    ) -> None:
        cur = self.usage.get(user_id)
        if cur is None:
            self.usage[user_id] = SmsUsage(
                user_id=user_id,
                hourly_count=1,
                daily_count=1,
                monthly_count=1,
                monthly_cost_usd=cost_usd,
                last_reset_hour=hour_start,
                last_reset_day=day_start,
                last_reset_month=month_start,
            )
            return
        new_month = cur.last_reset_month < month_start
        self.usage[user_id] = SmsUsage(
            user_id=user_id,
            hourly_count=1 if cur.last_reset_hour < hour_start else cur.hourly_count + 1,
            daily_count=1 if cur.last_reset_day < day_start else cur.daily_count + 1,
            monthly_count=1 if new_month else cur.monthly_count + 1,
            monthly_cost_usd=cost_usd if new_month else cur.monthly_cost_usd + cost_usd,
            last_reset_hour=max(cur.last_reset_hour, hour_start),
            last_reset_day=max(cur.last_reset_day, day_start),
            last_reset_month=max(cur.last_reset_month, month_start),
        )

    async def list_sms_usage(self) -> list[SmsUsage]:
        return sorted(self.usage.values(), key=lambda u: (-u.monthly_cost_usd, u.user_id))

    async def reset_monthly_usage(self, *, month_start: datetime, now: datetime) -> int:
        count = 0
        for user_id, u in list(self.usage.items()):
            if u.monthly_count or u.monthly_cost_usd:
                self.usage[user_id] = replace(u, monthly_count=0, monthly_cost_usd=0.0, last_reset_month=month_start)
                count += 1
        return count


class FakeEmailTransport:
    def __init__(self, *, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail_for = set(fail_for or ())

    async def send(self, to: str, subject: str, html_body: str) -> str | None:
        if to in self.fail_for:
            raise RuntimeError(f"mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return f"email-{len(self.sent)}"


class FakeSmsTransport:
    """Plays back a script of outcomes; each entry is an exception to raise or None for success."""

    def __init__(self, script: list[BaseException | None] | None = None) -> None:
        self.script = list(script or [])
        self.sent: list[tuple[str, str]] = []
        self.calls = 0
        self.statuses: dict[str, SmsDeliveryStatus] = {}

    async def send(self, to: str, body: str) -> SmsReceipt:
        self.calls += 1
        outcome = self.script.pop(0) if self.script else None
        if outcome is not None:
            raise outcome
        self.sent.append((to, body))
        return SmsReceipt(sid=f"SM{self.calls:032d}", status="queued")

    async def fetch_status(self, sid: str) -> SmsDeliveryStatus:
        if sid not in self.statuses:
            raise SmsProviderError("The requested resource was not found", code=20404, status_code=404)
        return self.statuses[sid]


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def settings(tmp_path: Path) -> WatchSettings:
    return WatchSettings(
        db_path=str(tmp_path / "page-watch.db"),
        environment="development",
        timezone="UTC",
        fetch_timeout_seconds=5.0,
        max_sms_per_user_per_hour=10,
        max_sms_per_user_per_day=50,
        max_monthly_cost_usd=10.0,
        cost_per_sms_usd=0.0075,
        twilio_account_sid="AC_test_account",
        twilio_auth_token="test_auth_token",
        twilio_phone_number="+15005550006",
        twilio_webhook_url="",
        resend_api_key="",
        frontend_url="https://watch.example.test",
        scheduler_token="",
        admin_token="adm_test_token",
    )


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc))


@pytest.fixture()
def memory_store() -> MemoryStore:
    return MemoryStore()


def make_monitor(**overrides: object) -> Monitor:
    base = dict(
        id="mon-1",
        user_id="user-1",
        name="Shop watcher",
        url="https://shop.example.test/product",
        pattern="Buy Now",
        pattern_type="contains",
        check_interval=300,
        is_active=True,
        notification_channels=(NotificationChannel(type="email", address="owner@example.test"),),
    )
    base.update(overrides)
    return Monitor(**base)  # type: ignore[arg-type]


class _PageHandler(BaseHTTPRequestHandler):
    pages: dict[str, tuple[int, str]] = {}

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        status, body = self.pages.get(self.path, (404, "Not Found"))
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)


@pytest.fixture()
def local_site():
    """Serves `pages` ({path: (status, body)}) on localhost; tests mutate the dict between checks."""
    pages: dict[str, tuple[int, str]] = {}
    handler = type("PageHandler", (_PageHandler,), {"pages": pages})
    httpd = HTTPServer(("127.0.0.1", 0), handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield {"base_url": f"http://{host}:{port}", "pages": pages}
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()
