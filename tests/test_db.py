from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import make_monitor
from page_watch.db import SCHEMA_VERSION, SqliteStore
from page_watch.delivery import apply_delivery_status, map_provider_status
from page_watch.models import CheckResult, NotificationChannel, NotificationRecord
from page_watch.rate_limit import day_start, hour_start, month_start
from page_watch.store import StoreError


UTC = timezone.utc
NOW = datetime(2026, 3, 14, 15, 9, 26, tzinfo=UTC)


async def _increment(store: SqliteStore, user_id: str, now: datetime) -> None:
    await store.increment_sms_usage(
        user_id,
        cost_usd=0.0075,
        hour_start=hour_start(now, UTC),
        day_start=day_start(now, UTC),
        month_start=month_start(now, UTC),
        now=now,
    )


@pytest.mark.asyncio
async def test_schema_is_versioned(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    store.ensure_schema()
    store.ensure_schema()
    conn = sqlite3.connect(str(tmp_path / "watch.db"))
    try:
        row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    assert row[0] == str(SCHEMA_VERSION)
    assert {"monitors", "monitor_logs", "notifications", "sms_usage"} <= tables


@pytest.mark.asyncio
async def test_monitor_roundtrip_and_owner_scoping(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    channels = (
        NotificationChannel(type="email", address="owner@example.test"),
        NotificationChannel(type="sms", address="+14155552671"),
    )
    created = await store.create_monitor(make_monitor(id="", notification_channels=channels))
    assert created.id
    assert created.last_status == "pending"
    assert created.last_checked is None
    assert created.notification_channels == channels

    assert await store.get_monitor(created.id, "someone-else") is None

    await store.update_monitor_status(created.id, status="found", checked_at=NOW)
    reloaded = await store.get_monitor(created.id, created.user_id)
    assert reloaded is not None
    assert reloaded.last_status == "found"
    assert reloaded.last_checked == NOW


@pytest.mark.asyncio
async def test_check_log_is_append_only_newest_first(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    monitor = await store.create_monitor(make_monitor())
    await store.insert_check_log(monitor.id, CheckResult("found", 120, content_snippet="Buy Now"), checked_at=NOW)
    await store.insert_check_log(
        monitor.id,
        CheckResult("error", 30000, error_message="Request timeout"),
        checked_at=NOW + timedelta(minutes=5),
    )
    logs = await store.list_check_logs(monitor.id)
    assert [entry.status for entry in logs] == ["error", "found"]
    assert logs[0].error_message == "Request timeout"
    assert logs[1].content_snippet == "Buy Now"


@pytest.mark.asyncio
async def test_usage_increment_and_rollover_in_one_statement(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    for _ in range(3):
        await _increment(store, "user-1", NOW)
    usage = await store.get_sms_usage("user-1")
    assert usage is not None
    assert (usage.hourly_count, usage.daily_count, usage.monthly_count) == (3, 3, 3)
    assert usage.monthly_cost_usd == pytest.approx(0.0225)

    next_hour = NOW + timedelta(hours=1)
    await _increment(store, "user-1", next_hour)
    usage = await store.get_sms_usage("user-1")
    assert (usage.hourly_count, usage.daily_count, usage.monthly_count) == (1, 4, 4)
    assert usage.last_reset_hour == hour_start(next_hour, UTC)

    next_month = datetime(2026, 4, 2, 8, 0, tzinfo=UTC)
    await _increment(store, "user-1", next_month)
    usage = await store.get_sms_usage("user-1")
    assert (usage.hourly_count, usage.daily_count, usage.monthly_count) == (1, 1, 1)
    assert usage.monthly_cost_usd == pytest.approx(0.0075)


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    store.ensure_schema()
    await asyncio.gather(*(_increment(store, "user-1", NOW) for _ in range(25)))
    usage = await store.get_sms_usage("user-1")
    assert usage is not None
    assert usage.hourly_count == 25
    assert usage.monthly_cost_usd == pytest.approx(25 * 0.0075)


@pytest.mark.asyncio
async def test_reset_monthly_usage_only_touches_users_with_usage(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    await _increment(store, "user-1", NOW)
    await _increment(store, "user-2", NOW)
    assert await store.reset_monthly_usage(month_start=month_start(NOW, UTC), now=NOW) == 2
    assert await store.reset_monthly_usage(month_start=month_start(NOW, UTC), now=NOW) == 0
    usage = await store.get_sms_usage("user-1")
    assert usage.monthly_count == 0 and usage.monthly_cost_usd == 0
    assert usage.hourly_count == 1


def test_provider_status_mapping() -> None:
    assert map_provider_status("queued").status == "sent"
    assert map_provider_status("sent").status == "sent"
    assert map_provider_status("delivered").status == "delivered"
    failed = map_provider_status("undelivered", error_code="30005", error_message="Unknown destination handset")
    assert (failed.status, failed.error_message) == ("failed", "30005: Unknown destination handset")
    assert map_provider_status("failed").error_message == "Delivery failed"
    assert map_provider_status("receiving").status == "sent"


@pytest.mark.asyncio
async def test_delivery_callback_updates_matching_sms_record(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    base = dict(monitor_id="mon-1", user_id="user-1", type="pattern_found", message="m", status="sent", created_at=NOW)
    await store.insert_notification(NotificationRecord(channel="sms", message_id="SM1", **base))
    await store.insert_notification(NotificationRecord(channel="email", message_id="SM1", **base))

    assert await apply_delivery_status(
        store, message_id="SM1", provider_status="failed", error_code="30003", error_message="Unreachable", now=NOW
    )
    assert not await apply_delivery_status(store, message_id="SMnope", provider_status="delivered", now=NOW)

    records = {r.channel: r for r in await store.list_notifications("user-1")}
    assert records["sms"].status == "failed"
    assert records["sms"].error_message == "30003: Unreachable"
    assert records["email"].status == "sent"


@pytest.mark.asyncio
async def test_list_notifications_since(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "watch.db"))
    base = dict(monitor_id="mon-1", user_id="user-1", type="error", channel="email", message="m", status="sent")
    await store.insert_notification(NotificationRecord(created_at=NOW - timedelta(days=2), **base))
    await store.insert_notification(NotificationRecord(created_at=NOW - timedelta(minutes=1), **base))
    assert len(await store.list_notifications("user-1")) == 2
    assert len(await store.list_notifications("user-1", since=NOW - timedelta(hours=1))) == 1


@pytest.mark.asyncio
async def test_driver_errors_surface_as_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = SqliteStore(str(blocker / "watch.db"))
    with pytest.raises(StoreError, match="database unavailable"):
        await store.get_sms_usage("user-1")
