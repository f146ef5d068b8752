from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import FixedClock, MemoryStore
from page_watch.models import SmsUsage
from page_watch.rate_limit import (
    FAIL_CLOSED_REASON,
    SmsRateLimiter,
    day_start,
    decide,
    empty_usage,
    hour_start,
    month_start,
    roll_over,
)
from page_watch.settings import WatchSettings


UTC = timezone.utc


def _usage(now: datetime, **overrides: object) -> SmsUsage:
    return replace(empty_usage("user-1", now, UTC), **overrides)


@pytest.mark.asyncio
async def test_fresh_user_is_admitted_with_full_allowance(
    settings: WatchSettings, memory_store: MemoryStore, clock: FixedClock
) -> None:
    limiter = SmsRateLimiter(settings=settings, store=memory_store, clock=clock)
    d = await limiter.check_rate_limit("user-1")
    assert d.allowed is True
    assert d.reason is None
    assert d.remaining_hourly == 10
    assert d.remaining_daily == 50
    assert d.estimated_monthly_cost == pytest.approx(0.0075)


@pytest.mark.asyncio
async def test_last_hourly_slot_then_denied_for_rest_of_hour(
    settings: WatchSettings, memory_store: MemoryStore, clock: FixedClock
) -> None:
    limiter = SmsRateLimiter(settings=settings, store=memory_store, clock=clock)
    for _ in range(settings.max_sms_per_user_per_hour - 1):
        await limiter.record_usage("user-1")

    d = await limiter.check_rate_limit("user-1")
    assert d.allowed and d.remaining_hourly == 1
    await limiter.record_usage("user-1")

    for _ in range(3):
        denied = await limiter.check_rate_limit("user-1")
        assert denied.allowed is False
        assert denied.reason == "Hourly SMS limit exceeded (10 messages/hour)"

    # Top of the next hour resets only the hourly window.
    clock.now = datetime(2026, 3, 14, 16, 0, 0, tzinfo=UTC)
    d = await limiter.check_rate_limit("user-1")
    assert d.allowed is True
    assert d.remaining_hourly == 10
    assert d.remaining_daily == 40


def test_admission_order_hourly_before_daily_before_cost(settings: WatchSettings, clock: FixedClock) -> None:
    now = clock()
    everything_exhausted = _usage(now, hourly_count=10, daily_count=50, monthly_cost_usd=50.0)
    assert decide(everything_exhausted, settings).reason == "Hourly SMS limit exceeded (10 messages/hour)"

    daily_and_cost = _usage(now, hourly_count=0, daily_count=50, monthly_cost_usd=50.0)
    assert decide(daily_and_cost, settings).reason == "Daily SMS limit exceeded (50 messages/day)"

    cost_only = _usage(now, hourly_count=0, daily_count=0, monthly_cost_usd=9.995)
    d = decide(cost_only, settings)
    assert d.allowed is False
    assert d.reason == "Monthly SMS cost limit would be exceeded ($10)"
    assert d.estimated_monthly_cost == pytest.approx(10.0025)


def test_cost_below_ceiling_is_admitted(settings: WatchSettings, clock: FixedClock) -> None:
    d = decide(_usage(clock(), monthly_cost_usd=9.5), settings)
    assert d.allowed is True
    assert d.estimated_monthly_cost == pytest.approx(9.5075)


@pytest.mark.asyncio
async def test_fails_closed_when_usage_cannot_be_read(
    settings: WatchSettings, memory_store: MemoryStore, clock: FixedClock
) -> None:
    memory_store.fail_usage_reads = True
    limiter = SmsRateLimiter(settings=settings, store=memory_store, clock=clock)
    d = await limiter.check_rate_limit("user-1")
    assert d.allowed is False
    assert d.reason == FAIL_CLOSED_REASON


def test_roll_over_resets_each_window_independently(clock: FixedClock) -> None:
    now = clock()
    usage = _usage(now, hourly_count=4, daily_count=9, monthly_count=30, monthly_cost_usd=0.225)

    same_hour = roll_over(usage, now.replace(minute=59), UTC)
    assert same_hour == usage

    next_hour = roll_over(usage, datetime(2026, 3, 14, 16, 1, tzinfo=UTC), UTC)
    assert (next_hour.hourly_count, next_hour.daily_count, next_hour.monthly_count) == (0, 9, 30)

    next_day = roll_over(usage, datetime(2026, 3, 15, 0, 0, tzinfo=UTC), UTC)
    assert (next_day.hourly_count, next_day.daily_count, next_day.monthly_count) == (0, 0, 30)
    assert next_day.monthly_cost_usd == pytest.approx(0.225)

    next_month = roll_over(usage, datetime(2026, 4, 1, 0, 0, tzinfo=UTC), UTC)
    assert (next_month.hourly_count, next_month.daily_count, next_month.monthly_count) == (0, 0, 0)
    assert next_month.monthly_cost_usd == 0.0
    assert next_month.last_reset_month == datetime(2026, 4, 1, tzinfo=UTC)


def test_calendar_boundaries_follow_configured_timezone(clock: FixedClock) -> None:
    ny = ZoneInfo("America/New_York")
    now = clock()  # 2026-03-14 15:09:26 UTC, 11:09 EDT
    assert hour_start(now, ny) == datetime(2026, 3, 14, 15, 0, tzinfo=UTC)
    assert day_start(now, ny) == datetime(2026, 3, 14, 4, 0, tzinfo=UTC)
    assert month_start(now, ny) == datetime(2026, 3, 1, 5, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_rate_limit_status_never_negative(
    settings: WatchSettings, memory_store: MemoryStore, clock: FixedClock
) -> None:
    limiter = SmsRateLimiter(settings=settings, store=memory_store, clock=clock)
    memory_store.usage["user-1"] = _usage(clock(), hourly_count=12, daily_count=12, monthly_cost_usd=0.09)
    status = await limiter.rate_limit_status("user-1")
    assert status["hourly_remaining"] == 0
    assert status["daily_remaining"] == 38
    assert status["monthly_cost_usd"] == pytest.approx(0.09)
    assert status["max_monthly_cost_usd"] == 10.0


@pytest.mark.asyncio
async def test_record_usage_accumulates_cost(
    settings: WatchSettings, memory_store: MemoryStore, clock: FixedClock
) -> None:
    limiter = SmsRateLimiter(settings=settings, store=memory_store, clock=clock)
    for _ in range(4):
        await limiter.record_usage("user-1")
    usage = await limiter.usage_stats("user-1")
    assert (usage.hourly_count, usage.daily_count, usage.monthly_count) == (4, 4, 4)
    assert usage.monthly_cost_usd == pytest.approx(0.03)
