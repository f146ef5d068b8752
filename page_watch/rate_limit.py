"""Per-user SMS admission control and usage accounting."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from page_watch.models import SmsUsage, utc_now
from page_watch.settings import WatchSettings
from page_watch.store import WatchStore


logger = structlog.get_logger(__name__)

FAIL_CLOSED_REASON = "Unable to verify SMS limits. Please try again later."


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str | None = None
    remaining_hourly: int | None = None
    remaining_daily: int | None = None
    estimated_monthly_cost: float | None = None


def load_timezone(name: str) -> tzinfo:
    cleaned = str(name or "").strip() or "UTC"
    try:
        return ZoneInfo(cleaned)
    except ZoneInfoNotFoundError:
        logger.warning("Timezone not found; falling back to UTC", tz=cleaned)
        return ZoneInfo("UTC")


def hour_start(now: datetime, tz: tzinfo) -> datetime:
    return now.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def day_start(now: datetime, tz: tzinfo) -> datetime:
    return now.astimezone(tz).replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: datetime, tz: tzinfo) -> datetime:
    return now.astimezone(tz).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def empty_usage(user_id: str, now: datetime, tz: tzinfo) -> SmsUsage:
    return SmsUsage(
        user_id=user_id,
        hourly_count=0,
        daily_count=0,
        monthly_count=0,
        monthly_cost_usd=0.0,
        last_reset_hour=hour_start(now, tz),
        last_reset_day=day_start(now, tz),
        last_reset_month=month_start(now, tz),
    )


def roll_over(usage: SmsUsage, now: datetime, tz: tzinfo) -> SmsUsage:
    """Zero each counter whose calendar window has ended since its last reset."""
    updated = usage
    current_hour = hour_start(now, tz)
    current_day = day_start(now, tz)
    current_month = month_start(now, tz)

    if current_hour > usage.last_reset_hour:
        updated = replace(updated, hourly_count=0, last_reset_hour=current_hour)
    if current_day > usage.last_reset_day:
        updated = replace(updated, daily_count=0, last_reset_day=current_day)
    if current_month > usage.last_reset_month:
        updated = replace(updated, monthly_count=0, monthly_cost_usd=0.0, last_reset_month=current_month)
    return updated


def decide(usage: SmsUsage, settings: WatchSettings) -> RateLimitDecision:
    """Hourly cap, then daily cap, then projected monthly cost; first violation wins."""
    max_hourly = int(settings.max_sms_per_user_per_hour)
    max_daily = int(settings.max_sms_per_user_per_day)
    max_cost = float(settings.max_monthly_cost_usd)

    if usage.hourly_count >= max_hourly:
        return RateLimitDecision(
            allowed=False,
            reason=f"Hourly SMS limit exceeded ({max_hourly} messages/hour)",
            remaining_hourly=0,
        )

    if usage.daily_count >= max_daily:
        return RateLimitDecision(
            allowed=False,
            reason=f"Daily SMS limit exceeded ({max_daily} messages/day)",
            remaining_daily=0,
        )

    projected = usage.monthly_cost_usd + float(settings.cost_per_sms_usd)
    if projected > max_cost:
        return RateLimitDecision(
            allowed=False,
            reason=f"Monthly SMS cost limit would be exceeded (${max_cost:g})",
            estimated_monthly_cost=projected,
        )

    return RateLimitDecision(
        allowed=True,
        remaining_hourly=max_hourly - usage.hourly_count,
        remaining_daily=max_daily - usage.daily_count,
        estimated_monthly_cost=projected,
    )


class SmsRateLimiter:
    def __init__(
        self,
        *,
        settings: WatchSettings,
        store: WatchStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.clock = clock
        self.tz = load_timezone(settings.timezone)

    async def _current_usage(self, user_id: str, now: datetime) -> SmsUsage:
        usage = await self.store.get_sms_usage(user_id)
        if usage is None:
            return empty_usage(user_id, now, self.tz)
        return roll_over(usage, now, self.tz)

    async def check_rate_limit(self, user_id: str) -> RateLimitDecision:
        """Admission decision for one SMS; any internal failure denies the send."""
        try:
            usage = await self._current_usage(user_id, self.clock())
            return decide(usage, self.settings)
        except Exception:
            logger.exception("Rate limit check failed; denying SMS", user_id=user_id)
            return RateLimitDecision(allowed=False, reason=FAIL_CLOSED_REASON)

    async def record_usage(self, user_id: str) -> None:
        """Count one delivered SMS. Call only after the provider accepted the message."""
        now = self.clock()
        await self.store.increment_sms_usage(
            user_id,
            cost_usd=float(self.settings.cost_per_sms_usd),
            hour_start=hour_start(now, self.tz),
            day_start=day_start(now, self.tz),
            month_start=month_start(now, self.tz),
            now=now,
        )

    async def usage_stats(self, user_id: str) -> SmsUsage:
        return await self._current_usage(user_id, self.clock())

    async def rate_limit_status(self, user_id: str) -> dict[str, Any]:
        usage = await self.usage_stats(user_id)
        return {
            "user_id": user_id,
            "hourly_remaining": max(0, int(self.settings.max_sms_per_user_per_hour) - usage.hourly_count),
            "daily_remaining": max(0, int(self.settings.max_sms_per_user_per_day) - usage.daily_count),
            "monthly_cost_usd": round(usage.monthly_cost_usd, 6),
            "max_monthly_cost_usd": float(self.settings.max_monthly_cost_usd),
        }
