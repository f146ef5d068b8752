"""
Administrative read path over the SMS usage table.

Everything here is off the send path: it aggregates the same per-user rows
the rate limiter writes, classifies users against the monthly ceiling and
projects month-end spend. Store failures propagate to the caller.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import structlog

from page_watch.models import SmsUsage, utc_now
from page_watch.rate_limit import load_timezone, month_start, roll_over
from page_watch.settings import WatchSettings
from page_watch.store import WatchStore


logger = structlog.get_logger(__name__)

ALERT_WARNING = "warning"
ALERT_CRITICAL = "critical"
ALERT_EXCEEDED = "exceeded"


@dataclass(frozen=True)
class CostAlert:
    user_id: str
    current_cost_usd: float
    limit_usd: float
    percentage_used: float
    alert_level: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_cost_usd": round(self.current_cost_usd, 6),
            "limit_usd": self.limit_usd,
            "percentage_used": round(self.percentage_used, 2),
            "alert_level": self.alert_level,
        }


@dataclass(frozen=True)
class UserCost:
    user_id: str
    cost_usd: float
    message_count: int


@dataclass(frozen=True)
class SystemCostStats:
    total_monthly_cost_usd: float = 0.0
    total_monthly_messages: int = 0
    active_users: int = 0
    average_cost_per_user: float = 0.0
    top_users: list[UserCost] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_monthly_cost_usd": round(self.total_monthly_cost_usd, 6),
            "total_monthly_messages": self.total_monthly_messages,
            "active_users": self.active_users,
            "average_cost_per_user": round(self.average_cost_per_user, 6),
            "top_users": [
                {"user_id": u.user_id, "cost_usd": round(u.cost_usd, 6), "message_count": u.message_count}
                for u in self.top_users
            ],
        }


@dataclass(frozen=True)
class CostProjection:
    user_id: str
    current_monthly_cost: float
    projected_monthly_cost: float
    days_into_month: int
    is_on_track_to_exceed_limit: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_monthly_cost": round(self.current_monthly_cost, 6),
            "projected_monthly_cost": round(self.projected_monthly_cost, 6),
            "days_into_month": self.days_into_month,
            "is_on_track_to_exceed_limit": self.is_on_track_to_exceed_limit,
        }


class SmsCostMonitor:
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

    @property
    def limit_usd(self) -> float:
        return float(self.settings.max_monthly_cost_usd)

    def _alert_level(self, percentage_used: float) -> str | None:
        if percentage_used >= 100:
            return ALERT_EXCEEDED
        if percentage_used >= float(self.settings.cost_critical_percent):
            return ALERT_CRITICAL
        if percentage_used >= float(self.settings.cost_warning_percent):
            return ALERT_WARNING
        return None

    def _alert_for(self, usage: SmsUsage) -> CostAlert | None:
        limit = self.limit_usd
        if limit <= 0:
            percentage = 100.0 if usage.monthly_cost_usd > 0 else 0.0
        else:
            percentage = usage.monthly_cost_usd / limit * 100.0
        level = self._alert_level(percentage)
        if level is None:
            return None
        return CostAlert(
            user_id=usage.user_id,
            current_cost_usd=usage.monthly_cost_usd,
            limit_usd=limit,
            percentage_used=percentage,
            alert_level=level,
        )

    async def _current_rows(self) -> list[SmsUsage]:
        now = self.clock()
        return [roll_over(u, now, self.tz) for u in await self.store.list_sms_usage()]

    async def check_user_cost_alert(self, user_id: str) -> CostAlert | None:
        usage = await self.store.get_sms_usage(user_id)
        if usage is None:
            return None
        return self._alert_for(roll_over(usage, self.clock(), self.tz))

    async def get_system_cost_stats(self, *, top_n: int = 10) -> SystemCostStats:
        active = [u for u in await self._current_rows() if u.monthly_count > 0]
        if not active:
            return SystemCostStats()

        total_cost = sum(u.monthly_cost_usd for u in active)
        total_messages = sum(u.monthly_count for u in active)
        ranked = sorted(active, key=lambda u: (-u.monthly_cost_usd, u.user_id))
        return SystemCostStats(
            total_monthly_cost_usd=total_cost,
            total_monthly_messages=total_messages,
            active_users=len(active),
            average_cost_per_user=total_cost / len(active),
            top_users=[
                UserCost(user_id=u.user_id, cost_usd=u.monthly_cost_usd, message_count=u.monthly_count)
                for u in ranked[: max(0, int(top_n))]
            ],
        )

    async def get_users_exceeding_limits(self) -> list[CostAlert]:
        alerts = [a for a in (self._alert_for(u) for u in await self._current_rows()) if a is not None]
        alerts.sort(key=lambda a: (-a.percentage_used, a.user_id))
        return alerts

    def log_cost_alert(self, alert: CostAlert) -> None:
        logger.warning(
            "SMS cost alert",
            user_id=alert.user_id,
            alert_level=alert.alert_level,
            current_cost_usd=round(alert.current_cost_usd, 4),
            limit_usd=alert.limit_usd,
            percentage_used=f"{alert.percentage_used:.1f}%",
        )
        if self.settings.is_production and alert.alert_level == ALERT_EXCEEDED:
            logger.error("User exceeded SMS cost limit", **alert.to_dict())

    async def reset_monthly_costs(self) -> int:
        now = self.clock()
        count = await self.store.reset_monthly_usage(month_start=month_start(now, self.tz), now=now)
        logger.info("Reset monthly SMS costs", reset_count=count)
        return count

    async def get_cost_projection(self, user_id: str) -> CostProjection | None:
        usage = await self.store.get_sms_usage(user_id)
        if usage is None:
            return None
        now = self.clock()
        usage = roll_over(usage, now, self.tz)

        elapsed = now - usage.last_reset_month
        days_into_month = max(1, elapsed.days)
        local_now = now.astimezone(self.tz)
        days_in_month = calendar.monthrange(local_now.year, local_now.month)[1]

        projected = usage.monthly_cost_usd / days_into_month * days_in_month
        return CostProjection(
            user_id=user_id,
            current_monthly_cost=usage.monthly_cost_usd,
            projected_monthly_cost=projected,
            days_into_month=days_into_month,
            is_on_track_to_exceed_limit=projected > self.limit_usd,
        )
