"""
One monitor check: fetch, evaluate, persist, detect the transition, notify.

Fetch and pattern failures are routine and end up as an `error` status;
validation failures are raised before any I/O; persistence failures
propagate to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from page_watch.fetch import fetch_page
from page_watch.models import (
    NOTIFY_ERROR,
    NOTIFY_PATTERN_FOUND,
    NOTIFY_PATTERN_LOST,
    STATUS_ERROR,
    STATUS_FOUND,
    STATUS_NOT_FOUND,
    STATUS_PENDING,
    CheckResult,
    Monitor,
    NotificationEvent,
    utc_now,
)
from page_watch.notifications import ChannelResult, NotificationDispatcher
from page_watch.patterns import PatternError, evaluate
from page_watch.settings import WatchSettings
from page_watch.store import WatchStore


logger = structlog.get_logger(__name__)

TRANSITION_TYPES = {
    STATUS_FOUND: NOTIFY_PATTERN_FOUND,
    STATUS_NOT_FOUND: NOTIFY_PATTERN_LOST,
    STATUS_ERROR: NOTIFY_ERROR,
}

# Notification outcomes reported back to the scheduler.
NOTIFY_NOT_REQUIRED = "not_required"
NOTIFY_NO_CHANNELS = "skipped_no_channels"
NOTIFY_SENT = "sent"
NOTIFY_PARTIAL = "partial"
NOTIFY_FAILED = "failed"
NOTIFY_DISPATCH_ERROR = "dispatch_error"


class CheckRejected(Exception):
    """The check was refused before any network or database writes."""

    status_code = 400


class InvalidCheckRequest(CheckRejected):
    pass


class MonitorNotFound(CheckRejected):
    status_code = 404

    def __init__(self) -> None:
        super().__init__("Monitor not found")


class MonitorInactive(CheckRejected):
    def __init__(self) -> None:
        super().__init__("Monitor is not active")


@dataclass(frozen=True)
class TransitionDecision:
    notify: bool
    type: str | None = None
    initial: bool = False


def decide_transition(last_status: str, new_status: str) -> TransitionDecision:
    if new_status not in TRANSITION_TYPES:
        raise ValueError(f"Unknown check status: {new_status!r}")
    if last_status == STATUS_PENDING:
        return TransitionDecision(notify=True, type=TRANSITION_TYPES[new_status], initial=True)
    if new_status == last_status:
        return TransitionDecision(notify=False)
    return TransitionDecision(notify=True, type=TRANSITION_TYPES[new_status], initial=False)


@dataclass
class NotificationOutcome:
    status: str
    type: str | None = None
    initial: bool = False
    total: int = 0
    successful: int = 0
    failed: int = 0
    error: str | None = None
    results: list[ChannelResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "type": self.type,
            "initial": self.initial,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class CheckOutcome:
    success: bool
    status: str
    response_time_ms: int
    previous_status: str
    content_snippet: str | None = None
    error: str | None = None
    notification: NotificationOutcome = field(default_factory=lambda: NotificationOutcome(status=NOTIFY_NOT_REQUIRED))


class MonitorChecker:
    def __init__(
        self,
        *,
        settings: WatchSettings,
        store: WatchStore,
        http_client: httpx.AsyncClient,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.http_client = http_client
        self.dispatcher = dispatcher
        self.clock = clock

    async def run_check(self, monitor_id: str, user_id: str) -> CheckOutcome:
        monitor_id = str(monitor_id or "").strip()
        user_id = str(user_id or "").strip()
        if not monitor_id:
            raise InvalidCheckRequest("Monitor ID is required")
        if not user_id:
            raise InvalidCheckRequest("User ID is required")

        monitor = await self.store.get_monitor(monitor_id, user_id)
        if monitor is None:
            raise MonitorNotFound()
        if not monitor.is_active:
            raise MonitorInactive()

        last_status = monitor.last_status
        log = logger.bind(monitor_id=monitor.id, user_id=monitor.user_id)

        result = await self.evaluate_monitor(monitor)
        checked_at = self.clock()
        await self.store.insert_check_log(monitor.id, result, checked_at=checked_at)
        await self.store.update_monitor_status(monitor.id, status=result.status, checked_at=checked_at)
        log.info(
            "Monitor checked",
            previous_status=last_status,
            status=result.status,
            response_time_ms=result.response_time_ms,
            error=result.error_message,
        )

        notification = await self._notify(monitor.with_status(result.status, checked_at), last_status, result)
        return CheckOutcome(
            success=result.status != STATUS_ERROR,
            status=result.status,
            response_time_ms=result.response_time_ms,
            previous_status=last_status,
            content_snippet=result.content_snippet,
            error=result.error_message,
            notification=notification,
        )

    async def evaluate_monitor(self, monitor: Monitor) -> CheckResult:
        fetched = await fetch_page(
            self.http_client,
            monitor.url,
            timeout_seconds=float(self.settings.fetch_timeout_seconds),
            user_agent=self.settings.user_agent,
        )
        if not fetched.ok:
            return CheckResult(
                status=STATUS_ERROR,
                response_time_ms=fetched.elapsed_ms,
                error_message=fetched.error or "Unknown error",
            )

        try:
            match = evaluate(fetched.text or "", monitor.pattern, monitor.pattern_type)
        except PatternError as exc:
            return CheckResult(status=STATUS_ERROR, response_time_ms=fetched.elapsed_ms, error_message=str(exc))

        return CheckResult(
            status=STATUS_FOUND if match.matched else STATUS_NOT_FOUND,
            response_time_ms=fetched.elapsed_ms,
            content_snippet=match.snippet,
        )

    async def _notify(self, monitor: Monitor, last_status: str, result: CheckResult) -> NotificationOutcome:
        decision = decide_transition(last_status, result.status)
        if not decision.notify:
            return NotificationOutcome(status=NOTIFY_NOT_REQUIRED)

        channels = list(monitor.notification_channels)
        if not channels:
            logger.warning("No notification channels configured", monitor_id=monitor.id, type=decision.type)
            return NotificationOutcome(status=NOTIFY_NO_CHANNELS, type=decision.type, initial=decision.initial)

        event = NotificationEvent(
            monitor=monitor,
            type=decision.type or NOTIFY_ERROR,
            initial=decision.initial,
            content_snippet=result.content_snippet,
            error_message=result.error_message,
        )
        try:
            results = await self.dispatcher.send_notifications(event, channels)
        except Exception as exc:
            # The check is already persisted; a broken dispatcher only loses the alert.
            logger.exception("Notification dispatch failed", monitor_id=monitor.id, type=event.type)
            return NotificationOutcome(
                status=NOTIFY_DISPATCH_ERROR,
                type=event.type,
                initial=event.initial,
                total=len(channels),
                failed=len(channels),
                error=str(exc) or "Unknown error",
            )

        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful
        if failed == 0:
            status = NOTIFY_SENT
        elif successful == 0:
            status = NOTIFY_FAILED
        else:
            status = NOTIFY_PARTIAL
        for r in results:
            if r.success:
                logger.info("Notification delivered", monitor_id=monitor.id, channel=r.channel.type)
            else:
                logger.warning(
                    "Notification not delivered",
                    monitor_id=monitor.id,
                    channel=r.channel.type,
                    rate_limited=r.rate_limited,
                    error=r.error,
                )
        return NotificationOutcome(
            status=status,
            type=event.type,
            initial=event.initial,
            total=len(results),
            successful=successful,
            failed=failed,
            results=results,
        )
