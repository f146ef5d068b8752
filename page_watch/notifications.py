from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence

import structlog

from page_watch.logging_config import mask_phone
from page_watch.mailer import EmailTransport, text_to_html
from page_watch.models import (
    CHANNEL_EMAIL,
    CHANNEL_SMS,
    NOTIFY_ERROR,
    NOTIFY_PATTERN_FOUND,
    NOTIFY_PATTERN_LOST,
    RECORD_FAILED,
    RECORD_SENT,
    NotificationChannel,
    NotificationEvent,
    NotificationRecord,
    NotificationStats,
    utc_now,
)
from page_watch.rate_limit import SmsRateLimiter, load_timezone
from page_watch.settings import WatchSettings
from page_watch.sms import SmsSender
from page_watch.store import WatchStore


logger = structlog.get_logger(__name__)

ALERT_BRAND = "PageWatch Alert"
SMS_MAX_LEN = 160
SMS_DETAIL_MAX_LEN = 50
STATS_TIMEFRAMES = {"hour": timedelta(hours=1), "day": timedelta(days=1), "week": timedelta(days=7)}


@dataclass(frozen=True)
class ChannelResult:
    success: bool
    channel: NotificationChannel
    message_id: str | None = None
    error: str | None = None
    rate_limited: bool = False

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "success": self.success,
            "channel": self.channel.type,
            "rate_limited": self.rate_limited,
        }
        if self.message_id:
            out["message_id"] = self.message_id
        if self.error:
            out["error"] = self.error
        return out


def email_subject(event: NotificationEvent) -> str:
    name = event.monitor.name
    if event.type == NOTIFY_PATTERN_FOUND:
        return f"{ALERT_BRAND}: {name} - Pattern Found"
    if event.type == NOTIFY_PATTERN_LOST:
        return f"{ALERT_BRAND}: {name} - Pattern Lost"
    if event.type == NOTIFY_ERROR:
        return f"{ALERT_BRAND}: {name} - Error"
    return f"{ALERT_BRAND}: {name}"


def format_email_message(event: NotificationEvent, *, sent_at: datetime, frontend_url: str) -> str:
    monitor = event.monitor
    lines = [f"{ALERT_BRAND}!", ""]
    if event.initial:
        lines += [f'First check completed for your watcher "{monitor.name}".', ""]

    if event.type == NOTIFY_PATTERN_FOUND:
        lines += [
            f'Your watcher "{monitor.name}" found a match!',
            "",
            f"Website: {monitor.url}",
            f'Pattern: "{monitor.pattern}"',
        ]
        if event.content_snippet:
            lines += ["", f'Content found: "{event.content_snippet}"']
    elif event.type == NOTIFY_PATTERN_LOST:
        lines += [
            f'Your watcher "{monitor.name}" lost the pattern!',
            "",
            f"Website: {monitor.url}",
            f'Pattern: "{monitor.pattern}"',
            "",
            "The pattern is no longer found on the page.",
        ]
    else:
        lines += [
            f'Your watcher "{monitor.name}" encountered an error!',
            "",
            f"Website: {monitor.url}",
        ]
        if event.error_message:
            lines.append(f"Error: {event.error_message}")

    lines += ["", f"Time: {sent_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}"]
    lines += ["", f"View your dashboard: {frontend_url.rstrip('/')}/dashboard"]
    return "\n".join(lines)


def format_sms_message(event: NotificationEvent) -> str:
    """
    Compact body, at most 160 characters. The snippet/error detail is only
    included when short and when it still fits; otherwise it is dropped before
    any truncation.
    """
    monitor = event.monitor
    detail = ""
    if event.type == NOTIFY_PATTERN_FOUND:
        head = f'"{monitor.name}" found match!'
        if event.content_snippet and len(event.content_snippet) < SMS_DETAIL_MAX_LEN:
            detail = f' Found: "{event.content_snippet}"'
    elif event.type == NOTIFY_PATTERN_LOST:
        head = f'"{monitor.name}" lost pattern!'
    else:
        head = f'"{monitor.name}" error!'
        if event.error_message and len(event.error_message) < SMS_DETAIL_MAX_LEN:
            detail = f" {event.error_message}"

    prefix = f"{ALERT_BRAND}: "
    message = f"{prefix}{head}{detail} {monitor.url}"
    if len(message) > SMS_MAX_LEN and detail:
        message = f"{prefix}{head} {monitor.url}"
    if len(message) > SMS_MAX_LEN:
        message = message[: SMS_MAX_LEN - 3] + "..."
    return message


class NotificationDispatcher:
    """Fans one event out to every channel; each channel succeeds or fails on its own."""

    def __init__(
        self,
        *,
        settings: WatchSettings,
        store: WatchStore,
        rate_limiter: SmsRateLimiter,
        sms_sender: SmsSender,
        email_transport: EmailTransport,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter
        self.sms_sender = sms_sender
        self.email_transport = email_transport
        self.clock = clock
        self.tz = load_timezone(settings.timezone)
        self.audit_failures = 0
        self._sms_locks: dict[str, asyncio.Lock] = {}

    def render(self, event: NotificationEvent, channel: NotificationChannel) -> str:
        if channel.type == CHANNEL_SMS:
            return format_sms_message(event)
        return format_email_message(
            event,
            sent_at=self.clock().astimezone(self.tz),
            frontend_url=self.settings.frontend_url,
        )

    async def send_notifications(
        self, event: NotificationEvent, channels: Sequence[NotificationChannel]
    ) -> list[ChannelResult]:
        """One result per channel, in input order. Never raises for a channel failure."""
        channel_list = list(channels)
        outcomes = await asyncio.gather(
            *(self._send_and_record(event, channel) for channel in channel_list),
            return_exceptions=True,
        )
        results: list[ChannelResult] = []
        for channel, outcome in zip(channel_list, outcomes):
            if isinstance(outcome, ChannelResult):
                results.append(outcome)
                continue
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.error("Notification task crashed", channel=channel.type, error=str(outcome))
            results.append(ChannelResult(success=False, channel=channel, error=str(outcome) or "Unknown error"))
        return results

    async def _send_and_record(self, event: NotificationEvent, channel: NotificationChannel) -> ChannelResult:
        message = self.render(event, channel)
        try:
            result = await self._deliver(event, channel, message)
        except Exception as exc:
            logger.exception("Notification channel failed", monitor_id=event.monitor.id, channel=channel.type)
            result = ChannelResult(success=False, channel=channel, error=str(exc) or "Unknown error")
        await self._record(event, channel, message, result)
        return result

    async def _deliver(self, event: NotificationEvent, channel: NotificationChannel, message: str) -> ChannelResult:
        if channel.type == CHANNEL_EMAIL:
            return await self._send_email(event, channel, message)
        if channel.type == CHANNEL_SMS:
            return await self._send_sms(event, channel, message)
        return ChannelResult(
            success=False,
            channel=channel,
            error=f"Unsupported notification channel type: {channel.type or 'unknown'}",
        )

    async def _send_email(self, event: NotificationEvent, channel: NotificationChannel, message: str) -> ChannelResult:
        message_id = await self.email_transport.send(channel.address, email_subject(event), text_to_html(message))
        logger.info("Email notification sent", monitor_id=event.monitor.id, type=event.type)
        return ChannelResult(success=True, channel=channel, message_id=message_id)

    async def _send_sms(self, event: NotificationEvent, channel: NotificationChannel, message: str) -> ChannelResult:
        user_id = event.monitor.user_id
        # Admit, send and count one SMS at a time per user so sibling channels see each other.
        lock = self._sms_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            return await self._admit_and_send(user_id, event, channel, message)

    async def _admit_and_send(
        self, user_id: str, event: NotificationEvent, channel: NotificationChannel, message: str
    ) -> ChannelResult:
        decision = await self.rate_limiter.check_rate_limit(user_id)
        if not decision.allowed:
            logger.warning("SMS rate limit exceeded", user_id=user_id, reason=decision.reason)
            return ChannelResult(
                success=False,
                channel=channel,
                error=decision.reason or "Rate limit exceeded",
                rate_limited=True,
            )

        result = await self.sms_sender.send_sms(channel.address, message)
        if not result.success:
            return ChannelResult(success=False, channel=channel, error=result.error)

        try:
            await self.rate_limiter.record_usage(user_id)
        except Exception:
            # The message is out; only the usage counter missed it.
            logger.exception("Failed to record SMS usage", user_id=user_id, message_id=result.message_id)
        logger.info("SMS notification sent", monitor_id=event.monitor.id, to=mask_phone(channel.address))
        return ChannelResult(success=True, channel=channel, message_id=result.message_id)

    async def _record(
        self, event: NotificationEvent, channel: NotificationChannel, message: str, result: ChannelResult
    ) -> None:
        record = NotificationRecord(
            monitor_id=event.monitor.id,
            user_id=event.monitor.user_id,
            type=event.type,
            channel=channel.type,
            message=message,
            status=RECORD_SENT if result.success else RECORD_FAILED,
            error_message=None if result.success else result.error,
            message_id=result.message_id,
            created_at=self.clock(),
        )
        try:
            await self.store.insert_notification(record)
        except Exception:
            self.audit_failures += 1
            logger.exception(
                "notification_record_failed",
                monitor_id=event.monitor.id,
                channel=channel.type,
                audit_failures=self.audit_failures,
            )


async def notification_stats(
    store: WatchStore, user_id: str, *, timeframe: str = "day", now: datetime | None = None
) -> NotificationStats:
    window = STATS_TIMEFRAMES.get(timeframe)
    if window is None:
        raise ValueError(f"timeframe must be one of: {', '.join(STATS_TIMEFRAMES)}")
    since = (now or utc_now()) - window
    records = await store.list_notifications(user_id, since=since)

    stats = NotificationStats(total=len(records))
    for record in records:
        if record.status == RECORD_FAILED:
            stats.failed += 1
        else:
            stats.successful += 1
        stats.by_channel[record.channel] = stats.by_channel.get(record.channel, 0) + 1
    return stats
