from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import httpx
import structlog

from page_watch.logging_config import mask_phone
from page_watch.settings import WatchSettings


logger = structlog.get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"

# Provider codes worth another attempt: rate limiting (20429) and queue/carrier
# transients (30001-30006). Everything else (e.g. 21211 invalid "To") is final.
RETRYABLE_ERROR_CODES = frozenset({20429, 30001, 30002, 30003, 30004, 30005, 30006})
RETRYABLE_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})

SANITIZED_ERROR = "Failed to send SMS. Please try again later."


class SmsProviderError(Exception):
    def __init__(self, message: str, *, code: int | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class SmsReceipt:
    sid: str
    status: str


@dataclass(frozen=True)
class SmsDeliveryStatus:
    message_id: str
    status: str
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class SmsResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    attempts: int = 0


class SmsTransport(Protocol):
    async def send(self, to: str, body: str) -> SmsReceipt: ...

    async def fetch_status(self, sid: str) -> SmsDeliveryStatus: ...


def _coerce_code(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TwilioTransport:
    def __init__(self, client: httpx.AsyncClient, settings: WatchSettings) -> None:
        self.client = client
        self.account_sid = settings.twilio_account_sid
        self.auth_token = settings.twilio_auth_token
        self.from_number = settings.twilio_phone_number
        self.status_callback = settings.twilio_webhook_url

    def _url(self, endpoint: str) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/{endpoint}.json"

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        message = str(data.get("message") or resp.reason_phrase or resp.status_code)
        raise SmsProviderError(
            f"Twilio API error: {message}",
            code=_coerce_code(data.get("code")),
            status_code=resp.status_code,
        )

    async def send(self, to: str, body: str) -> SmsReceipt:
        form = {"Body": body, "From": self.from_number, "To": to}
        if self.status_callback:
            form["StatusCallback"] = self.status_callback
        resp = await self.client.post(
            self._url("Messages"),
            data=form,
            auth=(self.account_sid, self.auth_token),
            timeout=20.0,
        )
        self._raise_for_error(resp)
        data = resp.json()
        return SmsReceipt(sid=str(data.get("sid") or ""), status=str(data.get("status") or "queued"))

    async def fetch_status(self, sid: str) -> SmsDeliveryStatus:
        resp = await self.client.get(
            self._url(f"Messages/{sid}"),
            auth=(self.account_sid, self.auth_token),
            timeout=20.0,
        )
        self._raise_for_error(resp)
        data = resp.json()
        code = data.get("error_code")
        return SmsDeliveryStatus(
            message_id=sid,
            status=str(data.get("status") or "queued"),
            error_code=str(code) if code is not None else None,
            error_message=data.get("error_message") or None,
        )


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, SmsProviderError):
        if exc.code is not None:
            return exc.code in RETRYABLE_ERROR_CODES
        return exc.status_code in RETRYABLE_HTTP_STATUSES
    # Connection resets, DNS failures and timeouts.
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError))


def sanitize_error(exc: BaseException, *, production: bool) -> str:
    if production:
        return SANITIZED_ERROR
    return str(exc) or type(exc).__name__


class SmsSender:
    """Sends one SMS with a bounded, backoff-delayed retry loop."""

    def __init__(
        self,
        *,
        transport: SmsTransport,
        settings: WatchSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.settings = settings
        self.sleep = sleep

    async def send_sms(self, to: str, body: str) -> SmsResult:
        delays = tuple(self.settings.sms_retry_delays_seconds)
        attempts = self.settings.sms_retry_attempts
        last_exc: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                receipt = await self.transport.send(to, body)
            except Exception as exc:
                last_exc = exc
                retryable = is_retryable_error(exc)
                logger.warning(
                    "SMS send attempt failed",
                    attempt=attempt,
                    to=mask_phone(to),
                    retryable=retryable,
                    error=str(exc),
                )
                if not retryable or attempt >= attempts:
                    break
                delay = float(delays[attempt - 1]) if attempt - 1 < len(delays) else float(delays[-1])
                logger.info("Retrying SMS send", delay_seconds=delay, next_attempt=attempt + 1)
                await self.sleep(delay)
                continue

            if not self.settings.is_production:
                logger.info("SMS sent", message_id=receipt.sid, to=mask_phone(to), attempt=attempt)
            return SmsResult(success=True, message_id=receipt.sid, attempts=attempt)

        error = sanitize_error(last_exc, production=self.settings.is_production) if last_exc else "Failed to send SMS"
        return SmsResult(success=False, error=error, attempts=attempt)

    async def validate_delivery(self, message_id: str) -> SmsDeliveryStatus:
        try:
            return await self.transport.fetch_status(message_id)
        except Exception as exc:
            logger.exception("Error validating SMS delivery", message_id=message_id)
            return SmsDeliveryStatus(message_id=message_id, status="failed", error_message=str(exc) or "Unknown error")

    def is_configured(self) -> bool:
        return bool(
            self.settings.twilio_account_sid and self.settings.twilio_auth_token and self.settings.twilio_phone_number
        )

    def health_status(self) -> dict[str, Any]:
        return {
            "configured": self.is_configured(),
            "environment": self.settings.environment,
            "limits": {
                "max_sms_per_user_per_hour": self.settings.max_sms_per_user_per_hour,
                "max_sms_per_user_per_day": self.settings.max_sms_per_user_per_day,
                "max_monthly_cost_usd": self.settings.max_monthly_cost_usd,
                "cost_per_sms_usd": self.settings.cost_per_sms_usd,
            },
        }
