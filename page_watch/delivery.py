from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

import structlog

from page_watch.models import RECORD_DELIVERED, RECORD_FAILED, RECORD_SENT
from page_watch.store import WatchStore


logger = structlog.get_logger(__name__)

_PROVIDER_STATUS_MAP = {
    "queued": RECORD_SENT,
    "sent": RECORD_SENT,
    "delivered": RECORD_DELIVERED,
    "failed": RECORD_FAILED,
    "undelivered": RECORD_FAILED,
}

# Every MessageStatus the provider posts to a status callback.
PROVIDER_STATUSES = ("queued", "sent", "delivered", "failed", "undelivered", "receiving", "received")


def twilio_signature(auth_token: str, url: str, params: Iterable[tuple[str, str]]) -> str:
    """
    X-Twilio-Signature for a form POST: base64(HMAC-SHA1(auth_token, url + sorted key/value pairs)).

    Pairs are sorted by key, then value, and concatenated without separators.
    """
    payload = url + "".join(f"{k}{v}" for k, v in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def signature_is_valid(signature: str, *, auth_token: str, url: str, params: Iterable[tuple[str, str]]) -> bool:
    if not signature or not auth_token:
        return False
    expected = twilio_signature(auth_token, url, params)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


@dataclass(frozen=True)
class DeliveryUpdate:
    status: str
    error_message: str | None = None


def map_provider_status(
    provider_status: str, *, error_code: str | None = None, error_message: str | None = None
) -> DeliveryUpdate:
    """Translate a provider delivery status into the NotificationRecord status vocabulary."""
    status = _PROVIDER_STATUS_MAP.get(str(provider_status or "").strip().lower(), RECORD_SENT)
    if status != RECORD_FAILED:
        return DeliveryUpdate(status=status)
    if error_code:
        return DeliveryUpdate(status=status, error_message=f"{error_code}: {error_message or 'Delivery failed'}")
    return DeliveryUpdate(status=status, error_message="Delivery failed")


async def apply_delivery_status(
    store: WatchStore,
    *,
    message_id: str,
    provider_status: str,
    error_code: str | None = None,
    error_message: str | None = None,
    now: datetime,
) -> bool:
    """Returns False when no SMS record carries `message_id`."""
    update = map_provider_status(provider_status, error_code=error_code, error_message=error_message)
    matched = await store.update_notification_delivery(
        message_id,
        status=update.status,
        error_message=update.error_message,
        updated_at=now,
    )
    if not matched:
        logger.warning("Notification not found for message id", message_id=message_id)
        return False
    logger.info(
        "SMS delivery status updated",
        message_id=message_id,
        provider_status=provider_status,
        status=update.status,
        error=update.error_message,
    )
    return True
