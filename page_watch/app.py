from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx
import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from page_watch.auth import require_admin, require_scheduler
from page_watch.checker import CheckRejected, MonitorChecker
from page_watch.cost_monitor import SmsCostMonitor
from page_watch.db import SqliteStore
from page_watch.delivery import PROVIDER_STATUSES, apply_delivery_status, signature_is_valid
from page_watch.logging_config import mask_phone
from page_watch.mailer import EmailTransport, ResendTransport
from page_watch.models import utc_now
from page_watch.notifications import STATS_TIMEFRAMES, NotificationDispatcher, notification_stats
from page_watch.rate_limit import SmsRateLimiter
from page_watch.schema import ADMIN_ACTIONS, AdminCostAction, CheckRequest, CheckResponse
from page_watch.settings import WatchSettings
from page_watch.sms import SmsSender, SmsTransport, TwilioTransport
from page_watch.store import StoreError, WatchStore


logger = structlog.get_logger(__name__)

PROJECTION_USERS = 5


@dataclass
class Services:
    settings: WatchSettings
    store: WatchStore
    http_client: httpx.AsyncClient
    rate_limiter: SmsRateLimiter
    sms_sender: SmsSender
    dispatcher: NotificationDispatcher
    checker: MonitorChecker
    cost_monitor: SmsCostMonitor
    email_configured: bool


def build_services(
    settings: WatchSettings,
    *,
    http_client: httpx.AsyncClient,
    store: WatchStore | None = None,
    email_transport: EmailTransport | None = None,
    sms_transport: SmsTransport | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Services:
    """Wire every component from one settings object. Transports default to the real providers."""
    store = store or SqliteStore(settings.db_path)
    rate_limiter = SmsRateLimiter(settings=settings, store=store, clock=clock)
    sms_sender = SmsSender(
        transport=sms_transport or TwilioTransport(http_client, settings),
        settings=settings,
        sleep=sleep,
    )
    email = email_transport or ResendTransport(
        http_client,
        api_key=settings.resend_api_key,
        from_address=settings.email_from,
    )
    dispatcher = NotificationDispatcher(
        settings=settings,
        store=store,
        rate_limiter=rate_limiter,
        sms_sender=sms_sender,
        email_transport=email,
        clock=clock,
    )
    checker = MonitorChecker(
        settings=settings,
        store=store,
        http_client=http_client,
        dispatcher=dispatcher,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        http_client=http_client,
        rate_limiter=rate_limiter,
        sms_sender=sms_sender,
        dispatcher=dispatcher,
        checker=checker,
        cost_monitor=SmsCostMonitor(settings=settings, store=store, clock=clock),
        email_configured=email_transport is not None or bool(settings.resend_api_key),
    )


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def create_app(
    settings: WatchSettings | None = None,
    *,
    store: WatchStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    email_transport: EmailTransport | None = None,
    sms_transport: SmsTransport | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FastAPI:
    app = FastAPI(title="PageWatch", version="0.1.0")
    app.state.settings = settings or WatchSettings()
    app.state.services = None

    @app.on_event("startup")
    async def _startup() -> None:
        settings2: WatchSettings = app.state.settings
        client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings2.fetch_timeout_seconds))
        app.state.owns_http_client = http_client is None
        services = build_services(
            settings2,
            http_client=client,
            store=store,
            email_transport=email_transport,
            sms_transport=sms_transport,
            clock=clock,
            sleep=sleep,
        )
        if isinstance(services.store, SqliteStore):
            await asyncio.to_thread(services.store.ensure_schema)
        app.state.services = services
        logger.info(
            "PageWatch started",
            environment=settings2.environment,
            sms_configured=services.sms_sender.is_configured(),
            email_configured=services.email_configured,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        services: Services | None = app.state.services
        if services is not None and getattr(app.state, "owns_http_client", False):
            await services.http_client.aclose()

    def _services() -> Services:
        services: Services | None = app.state.services
        if services is None:
            raise HTTPException(status_code=503, detail="service_not_started")
        return services

    @app.exception_handler(StoreError)
    async def _store_error(_req: Any, exc: StoreError) -> JSONResponse:
        logger.error("Persistence failure", error=str(exc))
        return _error(500, "Internal server error")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        services = app.state.services
        out: dict[str, Any] = {"ok": True, "ts": utc_now().timestamp()}
        if services is not None:
            out["sms"] = services.sms_sender.health_status()
            out["email"] = {"configured": services.email_configured}
        return out

    @app.post("/api/monitors/check")
    async def api_check_monitor(req: CheckRequest, _auth: None = Depends(require_scheduler)) -> Any:
        services = _services()
        try:
            outcome = await services.checker.run_check(req.monitor_id, req.user_id)
        except CheckRejected as exc:
            logger.info("Check rejected", monitor_id=req.monitor_id, reason=str(exc))
            return _error(exc.status_code, str(exc))
        except Exception:
            logger.exception("Monitor check failed", monitor_id=req.monitor_id, user_id=req.user_id)
            return _error(500, "Internal server error")

        body = CheckResponse(
            success=outcome.success,
            status=outcome.status,
            response_time=outcome.response_time_ms,
            content_snippet=outcome.content_snippet,
            error=outcome.error,
            notifications=outcome.notification.to_dict(),
        )
        return body.model_dump(by_alias=True)

    @app.get("/api/webhooks/sms-status")
    async def api_sms_status_ping() -> dict[str, Any]:
        return {"message": "SMS status webhook endpoint", "timestamp": utc_now().isoformat()}

    @app.post("/api/webhooks/sms-status")
    async def api_sms_status(request: Request) -> Any:
        services = _services()
        signature = request.headers.get("x-twilio-signature", "")
        if not signature:
            logger.warning("SMS webhook request missing provider signature")
            return _error(400, "Missing signature")

        form = await request.form()
        params = [(k, str(v)) for k, v in form.multi_items()]
        signed_url = services.settings.twilio_webhook_url or str(request.url)
        if not signature_is_valid(
            signature, auth_token=services.settings.twilio_auth_token, url=signed_url, params=params
        ):
            logger.warning("SMS webhook request has invalid signature", url=signed_url)
            return _error(401, "Invalid signature")

        message_sid = str(form.get("MessageSid") or "")
        message_status = str(form.get("MessageStatus") or "")
        if not message_sid or not message_status:
            return _error(400, "Missing required webhook data")
        if message_status not in PROVIDER_STATUSES:
            return _error(400, f"Invalid MessageStatus: {message_status}")

        account_sid = str(form.get("AccountSid") or "")
        expected = services.settings.twilio_account_sid
        if not expected or not hmac.compare_digest(account_sid.encode(), expected.encode()):
            logger.warning("Webhook from unknown provider account", account_sid=account_sid)
            return _error(403, "Invalid account")

        error_code = str(form.get("ErrorCode") or "") or None
        error_message = str(form.get("ErrorMessage") or "") or None
        await apply_delivery_status(
            services.store,
            message_id=message_sid,
            provider_status=message_status,
            error_code=error_code,
            error_message=error_message,
            now=clock(),
        )
        if not services.settings.is_production:
            logger.info(
                "SMS status update received",
                message_id=message_sid,
                status=message_status,
                to=mask_phone(str(form.get("To") or "")),
            )
        return {"success": True}

    @app.get("/api/admin/sms-costs")
    async def api_sms_costs(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        monitor = _services().cost_monitor
        stats = await monitor.get_system_cost_stats()
        alerts = await monitor.get_users_exceeding_limits()
        projections = []
        for user in stats.top_users[:PROJECTION_USERS]:
            projection = await monitor.get_cost_projection(user.user_id)
            if projection is not None:
                projections.append(projection.to_dict())
        logger.info(
            "Admin SMS costs retrieved",
            active_users=stats.active_users,
            total_cost_usd=round(stats.total_monthly_cost_usd, 4),
            alert_count=len(alerts),
        )
        return {
            "system_stats": stats.to_dict(),
            "alerts": [a.to_dict() for a in alerts],
            "projections": projections,
            "timestamp": utc_now().isoformat(),
        }

    @app.post("/api/admin/sms-costs")
    async def api_sms_costs_action(
        payload: dict[str, Any] = Body(...), _auth: None = Depends(require_admin)
    ) -> Any:
        try:
            action = AdminCostAction.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            message = str(first.get("msg") or "Invalid request").removeprefix("Value error, ")
            return _error(400, message, valid_actions=list(ADMIN_ACTIONS))

        monitor = _services().cost_monitor
        now = utc_now().isoformat()
        if action.action == "reset-monthly-costs":
            logger.info("Admin initiated monthly cost reset")
            count = await monitor.reset_monthly_costs()
            return {
                "success": True,
                "message": f"Reset monthly costs for {count} users",
                "reset_count": count,
                "timestamp": now,
            }

        user_id = str(action.user_id or "").strip()
        if action.action == "check-user-alert":
            alert = await monitor.check_user_cost_alert(user_id)
            if alert is not None:
                monitor.log_cost_alert(alert)
            return {
                "success": True,
                "user_id": user_id,
                "alert": alert.to_dict() if alert else None,
                "timestamp": now,
            }

        projection = await monitor.get_cost_projection(user_id)
        return {
            "success": True,
            "user_id": user_id,
            "projection": projection.to_dict() if projection else None,
            "timestamp": now,
        }

    @app.get("/api/admin/sms-usage/{user_id}")
    async def api_sms_usage(user_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        limiter = _services().rate_limiter
        usage = await limiter.usage_stats(user_id)
        return {"usage": usage.to_dict(), "limits": await limiter.rate_limit_status(user_id)}

    @app.get("/api/notifications/stats")
    async def api_notification_stats(
        user_id: str = Query(..., min_length=1),
        timeframe: str = Query("day"),
        _auth: None = Depends(require_admin),
    ) -> Any:
        if timeframe not in STATS_TIMEFRAMES:
            return _error(400, f"timeframe must be one of: {', '.join(STATS_TIMEFRAMES)}")
        stats = await notification_stats(_services().store, user_id, timeframe=timeframe, now=clock())
        return {
            "user_id": user_id,
            "timeframe": timeframe,
            "total": stats.total,
            "successful": stats.successful,
            "failed": stats.failed,
            "by_channel": stats.by_channel,
        }

    return app
