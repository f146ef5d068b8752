from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from page_watch.settings import WatchSettings


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def _token_matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.strip().encode("utf-8"), expected.strip().encode("utf-8"))


def get_settings(req: Request) -> WatchSettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, WatchSettings):
        raise RuntimeError("Watch settings not configured")
    return settings


def require_scheduler(req: Request, settings: WatchSettings = Depends(get_settings)) -> None:
    # Unset token means the check endpoint is only reachable from a trusted network.
    if not settings.scheduler_token:
        return
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not _token_matches(token, settings.scheduler_token):
        raise HTTPException(status_code=403, detail="invalid_scheduler_token")


def require_admin(req: Request, settings: WatchSettings = Depends(get_settings)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not _token_matches(token, settings.admin_token):
        raise HTTPException(status_code=403, detail="invalid_admin_token")
