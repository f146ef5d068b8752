from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class FetchOutcome:
    ok: bool
    elapsed_ms: int
    status_code: int | None = None
    text: str | None = None
    error: str | None = None


async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    user_agent: str,
) -> FetchOutcome:
    """
    GET a page, never raising for routine failures.

    The whole request (connect + redirects + body) is hard-cancelled at
    timeout_seconds; httpx's own per-phase timeouts use the same bound.
    """
    started = time.perf_counter()

    def _elapsed() -> int:
        return int(round((time.perf_counter() - started) * 1000.0))

    try:
        resp = await asyncio.wait_for(
            client.get(
                url,
                headers={"User-Agent": user_agent},
                follow_redirects=True,
                timeout=timeout_seconds,
            ),
            timeout=timeout_seconds,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        return FetchOutcome(ok=False, elapsed_ms=_elapsed(), error="Request timeout")
    except httpx.RequestError as e:
        return FetchOutcome(ok=False, elapsed_ms=_elapsed(), error=f"Network error: {type(e).__name__}: {e}")

    elapsed = _elapsed()
    if not resp.is_success:
        reason = (resp.reason_phrase or "").strip()
        return FetchOutcome(
            ok=False,
            elapsed_ms=elapsed,
            status_code=resp.status_code,
            error=f"HTTP {resp.status_code}: {reason}" if reason else f"HTTP {resp.status_code}",
        )

    return FetchOutcome(ok=True, elapsed_ms=elapsed, status_code=resp.status_code, text=resp.text or "")
