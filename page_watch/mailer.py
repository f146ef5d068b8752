from __future__ import annotations

import html
from typing import Protocol

import httpx


RESEND_API_URL = "https://api.resend.com/emails"


class EmailDeliveryError(Exception):
    pass


class EmailTransport(Protocol):
    async def send(self, to: str, subject: str, html_body: str) -> str | None: ...


def text_to_html(text: str) -> str:
    return "<br>\n".join(html.escape(line) for line in (text or "").splitlines())


class ResendTransport:
    def __init__(self, client: httpx.AsyncClient, *, api_key: str, from_address: str) -> None:
        self.client = client
        self.api_key = api_key
        self.from_address = from_address

    async def send(self, to: str, subject: str, html_body: str) -> str | None:
        if not self.api_key:
            raise EmailDeliveryError("Email transport not configured (missing RESEND_API_KEY)")
        try:
            resp = await self.client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.from_address, "to": [to], "subject": subject, "html": html_body},
                timeout=20.0,
            )
        except httpx.RequestError as e:
            raise EmailDeliveryError(f"Email transport error: {type(e).__name__}: {e}") from e
        if not resp.is_success:
            detail = ""
            try:
                data = resp.json()
                if isinstance(data, dict):
                    detail = str(data.get("message") or "")
            except ValueError:
                detail = ""
            raise EmailDeliveryError(f"Email API error: HTTP {resp.status_code} {detail}".strip())
        try:
            data = resp.json()
        except ValueError:
            return None
        return str(data.get("id")) if isinstance(data, dict) and data.get("id") else None
