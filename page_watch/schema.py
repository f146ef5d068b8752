from __future__ import annotations

import re
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from page_watch.models import CHANNEL_EMAIL, CHANNEL_SMS, Monitor, NotificationChannel


E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ADMIN_ACTIONS = ("reset-monthly-costs", "check-user-alert", "get-user-projection")


class ApiError(BaseModel):
    error: str
    details: dict[str, Any] | None = None


class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    monitor_id: str = Field(..., alias="monitorId", min_length=1, max_length=200)
    user_id: str = Field(..., alias="userId", min_length=1, max_length=200)


class CheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status: str
    response_time: int = Field(..., alias="responseTime")
    content_snippet: str | None = Field(None, alias="contentSnippet")
    error: str | None = None
    notifications: dict[str, Any] | None = None


class ChannelConfig(BaseModel):
    type: Literal["email", "sms"]
    address: str = Field(..., min_length=1, max_length=320)

    @model_validator(mode="after")
    def _check_address(self) -> "ChannelConfig":
        address = self.address.strip()
        if self.type == CHANNEL_EMAIL and not EMAIL_RE.match(address):
            raise ValueError("Email channel requires a valid email address")
        if self.type == CHANNEL_SMS and not E164_RE.match(address):
            raise ValueError("SMS channel requires a phone number in E.164 format (e.g. +14155552671)")
        self.address = address
        return self


class MonitorConfig(BaseModel):
    """User-supplied monitor definition, as accepted by `seed` and the dashboard."""

    id: str | None = Field(None, max_length=200)
    user_id: str = Field(..., min_length=1, max_length=200)
    name: str = Field(..., min_length=1, max_length=100)
    url: str = Field(..., min_length=1, max_length=2000)
    pattern: str = Field(..., min_length=1, max_length=500)
    pattern_type: Literal["contains", "not_contains", "regex"] = "contains"
    check_interval: int = Field(300, ge=60, le=86400)
    is_active: bool = True
    notification_channels: list[ChannelConfig] = Field(..., min_length=1, max_length=5)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name must not be blank")
        return v.strip()

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("URL must be an absolute http(s) URL")
        return v.strip()

    @model_validator(mode="after")
    def _regex_compiles(self) -> "MonitorConfig":
        if self.pattern_type == "regex":
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex pattern: {e}") from e
        return self

    def to_monitor(self) -> Monitor:
        return Monitor(
            id=self.id or "",
            user_id=self.user_id,
            name=self.name,
            url=self.url,
            pattern=self.pattern,
            pattern_type=self.pattern_type,
            check_interval=self.check_interval,
            is_active=self.is_active,
            notification_channels=tuple(
                NotificationChannel(type=c.type, address=c.address) for c in self.notification_channels
            ),
        )


class AdminCostAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(..., min_length=1, max_length=60)
    user_id: str | None = Field(None, alias="userId", max_length=200)

    @model_validator(mode="after")
    def _check_action(self) -> "AdminCostAction":
        if self.action not in ADMIN_ACTIONS:
            raise ValueError(f"Unknown action: {self.action}")
        if self.action != "reset-monthly-costs" and not (self.user_id or "").strip():
            raise ValueError(f"Missing required field: userId for {self.action} action")
        return self
