from __future__ import annotations

from pydantic import BaseModel, Field

from site_checks.models import ROLE_MEMBER, ROLE_OWNER


class CreateOrgRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    alert_recipients: str = Field("all", max_length=20)
    alert_extra_emails: list[str] = Field(default_factory=list)


class CreateMemberRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    role: str = Field(ROLE_OWNER, pattern=f"^({ROLE_OWNER}|{ROLE_MEMBER})$")
    plan: str = Field("standard", pattern="^(standard|pro|ultra)$")
    subscription_status: str | None = Field(None, max_length=40)
    has_trial: bool = False
    trial_ends_at_ts: float | None = None
    access_blocked: bool = False


class CreateMonitorRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2000)
    interval_minutes: int = Field(60, ge=1, le=1440)
    active: bool = True


class MonitorSettingsRequest(BaseModel):
    alert_recipients: str = Field("all", max_length=20)
    alert_extra_emails: list[str] = Field(default_factory=list)
