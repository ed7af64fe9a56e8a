from __future__ import annotations

from dataclasses import dataclass, field


STATUS_UP = "up"
STATUS_DOWN = "down"
STATUS_UNKNOWN = "unknown"

POLICY_ALL = "all"
POLICY_OWNER = "owner"

ROLE_OWNER = "owner"
ROLE_MEMBER = "member"


@dataclass(frozen=True)
class Organization:
    id: str
    name: str
    alert_recipients: str = POLICY_ALL  # owner|all
    alert_extra_emails: list[str] = field(default_factory=list)
    created_at_ts: float | None = None


@dataclass(frozen=True)
class Member:
    id: str
    org_id: str
    email: str
    role: str = ROLE_OWNER
    plan: str = "standard"
    subscription_status: str | None = None
    has_trial: bool = False
    trial_ends_at_ts: float | None = None
    access_blocked: bool = False


@dataclass(frozen=True)
class Monitor:
    id: str
    org_id: str
    url: str
    active: bool = True
    interval_minutes: int = 60
    last_checked_at_ts: float | None = None
    last_status: str = STATUS_UNKNOWN
    last_alert_status: str = STATUS_UNKNOWN
    last_alert_at_ts: float | None = None


@dataclass(frozen=True)
class MonitorLog:
    id: str
    org_id: str
    monitor_id: str
    url: str
    status: str  # up|down
    http_status: int
    response_time_ms: float | None
    error: str
    checked_at_ts: float
