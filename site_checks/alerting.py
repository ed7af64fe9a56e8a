from __future__ import annotations

from dataclasses import dataclass

from site_checks.due import minutes_since
from site_checks.models import STATUS_DOWN, STATUS_UNKNOWN, STATUS_UP, Monitor


DEFAULT_COOLDOWN_MINUTES = 180.0


@dataclass(frozen=True)
class AlertState:
    """Last *alerted* status of a monitor, not its last observed status."""

    status: str = STATUS_UNKNOWN
    alerted_at_ts: float | None = None

    @classmethod
    def of(cls, monitor: Monitor) -> "AlertState":
        return cls(status=normalize_alert_status(monitor.last_alert_status), alerted_at_ts=monitor.last_alert_at_ts)


def normalize_alert_status(value: str | None) -> str:
    s = str(value or "").strip().lower()
    if s in (STATUS_UP, STATUS_DOWN):
        return s
    return STATUS_UNKNOWN


def should_alert(
    *,
    last_alert_status: str | None,
    last_alert_at_ts: float | None,
    new_status: str,
    now_ts: float,
    cooldown_minutes: float = DEFAULT_COOLDOWN_MINUTES,
) -> bool:
    """
    unknown->up, unknown->down, up->down and down->up always alert.
    down->down alerts again once the cooldown has elapsed; up->up never alerts.
    """
    prev = normalize_alert_status(last_alert_status)
    new = normalize_alert_status(new_status)
    if new == STATUS_UNKNOWN:
        return False

    changed = prev != new
    if new == STATUS_DOWN:
        cooldown_ok = minutes_since(last_alert_at_ts, now_ts=now_ts) >= float(cooldown_minutes)
        return changed or cooldown_ok
    return changed


def next_alert_state(
    state: AlertState,
    *,
    new_status: str,
    now_ts: float,
    cooldown_minutes: float = DEFAULT_COOLDOWN_MINUTES,
) -> tuple[AlertState, bool]:
    """
    Returns (state_after, alerted). The state only moves when an alert is sent.
    """
    alerted = should_alert(
        last_alert_status=state.status,
        last_alert_at_ts=state.alerted_at_ts,
        new_status=new_status,
        now_ts=now_ts,
        cooldown_minutes=cooldown_minutes,
    )
    if not alerted:
        return state, False
    return AlertState(status=normalize_alert_status(new_status), alerted_at_ts=float(now_ts)), True
