from __future__ import annotations

import math
from typing import Iterable

from site_checks.models import Monitor


def minutes_since(ts: float | None, *, now_ts: float) -> float:
    if ts is None:
        return math.inf
    return (float(now_ts) - float(ts)) / 60.0


def effective_interval_minutes(
    monitor: Monitor,
    *,
    min_interval_minutes: int = 5,
    default_interval_minutes: int = 60,
) -> int:
    interval = int(monitor.interval_minutes or 0) or int(default_interval_minutes)
    return max(int(min_interval_minutes), interval)


def is_due(
    monitor: Monitor,
    *,
    now_ts: float,
    min_interval_minutes: int = 5,
    default_interval_minutes: int = 60,
) -> bool:
    if not monitor.active:
        return False
    interval = effective_interval_minutes(
        monitor,
        min_interval_minutes=min_interval_minutes,
        default_interval_minutes=default_interval_minutes,
    )
    return minutes_since(monitor.last_checked_at_ts, now_ts=now_ts) >= interval


def select_due(
    monitors: Iterable[Monitor],
    *,
    now_ts: float,
    max_checks: int,
    min_interval_minutes: int = 5,
    default_interval_minutes: int = 60,
) -> list[Monitor]:
    """
    Snapshot of monitors to probe in one run, in input order, capped at max_checks.
    """
    cap = max(0, int(max_checks))
    if cap <= 0:
        return []

    due: list[Monitor] = []
    for monitor in monitors:
        if not is_due(
            monitor,
            now_ts=now_ts,
            min_interval_minutes=min_interval_minutes,
            default_interval_minutes=default_interval_minutes,
        ):
            continue
        due.append(monitor)
        if len(due) >= cap:
            break
    return due
