from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

from site_checks.config import ScoringConfig
from site_checks.models import STATUS_DOWN, STATUS_UP, MonitorLog


@dataclass(frozen=True)
class SiteReliability:
    url: str
    total_checks: int
    up_checks: int
    down_checks: int
    uptime_pct: float
    avg_response_ms: float | None
    incidents: int
    score: int


@dataclass(frozen=True)
class OverallReliability:
    score: int
    uptime_pct: float
    avg_response_ms: float | None
    incidents: int
    sites_count: int
    total_checks: int


@dataclass(frozen=True)
class ReliabilityReport:
    org_id: str
    range_days: int
    generated_at_ts: float
    overall: OverallReliability
    sites: list[SiteReliability]

    def as_dict(self) -> dict:
        return {
            "org_id": self.org_id,
            "range_days": self.range_days,
            "generated_at_ts": self.generated_at_ts,
            "global": {
                "reliability_score": self.overall.score,
                "uptime_pct": round(self.overall.uptime_pct, 2),
                "avg_response_ms": _round_ms(self.overall.avg_response_ms),
                "incidents": self.overall.incidents,
                "sites_count": self.overall.sites_count,
                "total_checks": self.overall.total_checks,
            },
            "sites": [
                {
                    "url": s.url,
                    "total_checks": s.total_checks,
                    "uptime_pct": round(s.uptime_pct, 2),
                    "avg_response_ms": _round_ms(s.avg_response_ms),
                    "down_logs": s.down_checks,
                    "incidents": s.incidents,
                    "score": s.score,
                }
                for s in self.sites
            ],
        }


def _round_ms(value: float | None) -> int | None:
    return round_half_up(value) if value is not None else None


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def reliability_score(
    *,
    uptime_pct: float,
    incidents: int,
    avg_response_ms: float | None,
    rules: ScoringConfig | None = None,
) -> int:
    """
    uptime% minus an incident penalty (capped) minus a slow-response penalty scaled
    linearly between slow_response_ms and slow_response_full_ms; clamped to 0..100.
    """
    rules = rules or ScoringConfig()
    score = float(uptime_pct)
    score -= min(float(rules.incident_penalty_cap), int(incidents) * float(rules.incident_penalty_points))

    if avg_response_ms is not None and float(avg_response_ms) > float(rules.slow_response_ms):
        span = float(rules.slow_response_full_ms) - float(rules.slow_response_ms)
        if span <= 0:
            fraction = 1.0
        else:
            fraction = _clamp((float(avg_response_ms) - float(rules.slow_response_ms)) / span, 0.0, 1.0)
        score -= fraction * float(rules.slow_penalty_max)

    return round_half_up(_clamp(score, 0.0, 100.0))


def count_incidents(logs: Iterable[MonitorLog]) -> int:
    """
    Number of up->down transitions in time order: one outage counts once however
    many DOWN logs it spans.
    """
    ordered = sorted(logs, key=lambda log: float(log.checked_at_ts))
    incidents = 0
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.status == STATUS_UP and cur.status == STATUS_DOWN:
            incidents += 1
    return incidents


def _mean_response_ms(logs: list[MonitorLog]) -> float | None:
    values = [float(log.response_time_ms) for log in logs if log.response_time_ms is not None]
    if not values:
        return None
    return sum(values) / float(len(values))


def summarize_site(url: str, logs: list[MonitorLog], *, rules: ScoringConfig | None = None) -> SiteReliability:
    total = len(logs)
    up = sum(1 for log in logs if log.status == STATUS_UP)
    down = sum(1 for log in logs if log.status == STATUS_DOWN)
    uptime_pct = (up / float(total)) * 100.0 if total else 0.0
    avg_ms = _mean_response_ms(logs)
    incidents = count_incidents(logs)
    return SiteReliability(
        url=url,
        total_checks=total,
        up_checks=up,
        down_checks=down,
        uptime_pct=uptime_pct,
        avg_response_ms=avg_ms,
        incidents=incidents,
        score=reliability_score(uptime_pct=uptime_pct, incidents=incidents, avg_response_ms=avg_ms, rules=rules),
    )


def summarize_overall(sites: list[SiteReliability], *, rules: ScoringConfig | None = None) -> OverallReliability:
    """
    Check-count weighted uptime and latency across URLs, then the same formula.
    Not an average of per-URL scores.
    """
    total_checks = sum(s.total_checks for s in sites)
    uptime_pct = (
        sum(s.uptime_pct * s.total_checks for s in sites) / float(total_checks) if total_checks else 0.0
    )

    timed = [s for s in sites if s.avg_response_ms is not None and s.total_checks > 0]
    timed_checks = sum(s.total_checks for s in timed)
    avg_ms = (
        sum(float(s.avg_response_ms or 0.0) * s.total_checks for s in timed) / float(timed_checks)
        if timed_checks
        else None
    )

    incidents = sum(s.incidents for s in sites)
    return OverallReliability(
        score=reliability_score(uptime_pct=uptime_pct, incidents=incidents, avg_response_ms=avg_ms, rules=rules),
        uptime_pct=uptime_pct,
        avg_response_ms=avg_ms,
        incidents=incidents,
        sites_count=len(sites),
        total_checks=total_checks,
    )


def build_reliability_report(
    org_id: str,
    logs: Iterable[MonitorLog],
    *,
    generated_at_ts: float,
    range_days: int = 30,
    rules: ScoringConfig | None = None,
) -> ReliabilityReport:
    by_url: dict[str, list[MonitorLog]] = {}
    for log in logs:
        url = str(log.url or "").strip()
        if not url:
            continue
        by_url.setdefault(url, []).append(log)

    sites = [summarize_site(url, items, rules=rules) for url, items in by_url.items()]
    overall = summarize_overall(sites, rules=rules)
    # Stable sort: ties keep first-seen order.
    sites.sort(key=lambda s: s.score, reverse=True)

    return ReliabilityReport(
        org_id=org_id,
        range_days=int(range_days),
        generated_at_ts=float(generated_at_ts),
        overall=overall,
        sites=sites,
    )
