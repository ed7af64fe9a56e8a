from __future__ import annotations

from typing import Iterable

from site_checks.models import ROLE_OWNER, Member


PLAN_RANKS = {"standard": 1, "pro": 2, "ultra": 3}


def plan_rank(plan: str | None) -> int:
    return PLAN_RANKS.get(str(plan or "").strip().lower(), 0)


def org_plan(members: Iterable[Member]) -> str | None:
    """
    Highest plan held by an owner with access. Invited members never raise the tier.
    """
    best: str | None = None
    for m in members:
        if m.role != ROLE_OWNER or m.access_blocked:
            continue
        if plan_rank(m.plan) > plan_rank(best):
            best = str(m.plan).strip().lower()
    return best


def has_plan(members: Iterable[Member], required_plan: str) -> bool:
    required = plan_rank(required_plan)
    if required <= 0:
        raise ValueError(f"Unknown plan: {required_plan!r}")
    return plan_rank(org_plan(members)) >= required


MONITOR_QUOTAS = {"standard": 3, "pro": 50, "ultra": 300}


def monitor_quota(plan: str | None) -> int:
    return MONITOR_QUOTAS.get(str(plan or "").strip().lower(), 0)
