from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from site_checks.models import POLICY_ALL, POLICY_OWNER, ROLE_OWNER, Member, Organization


DEFAULT_ORG_NAME = "Organization"


@dataclass(frozen=True)
class Recipients:
    emails: list[str]
    org_name: str
    policy: str

    @property
    def count(self) -> int:
        return len(self.emails)

    def __bool__(self) -> bool:
        return bool(self.emails)


def normalize_policy(value: str | None) -> str:
    s = str(value or "").strip().lower()
    return POLICY_OWNER if s == POLICY_OWNER else POLICY_ALL


def unique_emails(values: Iterable[str | None]) -> list[str]:
    """
    Trim + lower-case + dedupe, first-seen order kept.
    """
    seen: set[str] = set()
    out: list[str] = []
    for raw in values:
        v = str(raw or "").strip().lower()
        if not v or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def resolve_recipients(
    org: Organization | None,
    members: Iterable[Member],
    *,
    admin_copy: str = "",
) -> Recipients:
    policy = normalize_policy(org.alert_recipients if org else None)
    audience = [m for m in members if policy == POLICY_ALL or m.role == ROLE_OWNER]
    extra = org.alert_extra_emails if org else []
    emails = unique_emails(
        [*(m.email for m in audience), *extra, *([admin_copy] if admin_copy else [])]
    )
    org_name = (org.name if org else "") or DEFAULT_ORG_NAME
    return Recipients(emails=emails, org_name=org_name, policy=policy)
