from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, tzinfo
from typing import Any, AsyncIterator, Callable, Iterator

import httpx

from site_checks import db as dbm
from site_checks.alerting import AlertState, next_alert_state
from site_checks.config import MonitoringConfig
from site_checks.due import select_due
from site_checks.http_check import check_url_once, safe_url
from site_checks.mailer import Mailer, OutgoingEmail, deliver
from site_checks.models import STATUS_DOWN, Monitor
from site_checks.plans import has_plan
from site_checks.recipients import resolve_recipients
from site_checks.reliability import ReliabilityReport, build_reliability_report
from site_checks.reports import (
    DailyDigest,
    compose_alert,
    compose_daily_digest,
    compose_monthly_report,
    compose_trial_ended,
    load_timezone,
)


LOGGER = logging.getLogger("site-monitoring")

LEASE_CHECKS = "checks"
LEASE_DAILY = "daily"
LEASE_MONTHLY = "monthly"
LEASE_TRIALS = "trials"


@dataclass
class CheckRunSummary:
    active: int = 0
    due: int = 0
    checked: int = 0
    down: int = 0
    alerts_sent: int = 0
    alert_failures: int = 0
    alert_state_conflicts: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReportRunSummary:
    kind: str
    orgs_considered: int = 0
    sent: int = 0
    already_sent: int = 0
    not_eligible: int = 0
    no_recipients: int = 0
    no_sites: int = 0
    failures: int = 0
    skipped: bool = False
    active_subscriptions: int | None = None
    external_reachable: bool | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrialSweepSummary:
    expired: int = 0
    blocked: int = 0
    notified: int = 0
    failures: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _clock(now_ts: float | None) -> Callable[[], float]:
    if now_ts is not None:
        fixed = float(now_ts)
        return lambda: fixed
    return time.time


@contextmanager
def job_lease(db_path: str, *, name: str, ttl_seconds: float) -> Iterator[bool]:
    holder = dbm.new_lease_holder()
    acquired = dbm.acquire_lease(db_path, name=name, holder=holder, ttl_seconds=ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            dbm.release_lease(db_path, name=name, holder=holder)


@asynccontextmanager
async def _client_scope(http_client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient(headers={"User-Agent": "site-monitoring/0.1"}) as client:
        yield client


def daily_marker_key(org_id: str, *, now_ts: float, tz: tzinfo) -> str:
    day = datetime.fromtimestamp(float(now_ts), tz).strftime("%Y-%m-%d")
    return f"daily:{day}:{org_id}"


def monthly_marker_key(org_id: str, *, now_ts: float, tz: tzinfo) -> str:
    month = datetime.fromtimestamp(float(now_ts), tz).strftime("%Y-%m")
    return f"monthly:{month}:{org_id}"


# --- Check run ---


async def run_checks(
    config: MonitoringConfig,
    *,
    mailer: Mailer,
    http_client: httpx.AsyncClient | None = None,
    now_ts: float | None = None,
) -> CheckRunSummary:
    db_path = config.db_path
    dbm.ensure_schema(db_path)
    clock = _clock(now_ts)
    summary = CheckRunSummary()

    with job_lease(db_path, name=LEASE_CHECKS, ttl_seconds=config.lease_seconds) as acquired:
        if not acquired:
            LOGGER.warning("Previous check run still holds the lease; skipping this run")
            summary.skipped = True
            return summary

        cfg = config.checks
        active = dbm.list_active_monitors(db_path, limit=cfg.max_active_monitors)
        due = select_due(
            active,
            now_ts=clock(),
            max_checks=cfg.max_checks_per_run,
            min_interval_minutes=cfg.min_interval_minutes,
            default_interval_minutes=cfg.default_interval_minutes,
        )
        summary.active = len(active)
        summary.due = len(due)
        LOGGER.info("Monitors active=%s due=%s max=%s", len(active), len(due), cfg.max_checks_per_run)

        tz = load_timezone(config.timezone)
        async with _client_scope(http_client) as client:
            for monitor in due:
                await _check_monitor(config, monitor, client=client, mailer=mailer, clock=clock, tz=tz, summary=summary)

    LOGGER.info(
        "Check run finished checked=%s down=%s alerts_sent=%s alert_failures=%s",
        summary.checked,
        summary.down,
        summary.alerts_sent,
        summary.alert_failures,
    )
    return summary


async def _check_monitor(
    config: MonitoringConfig,
    monitor: Monitor,
    *,
    client: httpx.AsyncClient,
    mailer: Mailer,
    clock: Callable[[], float],
    tz: tzinfo,
    summary: CheckRunSummary,
) -> None:
    db_path = config.db_path
    result = await check_url_once(client, monitor.url, timeout_seconds=config.checks.http_timeout_seconds)
    checked_at = clock()

    dbm.update_monitor_check(db_path, monitor_id=monitor.id, status=result.status, checked_at_ts=checked_at)
    dbm.insert_monitor_log(
        db_path,
        org_id=monitor.org_id,
        monitor_id=monitor.id,
        url=monitor.url,
        status=result.status,
        http_status=result.http_status,
        response_time_ms=float(result.response_time_ms),
        error=result.error,
        checked_at_ts=checked_at,
    )
    summary.checked += 1
    if result.status == STATUS_DOWN:
        summary.down += 1
    LOGGER.info(
        "Checked monitor id=%s url=%s status=%s http=%s ms=%s",
        monitor.id,
        safe_url(monitor.url),
        result.status,
        result.http_status,
        result.response_time_ms,
    )

    state = AlertState.of(monitor)
    state_after, alert = next_alert_state(
        state,
        new_status=result.status,
        now_ts=checked_at,
        cooldown_minutes=config.checks.alert_cooldown_minutes,
    )
    if not alert:
        return

    org = dbm.get_org(db_path, org_id=monitor.org_id)
    members = dbm.list_members(db_path, org_id=monitor.org_id)
    recipients = resolve_recipients(org, members, admin_copy=config.admin_copy_email)
    if not recipients:
        LOGGER.info("No recipients for org=%s; alert not sent monitor=%s", monitor.org_id, monitor.id)
        return

    notification = compose_alert(
        brand_name=config.brand_name,
        recipients=recipients,
        monitor_url=monitor.url,
        result=result,
        checked_at_ts=checked_at,
        tz=tz,
    )
    sent = await deliver(mailer, OutgoingEmail.from_notification(recipients.emails, notification))
    if not sent:
        summary.alert_failures += 1
        return

    recorded = dbm.record_alert(
        db_path,
        monitor_id=monitor.id,
        status=state_after.status,
        alerted_at_ts=state_after.alerted_at_ts,
        expected_last_alert_at_ts=state.alerted_at_ts,
    )
    summary.alerts_sent += 1
    if not recorded:
        LOGGER.warning("Alert state changed concurrently; not overwriting monitor=%s", monitor.id)
        summary.alert_state_conflicts += 1


# --- Daily digest ---


async def run_daily_digest(
    config: MonitoringConfig,
    *,
    mailer: Mailer,
    now_ts: float | None = None,
) -> ReportRunSummary:
    db_path = config.db_path
    dbm.ensure_schema(db_path)
    now = float(now_ts) if now_ts is not None else time.time()
    tz = load_timezone(config.timezone)
    cfg = config.daily
    summary = ReportRunSummary(kind="daily")

    with job_lease(db_path, name=LEASE_DAILY, ttl_seconds=config.lease_seconds) as acquired:
        if not acquired:
            LOGGER.warning("Daily digest already running elsewhere; skipping")
            summary.skipped = True
            return summary

        window_start = now - float(cfg.down_event_window_hours) * 3600.0
        trials_until = now + float(cfg.trial_warning_hours) * 3600.0

        for org in dbm.list_orgs(db_path):
            summary.orgs_considered += 1
            key = daily_marker_key(org.id, now_ts=now, tz=tz)
            if dbm.has_cron_run(db_path, key=key):
                summary.already_sent += 1
                continue

            recipients = resolve_recipients(
                org, dbm.list_members(db_path, org_id=org.id), admin_copy=config.admin_copy_email
            )
            if not recipients:
                summary.no_recipients += 1
                continue

            digest = DailyDigest(
                generated_at_ts=now,
                total_users=dbm.count_members(db_path, org_id=org.id),
                blocked_users=dbm.count_members(db_path, org_id=org.id, access_blocked=True),
                down_monitors=dbm.list_down_monitors(db_path, org_id=org.id, limit=cfg.max_listed),
                down_events=dbm.list_monitor_logs(
                    db_path, org_id=org.id, since_ts=window_start, status=STATUS_DOWN, limit=cfg.max_listed
                ),
                down_events_total=dbm.count_monitor_logs(
                    db_path, org_id=org.id, since_ts=window_start, status=STATUS_DOWN
                ),
                expiring_trials=dbm.list_trials_ending(
                    db_path, org_id=org.id, since_ts=window_start, until_ts=trials_until, limit=cfg.max_listed
                ),
                window_hours=cfg.down_event_window_hours,
            )
            notification = compose_daily_digest(
                brand_name=config.brand_name, recipients=recipients, digest=digest, tz=tz
            )
            if not await deliver(mailer, OutgoingEmail.from_notification(recipients.emails, notification)):
                summary.failures += 1
                continue
            dbm.mark_cron_run(db_path, key=key)
            summary.sent += 1

    LOGGER.info("Daily digest finished %s", summary.as_dict())
    return summary


# --- Monthly reliability report ---


async def _probe_reachability(
    config: MonitoringConfig, client: httpx.AsyncClient | None
) -> bool | None:
    url = (config.monthly.reachability_probe_url or "").strip()
    if not url:
        return None
    async with _client_scope(client) as c:
        result = await check_url_once(c, url, timeout_seconds=config.checks.http_timeout_seconds)
    if not result.ok:
        LOGGER.warning("External reachability probe failed url=%s error=%s", url, result.error)
    return result.ok


async def run_monthly_reports(
    config: MonitoringConfig,
    *,
    mailer: Mailer,
    now_ts: float | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ReportRunSummary:
    db_path = config.db_path
    dbm.ensure_schema(db_path)
    now = float(now_ts) if now_ts is not None else time.time()
    tz = load_timezone(config.timezone)
    cfg = config.monthly
    summary = ReportRunSummary(kind="monthly")

    with job_lease(db_path, name=LEASE_MONTHLY, ttl_seconds=config.lease_seconds) as acquired:
        if not acquired:
            LOGGER.warning("Monthly report already running elsewhere; skipping")
            summary.skipped = True
            return summary

        summary.active_subscriptions = dbm.count_members(db_path, subscription_status="active")
        summary.external_reachable = await _probe_reachability(config, http_client)

        since = now - float(cfg.range_days) * 86400.0
        for org_id in dbm.distinct_log_org_ids(db_path, since_ts=since):
            org = dbm.get_org(db_path, org_id=org_id)
            if org is None:
                continue
            summary.orgs_considered += 1

            members = dbm.list_members(db_path, org_id=org.id)
            if not has_plan(members, cfg.required_plan):
                summary.not_eligible += 1
                continue

            key = monthly_marker_key(org.id, now_ts=now, tz=tz)
            if dbm.has_cron_run(db_path, key=key):
                summary.already_sent += 1
                continue

            recipients = resolve_recipients(org, members, admin_copy=config.admin_copy_email)
            if not recipients:
                summary.no_recipients += 1
                continue

            report = build_reliability_report(
                org.id,
                dbm.list_monitor_logs(db_path, org_id=org.id, since_ts=since),
                generated_at_ts=now,
                range_days=cfg.range_days,
                rules=config.scoring,
            )
            if not report.sites:
                summary.no_sites += 1
                continue
            notification = compose_monthly_report(
                brand_name=config.brand_name, recipients=recipients, report=report, tz=tz
            )
            if not await deliver(mailer, OutgoingEmail.from_notification(recipients.emails, notification)):
                summary.failures += 1
                continue
            dbm.mark_cron_run(db_path, key=key)
            summary.sent += 1

    LOGGER.info("Monthly report finished %s", summary.as_dict())
    return summary


def compute_org_report(config: MonitoringConfig, *, org_id: str, now_ts: float | None = None) -> ReliabilityReport:
    now = float(now_ts) if now_ts is not None else time.time()
    since = now - float(config.monthly.range_days) * 86400.0
    return build_reliability_report(
        org_id,
        dbm.list_monitor_logs(config.db_path, org_id=org_id, since_ts=since),
        generated_at_ts=now,
        range_days=config.monthly.range_days,
        rules=config.scoring,
    )


# --- Trial expiry ---


async def run_trial_expiry(
    config: MonitoringConfig,
    *,
    mailer: Mailer,
    now_ts: float | None = None,
) -> TrialSweepSummary:
    db_path = config.db_path
    dbm.ensure_schema(db_path)
    now = float(now_ts) if now_ts is not None else time.time()
    summary = TrialSweepSummary()

    with job_lease(db_path, name=LEASE_TRIALS, ttl_seconds=config.lease_seconds) as acquired:
        if not acquired:
            LOGGER.warning("Trial sweep already running elsewhere; skipping")
            summary.skipped = True
            return summary

        expired = dbm.list_expired_trials(db_path, now_ts=now)
        summary.expired = len(expired)
        notification = compose_trial_ended(brand_name=config.brand_name)
        for member in expired:
            if not dbm.block_member(db_path, member_id=member.id):
                continue
            summary.blocked += 1
            LOGGER.info("Trial ended; access blocked member=%s org=%s", member.id, member.org_id)

            email = member.email.strip().lower()
            if not email:
                continue
            if await deliver(mailer, OutgoingEmail.from_notification([email], notification)):
                summary.notified += 1
            else:
                summary.failures += 1

    LOGGER.info("Trial sweep finished %s", summary.as_dict())
    return summary
