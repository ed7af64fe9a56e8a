from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any
from urllib.parse import urlsplit

from fastapi import Depends, FastAPI, HTTPException

from site_checks import db as dbm
from site_checks.config import ConfigError, MonitoringConfig, ensure_job_ready, load_config
from site_checks.jobs import ReportRunSummary, compute_org_report, run_monthly_reports
from site_checks.mailer import Mailer, SmtpMailer
from site_checks.models import POLICY_ALL, POLICY_OWNER, Organization
from site_checks.plans import has_plan, monitor_quota, org_plan
from site_checks.recipients import unique_emails
from site_registry.auth import require_admin, require_cron_key
from site_registry.schema import (
    CreateMemberRequest,
    CreateMonitorRequest,
    CreateOrgRequest,
    MonitorSettingsRequest,
)
from site_registry.settings import RegistrySettings


LOGGER = logging.getLogger("site-registry")


def _normalize_policy_strict(value: str) -> str:
    s = str(value or POLICY_ALL).strip().lower()
    if s not in (POLICY_ALL, POLICY_OWNER):
        raise HTTPException(status_code=400, detail="invalid_alert_recipients")
    return s


def _clean_extra_emails(values: list[str], *, limit: int) -> list[str]:
    return unique_emails(values)[: max(0, int(limit))]


def _validate_monitor_url(url: str) -> str:
    s = str(url or "").strip()
    # urlsplit drops tab, CR and LF instead of rejecting them.
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in s):
        raise HTTPException(status_code=400, detail="invalid_url")
    try:
        parts = urlsplit(s)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_url")
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise HTTPException(status_code=400, detail="invalid_url")
    return s


def _run_monthly_reports_blocking(config: MonitoringConfig, mailer: Mailer) -> ReportRunSummary:
    return asyncio.run(run_monthly_reports(config, mailer=mailer))


def _org_settings(org: Organization) -> dict[str, Any]:
    return {"alert_recipients": org.alert_recipients, "alert_extra_emails": list(org.alert_extra_emails)}


def create_app(settings: RegistrySettings | None = None, *, mailer: Mailer | None = None) -> FastAPI:
    app = FastAPI(title="Site Monitoring Registry", version="0.1.0")
    app.state.settings = settings or RegistrySettings()
    app.state.mailer = mailer

    @app.on_event("startup")
    def _startup() -> None:
        dbm.ensure_schema(app.state.settings.db_path)

    def _db_path() -> str:
        return app.state.settings.db_path

    def _job_config() -> MonitoringConfig:
        s: RegistrySettings = app.state.settings
        try:
            config = load_config(s.monitor_config_path)
        except ConfigError as e:
            LOGGER.error("Monitoring config invalid: %s", e)
            raise HTTPException(status_code=503, detail="monitor_config_invalid")
        return config.model_copy(update={"db_path": s.db_path})

    async def _require_org(org_id: str) -> Organization:
        org = await asyncio.to_thread(dbm.get_org, _db_path(), org_id=org_id)
        if org is None:
            raise HTTPException(status_code=404, detail="org_not_found")
        return org

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    # --- Admin ---

    @app.post("/api/v1/admin/orgs")
    async def api_create_org(_auth: None = Depends(require_admin), req: CreateOrgRequest | None = None) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        policy = _normalize_policy_strict(req.alert_recipients)
        extra = _clean_extra_emails(req.alert_extra_emails, limit=app.state.settings.max_extra_emails)
        org = await asyncio.to_thread(
            dbm.create_org, _db_path(), name=req.name, alert_recipients=policy, alert_extra_emails=extra
        )
        return {"ok": True, "org": asdict(org)}

    @app.post("/api/v1/admin/orgs/{org_id}/members")
    async def api_create_member(
        org_id: str, _auth: None = Depends(require_admin), req: CreateMemberRequest | None = None
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        await _require_org(org_id)
        email = req.email.strip().lower()
        if "@" not in email:
            raise HTTPException(status_code=400, detail="invalid_email")
        member = await asyncio.to_thread(
            dbm.create_member,
            _db_path(),
            org_id=org_id,
            email=email,
            role=req.role,
            plan=req.plan,
            subscription_status=req.subscription_status,
            has_trial=req.has_trial,
            trial_ends_at_ts=req.trial_ends_at_ts,
            access_blocked=req.access_blocked,
        )
        return {"ok": True, "member": asdict(member)}

    @app.post("/api/v1/admin/orgs/{org_id}/monitors")
    async def api_create_monitor(
        org_id: str, _auth: None = Depends(require_admin), req: CreateMonitorRequest | None = None
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        await _require_org(org_id)
        url = _validate_monitor_url(req.url)

        if req.active:
            members = await asyncio.to_thread(dbm.list_members, _db_path(), org_id=org_id)
            quota = monitor_quota(org_plan(members))
            used = await asyncio.to_thread(dbm.count_monitors, _db_path(), org_id=org_id)
            if used >= quota:
                raise HTTPException(status_code=403, detail="monitor_quota_exceeded")

        monitor = await asyncio.to_thread(
            dbm.create_monitor,
            _db_path(),
            org_id=org_id,
            url=url,
            interval_minutes=req.interval_minutes,
            active=req.active,
        )
        return {"ok": True, "monitor": asdict(monitor)}

    # --- Org settings and reports ---

    @app.get("/api/v1/orgs/{org_id}/monitor-settings")
    async def api_get_monitor_settings(org_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        org = await _require_org(org_id)
        return {"ok": True, "settings": _org_settings(org)}

    @app.post("/api/v1/orgs/{org_id}/monitor-settings")
    async def api_update_monitor_settings(
        org_id: str, _auth: None = Depends(require_admin), req: MonitorSettingsRequest | None = None
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        await _require_org(org_id)
        policy = _normalize_policy_strict(req.alert_recipients)
        extra = _clean_extra_emails(req.alert_extra_emails, limit=app.state.settings.max_extra_emails)
        await asyncio.to_thread(
            dbm.update_org_alert_settings, _db_path(), org_id=org_id, alert_recipients=policy, alert_extra_emails=extra
        )
        return {"ok": True, "settings": {"alert_recipients": policy, "alert_extra_emails": extra}}

    @app.get("/api/v1/orgs/{org_id}/monitoring/monthly-report")
    async def api_monthly_report(org_id: str, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        org = await _require_org(org_id)
        config = await asyncio.to_thread(_job_config)
        members = await asyncio.to_thread(dbm.list_members, _db_path(), org_id=org.id)
        if not has_plan(members, config.monthly.required_plan):
            raise HTTPException(status_code=403, detail="plan_required")
        report = await asyncio.to_thread(compute_org_report, config, org_id=org.id)
        return {"ok": True, "report": report.as_dict()}

    # --- Cron trigger ---

    @app.post("/api/cron/monitoring/monthly-report")
    async def api_cron_monthly_report(_auth: None = Depends(require_cron_key)) -> dict[str, Any]:
        config = await asyncio.to_thread(_job_config)
        job_mailer: Mailer | None = app.state.mailer
        if job_mailer is None:
            try:
                ensure_job_ready(config, needs_mail=True)
            except ConfigError as e:
                LOGGER.error("Monthly report trigger refused: %s", e)
                raise HTTPException(status_code=503, detail="mail_not_configured")
            job_mailer = SmtpMailer(config.smtp)

        # Blocking sqlite calls; kept off the request loop.
        summary = await asyncio.to_thread(_run_monthly_reports_blocking, config, job_mailer)
        LOGGER.info("Monthly report triggered sent=%s failures=%s", summary.sent, summary.failures)
        return {"ok": True, "summary": summary.as_dict()}

    return app
