from __future__ import annotations

import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from site_checks import db as dbm
from site_checks.config import MonitoringConfig, MonthlyConfig, SmtpConfig
from site_checks.jobs import (
    daily_marker_key,
    monthly_marker_key,
    run_checks,
    run_daily_digest,
    run_monthly_reports,
    run_trial_expiry,
)
from site_checks.mailer import MailDeliveryError, OutgoingEmail, SmtpMailer
from site_checks.reports import load_timezone


T0 = 1_714_557_600.0  # 2024-05-01 10:00 UTC


class FakeMailer:
    def __init__(self, fail_for: set[str] | None = None):
        self.sent: list[OutgoingEmail] = []
        self.fail_for = set(fail_for or ())

    def send(self, email: OutgoingEmail) -> None:
        if self.fail_for & set(email.to):
            raise MailDeliveryError("SMTPRecipientsRefused: rejected")
        self.sent.append(email)


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        status = {"/ok": 200, "/down": 503}.get(self.path, 404)
        body = b"ok" if status == 200 else b"unavailable"
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def local_server_base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def _config(tmp_path: Path, **overrides) -> MonitoringConfig:
    base = {"db_path": str(tmp_path / "monitoring.db"), "brand_name": "Site Monitoring"}
    base.update(overrides)
    cfg = MonitoringConfig(**base)
    dbm.ensure_schema(cfg.db_path)
    return cfg


def _closed_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return int(port)


# --- Check run ---


@pytest.mark.asyncio
async def test_first_run_checks_logs_and_alerts(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="Owner@OrgA.io")
    dbm.create_member(cfg.db_path, org_id=org.id, email="dev@orga.io", role="member")
    url = f"{local_server_base_url}/ok"
    mon = dbm.create_monitor(cfg.db_path, org_id=org.id, url=url, interval_minutes=60)
    mailer = FakeMailer()

    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.active == 1
    assert summary.due == 1
    assert summary.checked == 1
    assert summary.down == 0
    assert summary.alerts_sent == 1
    assert summary.skipped is False

    loaded = dbm.get_monitor(cfg.db_path, monitor_id=mon.id)
    assert loaded.last_status == "up"
    assert loaded.last_checked_at_ts == T0
    assert loaded.last_alert_status == "up"
    assert loaded.last_alert_at_ts == T0

    logs = dbm.list_monitor_logs(cfg.db_path, org_id=org.id, since_ts=0.0)
    assert len(logs) == 1
    assert logs[0].status == "up"
    assert logs[0].http_status == 200
    assert logs[0].error == ""

    assert len(mailer.sent) == 1
    assert mailer.sent[0].to == ("owner@orga.io", "dev@orga.io")
    assert mailer.sent[0].subject == f"Site Monitoring UP - {url}"

    # Ten minutes later the monitor is not due again.
    again = await run_checks(cfg, mailer=mailer, now_ts=T0 + 600)
    assert again.due == 0
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_down_monitor_repeats_only_after_cooldown(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="owner@orga.io")
    dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/down", interval_minutes=5)
    mailer = FakeMailer()

    alerts = []
    for minutes in (0, 10, 20, 180):
        summary = await run_checks(cfg, mailer=mailer, now_ts=T0 + minutes * 60)
        assert summary.checked == 1
        assert summary.down == 1
        alerts.append(summary.alerts_sent)
    assert alerts == [1, 0, 0, 1]
    assert all("DOWN" in e.subject for e in mailer.sent)
    assert "Error: HTTP 503" in mailer.sent[0].text
    assert dbm.count_monitor_logs(cfg.db_path, org_id=org.id, since_ts=0.0, status="down") == 4


@pytest.mark.asyncio
async def test_no_recipients_means_no_alert_and_no_state_change(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A", alert_recipients="owner")
    dbm.create_member(cfg.db_path, org_id=org.id, email="dev@orga.io", role="member")
    mon = dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/ok")
    mailer = FakeMailer()

    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.checked == 1
    assert summary.alerts_sent == 0
    assert mailer.sent == []
    loaded = dbm.get_monitor(cfg.db_path, monitor_id=mon.id)
    assert loaded.last_status == "up"
    assert loaded.last_alert_status == "unknown"
    assert loaded.last_alert_at_ts is None


@pytest.mark.asyncio
async def test_admin_copy_is_added_to_alerts(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path, admin_copy_email="Admin@Monitoring.net")
    org = dbm.create_org(cfg.db_path, name="Org A", alert_extra_emails=["oncall@orga.io"])
    dbm.create_member(cfg.db_path, org_id=org.id, email="owner@orga.io")
    dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/ok")
    mailer = FakeMailer()

    await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert mailer.sent[0].to == ("owner@orga.io", "oncall@orga.io", "admin@monitoring.net")


@pytest.mark.asyncio
async def test_delivery_failure_does_not_abort_run(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org_a = dbm.create_org(cfg.db_path, name="Org A")
    org_b = dbm.create_org(cfg.db_path, name="Org B")
    dbm.create_member(cfg.db_path, org_id=org_a.id, email="bounce@orga.io")
    dbm.create_member(cfg.db_path, org_id=org_b.id, email="owner@orgb.io")
    mon_a = dbm.create_monitor(cfg.db_path, org_id=org_a.id, url=f"{local_server_base_url}/down")
    mon_b = dbm.create_monitor(cfg.db_path, org_id=org_b.id, url=f"{local_server_base_url}/ok")
    mailer = FakeMailer(fail_for={"bounce@orga.io"})

    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.checked == 2
    assert summary.alert_failures == 1
    assert summary.alerts_sent == 1

    # Status and log persist even though the alert failed; alert state does not move.
    a = dbm.get_monitor(cfg.db_path, monitor_id=mon_a.id)
    assert a.last_status == "down"
    assert a.last_alert_status == "unknown"
    assert dbm.count_monitor_logs(cfg.db_path, org_id=org_a.id, since_ts=0.0) == 1
    assert dbm.get_monitor(cfg.db_path, monitor_id=mon_b.id).last_alert_status == "up"


class _RacingMailer(FakeMailer):
    """Records an alert for the monitor while the email is in flight."""

    def __init__(self, db_path: str, monitor_id: str):
        super().__init__()
        self.db_path = db_path
        self.monitor_id = monitor_id

    def send(self, email: OutgoingEmail) -> None:
        dbm.record_alert(
            self.db_path, monitor_id=self.monitor_id, status="up", alerted_at_ts=T0 - 1, expected_last_alert_at_ts=None
        )
        super().send(email)


@pytest.mark.asyncio
async def test_concurrent_alert_record_is_counted_not_overwritten(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="owner@orga.io")
    mon = dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/down")
    mailer = _RacingMailer(cfg.db_path, mon.id)

    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.alerts_sent == 1
    assert summary.alert_state_conflicts == 1

    loaded = dbm.get_monitor(cfg.db_path, monitor_id=mon.id)
    assert loaded.last_alert_status == "up"
    assert loaded.last_alert_at_ts == T0 - 1


@pytest.mark.asyncio
async def test_max_checks_per_run_caps_work(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path, checks={"max_checks_per_run": 2})
    org = dbm.create_org(cfg.db_path, name="Org A")
    for _ in range(3):
        dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/ok")

    summary = await run_checks(cfg, mailer=FakeMailer(), now_ts=T0)
    assert summary.active == 3
    assert summary.due == 2
    assert summary.checked == 2


@pytest.mark.asyncio
async def test_held_lease_makes_check_run_a_no_op(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="owner@orga.io")
    dbm.create_monitor(cfg.db_path, org_id=org.id, url=f"{local_server_base_url}/ok")
    assert dbm.acquire_lease(cfg.db_path, name="checks", holder="other-run", ttl_seconds=600) is True

    mailer = FakeMailer()
    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.skipped is True
    assert summary.checked == 0
    assert mailer.sent == []

    dbm.release_lease(cfg.db_path, name="checks", holder="other-run")
    summary = await run_checks(cfg, mailer=mailer, now_ts=T0)
    assert summary.checked == 1


# --- Daily digest ---


def _seed_daily(cfg: MonitoringConfig) -> str:
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="owner@orga.io")
    dbm.create_member(cfg.db_path, org_id=org.id, email="blocked@orga.io", role="member", access_blocked=True)
    dbm.create_member(
        cfg.db_path, org_id=org.id, email="trial@orga.io", role="member", has_trial=True, trial_ends_at_ts=T0 + 3600
    )
    mon = dbm.create_monitor(cfg.db_path, org_id=org.id, url="https://down.example.net")
    dbm.update_monitor_check(cfg.db_path, monitor_id=mon.id, status="down", checked_at_ts=T0 - 300)
    for ago in (300, 900, 2 * 86400):
        dbm.insert_monitor_log(
            cfg.db_path,
            org_id=org.id,
            monitor_id=mon.id,
            url=mon.url,
            status="down",
            http_status=500,
            response_time_ms=90.0,
            error="HTTP 500",
            checked_at_ts=T0 - ago,
        )
    return org.id


@pytest.mark.asyncio
async def test_daily_digest_sends_once_per_day(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    org_id = _seed_daily(cfg)
    quiet = dbm.create_org(cfg.db_path, name="Quiet", alert_recipients="owner")
    mailer = FakeMailer()

    summary = await run_daily_digest(cfg, mailer=mailer, now_ts=T0)
    assert summary.sent == 1
    assert summary.no_recipients == 1
    assert len(mailer.sent) == 1
    email = mailer.sent[0]
    assert email.subject == "Site Monitoring - Daily report (2024-05-01) - Org A"
    assert "Users: 3" in email.text
    assert "Blocked: 1" in email.text
    assert "Monitors DOWN: 1" in email.text
    assert "Down events (last 24h): 2" in email.text
    assert "trial@orga.io" in email.text

    key = daily_marker_key(org_id, now_ts=T0, tz=load_timezone("UTC"))
    assert key == f"daily:2024-05-01:{org_id}"
    assert dbm.has_cron_run(cfg.db_path, key=key) is True
    assert dbm.has_cron_run(cfg.db_path, key=daily_marker_key(quiet.id, now_ts=T0, tz=load_timezone("UTC"))) is False

    again = await run_daily_digest(cfg, mailer=mailer, now_ts=T0 + 3600)
    assert again.sent == 0
    assert again.already_sent == 1
    assert len(mailer.sent) == 1

    next_day = await run_daily_digest(cfg, mailer=mailer, now_ts=T0 + 86400)
    assert next_day.sent == 1
    assert len(mailer.sent) == 2


@pytest.mark.asyncio
async def test_daily_digest_failure_leaves_marker_unset(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    org_id = _seed_daily(cfg)
    summary = await run_daily_digest(cfg, mailer=FakeMailer(fail_for={"owner@orga.io"}), now_ts=T0)
    assert summary.failures == 1
    assert summary.sent == 0
    assert dbm.has_cron_run(cfg.db_path, key=f"daily:2024-05-01:{org_id}") is False

    retry = FakeMailer()
    summary = await run_daily_digest(cfg, mailer=retry, now_ts=T0 + 60)
    assert summary.sent == 1
    assert len(retry.sent) == 1


@pytest.mark.asyncio
async def test_daily_digest_smtp_errors_do_not_stop_other_orgs(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    for name, email in (("Acme\nCorp", "owner@acme.io"), ("Good", "owner@good.io")):
        org = dbm.create_org(cfg.db_path, name=name)
        dbm.create_member(cfg.db_path, org_id=org.id, email=email)
    mailer = SmtpMailer(
        SmtpConfig(host="127.0.0.1", port=_closed_port(), from_address="alerts@example.net", timeout_seconds=2)
    )

    summary = await run_daily_digest(cfg, mailer=mailer, now_ts=T0)
    assert summary.orgs_considered == 2
    assert summary.failures == 2
    assert summary.sent == 0


# --- Monthly report ---


def _seed_monthly_org(cfg: MonitoringConfig, *, name: str, plan: str, email: str) -> str:
    org = dbm.create_org(cfg.db_path, name=name)
    dbm.create_member(cfg.db_path, org_id=org.id, email=email, plan=plan, subscription_status="active")
    for i in range(10):
        dbm.insert_monitor_log(
            cfg.db_path,
            org_id=org.id,
            monitor_id="m",
            url=f"https://{name.lower().replace(' ', '-')}.example.net",
            status="up",
            http_status=200,
            response_time_ms=200.0,
            error="",
            checked_at_ts=T0 - (i + 1) * 3600,
        )
    return org.id


@pytest.mark.asyncio
async def test_monthly_report_only_for_top_plan_and_once_per_month(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    ultra_id = _seed_monthly_org(cfg, name="Ultra Org", plan="ultra", email="boss@ultra.io")
    _seed_monthly_org(cfg, name="Standard Org", plan="standard", email="boss@standard.io")
    dbm.create_org(cfg.db_path, name="Empty Org")
    mailer = FakeMailer()

    summary = await run_monthly_reports(cfg, mailer=mailer, now_ts=T0)
    assert summary.orgs_considered == 2
    assert summary.sent == 1
    assert summary.not_eligible == 1
    assert summary.active_subscriptions == 2
    assert summary.external_reachable is None

    assert len(mailer.sent) == 1
    email = mailer.sent[0]
    assert email.to == ("boss@ultra.io",)
    assert email.subject == "Site Monitoring - Monthly reliability report (2024-05) - Ultra Org"
    assert "Reliability score: 100/100" in email.text

    key = monthly_marker_key(ultra_id, now_ts=T0, tz=load_timezone("UTC"))
    assert dbm.has_cron_run(cfg.db_path, key=key) is True

    again = await run_monthly_reports(cfg, mailer=mailer, now_ts=T0 + 86400)
    assert again.sent == 0
    assert again.already_sent == 1
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_monthly_org_with_only_blank_urls_is_counted_as_no_sites(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Blank Org")
    dbm.create_member(cfg.db_path, org_id=org.id, email="boss@blank.io", plan="ultra")
    dbm.insert_monitor_log(
        cfg.db_path,
        org_id=org.id,
        monitor_id="m",
        url="  ",
        status="up",
        http_status=200,
        response_time_ms=100.0,
        error="",
        checked_at_ts=T0 - 3600,
    )
    mailer = FakeMailer()

    summary = await run_monthly_reports(cfg, mailer=mailer, now_ts=T0)
    assert summary.orgs_considered == 1
    assert summary.no_sites == 1
    assert summary.sent == 0
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_monthly_probe_failure_degrades_field_only(tmp_path: Path, local_server_base_url: str) -> None:
    cfg = _config(tmp_path, monthly=MonthlyConfig(reachability_probe_url=f"http://127.0.0.1:{_closed_port()}/"))
    _seed_monthly_org(cfg, name="Ultra Org", plan="ultra", email="boss@ultra.io")
    mailer = FakeMailer()

    summary = await run_monthly_reports(cfg, mailer=mailer, now_ts=T0)
    assert summary.external_reachable is False
    assert summary.sent == 1

    cfg_ok = _config(
        tmp_path / "ok", monthly=MonthlyConfig(reachability_probe_url=f"{local_server_base_url}/ok")
    )
    summary_ok = await run_monthly_reports(cfg_ok, mailer=FakeMailer(), now_ts=T0)
    assert summary_ok.external_reachable is True


# --- Trial expiry ---


@pytest.mark.asyncio
async def test_trial_expiry_blocks_and_notifies_once(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(
        cfg.db_path, org_id=org.id, email="Trial@OrgA.io", has_trial=True, trial_ends_at_ts=T0 - 60
    )
    dbm.create_member(cfg.db_path, org_id=org.id, email="later@orga.io", has_trial=True, trial_ends_at_ts=T0 + 3600)
    mailer = FakeMailer()

    summary = await run_trial_expiry(cfg, mailer=mailer, now_ts=T0)
    assert summary.expired == 1
    assert summary.blocked == 1
    assert summary.notified == 1
    assert mailer.sent[0].to == ("trial@orga.io",)
    assert mailer.sent[0].subject == "Your Site Monitoring trial has ended"
    assert dbm.count_members(cfg.db_path, org_id=org.id, access_blocked=True) == 1

    again = await run_trial_expiry(cfg, mailer=mailer, now_ts=T0 + 60)
    assert again.expired == 0
    assert len(mailer.sent) == 1
    assert [m.id for m in dbm.list_expired_trials(cfg.db_path, now_ts=T0 + 60)] == []


@pytest.mark.asyncio
async def test_trial_expiry_send_failure_still_blocks(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    org = dbm.create_org(cfg.db_path, name="Org A")
    dbm.create_member(cfg.db_path, org_id=org.id, email="trial@orga.io", has_trial=True, trial_ends_at_ts=T0 - 60)

    summary = await run_trial_expiry(cfg, mailer=FakeMailer(fail_for={"trial@orga.io"}), now_ts=T0)
    assert summary.blocked == 1
    assert summary.failures == 1
    assert dbm.count_members(cfg.db_path, org_id=org.id, access_blocked=True) == 1
