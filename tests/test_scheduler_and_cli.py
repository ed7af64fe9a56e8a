from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from site_checks.config import MonitoringConfig
from site_checks.main import main
from site_checks.mailer import OutgoingEmail
from site_checks.scheduler import build_scheduler, cron_trigger, serve


class _NullMailer:
    def send(self, email: OutgoingEmail) -> None:
        return None


def test_cron_trigger_requires_five_fields() -> None:
    cron_trigger("0 9 * * *")
    with pytest.raises(ValueError):
        cron_trigger("0 9 * *")


def test_build_scheduler_registers_all_jobs(tmp_path: Path) -> None:
    cfg = MonitoringConfig(db_path=str(tmp_path / "m.db"), timezone="Europe/Paris")
    sched = build_scheduler(cfg, mailer=_NullMailer())
    jobs = {j["job_id"]: j for j in sched.list_jobs()}
    assert set(jobs) == {"checks", "daily", "monthly", "trials"}
    assert jobs["checks"]["type"] == "interval"
    assert sched.jobs["checks"]["seconds"] == 300
    assert sched.jobs["daily"]["expression"] == "0 9 * * *"
    assert sched.jobs["monthly"]["expression"] == "0 8 1 * *"

    assert sched.remove_job("trials") is True
    assert sched.remove_job("trials") is False


@pytest.mark.asyncio
async def test_serve_returns_when_stopped(tmp_path: Path) -> None:
    cfg = MonitoringConfig(db_path=str(tmp_path / "m.db"))
    stop = asyncio.Event()
    stop.set()
    assert await serve(cfg, mailer=_NullMailer(), stop_event=stop) == 0


@pytest.fixture
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MONITOR_DB_PATH", "SMTP_HOST", "ALERT_EMAIL_FROM", "PUBLIC_BASE_URL", "CRON_KEY", "SITE_MONITOR_CONFIG"):
        monkeypatch.delenv(name, raising=False)


def test_cli_config_errors_exit_2(tmp_path: Path, _clean_env: None) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("- not\n- a mapping\n", encoding="utf-8")
    assert main(["--config", str(bad), "checks"]) == 2

    # Missing database / SMTP settings fail before any work.
    assert main(["--config", str(tmp_path / "absent.yaml"), "daily"]) == 2
    assert main(["--config", str(tmp_path / "absent.yaml"), "trigger-monthly"]) == 2


def test_cli_rejects_unknown_command(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--config", str(tmp_path / "absent.yaml"), "reboot"])
