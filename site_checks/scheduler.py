"""Job scheduling for the long-running monitor process."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from site_checks.config import MonitoringConfig
from site_checks.jobs import run_checks, run_daily_digest, run_monthly_reports, run_trial_expiry
from site_checks.mailer import Mailer
from site_checks.reports import load_timezone


logger = structlog.get_logger(__name__)


def configure_structlog(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, str(level).upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def cron_trigger(cron_expression: str, *, tz: Any = None) -> CronTrigger:
    # Format: "minute hour day month day_of_week"
    cron_parts = cron_expression.split()
    if len(cron_parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")
    return CronTrigger(
        minute=cron_parts[0],
        hour=cron_parts[1],
        day=cron_parts[2],
        month=cron_parts[3],
        day_of_week=cron_parts[4],
        timezone=tz,
    )


class JobScheduler:
    """Runs the batch jobs on cron and interval triggers using APScheduler."""

    def __init__(self, timezone_name: str = "UTC"):
        self.tz = load_timezone(timezone_name)
        self.scheduler = AsyncIOScheduler(timezone=self.tz)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", jobs=len(self.jobs))

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def _add(self, job_id: str, func: Callable[..., Any], trigger: Any, info: Dict[str, Any], description: Optional[str]) -> None:
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "description": description,
            "added_at": datetime.now(timezone.utc),
            **info,
        }

    def add_cron_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        cron_expression: str,
        description: Optional[str] = None,
    ) -> None:
        trigger = cron_trigger(cron_expression, tz=self.tz)
        self._add(job_id, func, trigger, {"type": "cron", "expression": cron_expression}, description)
        logger.info("Added cron job", job_id=job_id, cron=cron_expression, description=description)

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        seconds: int,
        description: Optional[str] = None,
    ) -> None:
        trigger = IntervalTrigger(seconds=seconds, timezone=self.tz)
        self._add(job_id, func, trigger, {"type": "interval", "seconds": seconds}, description)
        logger.info("Added interval job", job_id=job_id, interval_seconds=seconds, description=description)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False
        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for job_id, info in self.jobs.items():
            scheduler_job = self.scheduler.get_job(job_id)
            next_run = getattr(scheduler_job, "next_run_time", None) if scheduler_job else None
            out.append(
                {
                    "job_id": job_id,
                    "type": info["type"],
                    "description": info.get("description"),
                    "next_run": next_run.isoformat() if next_run else None,
                }
            )
        return out


def _guarded(name: str, job: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[None]]:
    async def _run() -> None:
        try:
            summary = await job()
        except Exception as e:
            # Logged only; the next trigger runs the job again.
            logger.error("Scheduled job failed", job=name, error=f"{type(e).__name__}: {e}")
            return
        as_dict = getattr(summary, "as_dict", None)
        logger.info("Scheduled job finished", job=name, summary=as_dict() if callable(as_dict) else summary)

    return _run


def build_scheduler(config: MonitoringConfig, *, mailer: Mailer) -> JobScheduler:
    sched = JobScheduler(config.timezone)
    cfg = config.schedule
    sched.add_interval_job(
        "checks",
        _guarded("checks", lambda: run_checks(config, mailer=mailer)),
        seconds=max(60, int(cfg.check_interval_seconds)),
        description="Monitor check run",
    )
    sched.add_cron_job(
        "daily",
        _guarded("daily", lambda: run_daily_digest(config, mailer=mailer)),
        cfg.daily_cron,
        description="Daily digest",
    )
    sched.add_cron_job(
        "monthly",
        _guarded("monthly", lambda: run_monthly_reports(config, mailer=mailer)),
        cfg.monthly_cron,
        description="Monthly reliability report",
    )
    sched.add_cron_job(
        "trials",
        _guarded("trials", lambda: run_trial_expiry(config, mailer=mailer)),
        cfg.trial_expiry_cron,
        description="Trial expiry sweep",
    )
    return sched


async def serve(config: MonitoringConfig, *, mailer: Mailer, stop_event: asyncio.Event | None = None) -> int:
    sched = build_scheduler(config, mailer=mailer)
    stop = stop_event or asyncio.Event()
    sched.start()
    for job in sched.list_jobs():
        logger.info("Scheduled", **job)
    try:
        await stop.wait()
    finally:
        sched.stop()
    return 0
