from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Any, Optional, Sequence

import httpx

from site_checks.config import ConfigError, MonitoringConfig, ensure_job_ready, load_config
from site_checks.jobs import run_checks, run_daily_digest, run_monthly_reports, run_trial_expiry
from site_checks.mailer import SmtpMailer
from site_checks.scheduler import configure_structlog, serve
from site_checks.trigger import TriggerError, trigger_monthly_report


LOGGER = logging.getLogger("site-monitoring")

COMMANDS = ("checks", "daily", "monthly", "trials", "trigger-monthly", "serve")


def _print_summary(summary: Any) -> None:
    as_dict = getattr(summary, "as_dict", None)
    payload = as_dict() if callable(as_dict) else summary
    print(json.dumps(payload, sort_keys=True, default=str))


async def _run_command(command: str, config: MonitoringConfig) -> int:
    if command == "trigger-monthly":
        async with httpx.AsyncClient() as client:
            result = await trigger_monthly_report(client, base_url=config.public_base_url, cron_key=config.cron_key)
        _print_summary(result)
        return 0

    ensure_job_ready(config, needs_mail=True)
    mailer = SmtpMailer(config.smtp)

    if command == "checks":
        summary: Any = await run_checks(config, mailer=mailer)
    elif command == "daily":
        summary = await run_daily_digest(config, mailer=mailer)
    elif command == "monthly":
        summary = await run_monthly_reports(config, mailer=mailer)
    elif command == "trials":
        summary = await run_trial_expiry(config, mailer=mailer)
    elif command == "serve":
        configure_structlog(config.log_level)
        return await serve(config, mailer=mailer)
    else:
        raise ValueError(f"Unknown command: {command}")

    _print_summary(summary)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Website monitoring jobs")
    parser.add_argument(
        "--config",
        default=os.getenv("SITE_MONITOR_CONFIG", "config/site-monitor.yaml"),
        help="Path to YAML config",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); defaults to the config value",
    )
    parser.add_argument("command", choices=COMMANDS, help="Job to run")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
        LOGGER.error("%s", e)
        return 2

    level = args.log_level or config.log_level
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    if args.log_level:
        config = config.model_copy(update={"log_level": args.log_level})

    try:
        return asyncio.run(_run_command(args.command, config))
    except ConfigError as e:
        LOGGER.error("%s", e)
        return 2
    except TriggerError as e:
        LOGGER.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception:
        LOGGER.exception("Job failed command=%s", args.command)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
