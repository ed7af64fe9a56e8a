"""
Client side of the monthly report trigger.

An external scheduler (or `site-monitor trigger-monthly`) calls the registry
service, which runs the report job behind the shared cron key.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from site_checks.config import ConfigError


LOGGER = logging.getLogger("site-monitoring")

MONTHLY_REPORT_PATH = "/api/cron/monitoring/monthly-report"
CRON_KEY_HEADER = "x-cron-key"


class TriggerError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        self.status_code = int(status_code)
        self.body = body
        super().__init__(f"Monthly report trigger failed: HTTP {self.status_code}: {body}")


def monthly_report_url(base_url: str) -> str:
    return base_url.strip().rstrip("/") + MONTHLY_REPORT_PATH


async def trigger_monthly_report(
    client: httpx.AsyncClient,
    *,
    base_url: str,
    cron_key: str,
    timeout_seconds: float = 60.0,
) -> dict[str, Any]:
    missing = [name for name, value in (("PUBLIC_BASE_URL", base_url), ("CRON_KEY", cron_key)) if not str(value or "").strip()]
    if missing:
        raise ConfigError("Missing " + " / ".join(missing))

    url = monthly_report_url(base_url)
    LOGGER.info("Triggering monthly report url=%s", url)
    resp = await client.post(url, json={}, headers={CRON_KEY_HEADER: cron_key.strip()}, timeout=timeout_seconds)
    text = resp.text or ""
    if resp.status_code < 200 or resp.status_code >= 300:
        raise TriggerError(resp.status_code, text[:400])

    try:
        data = resp.json()
    except ValueError:
        data = {"raw": text[:400]}
    LOGGER.info("Monthly report trigger ok status=%s", resp.status_code)
    return data if isinstance(data, dict) else {"result": data}
