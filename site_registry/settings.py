from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class RegistrySettings:
    db_path: str = field(default_factory=lambda: _env_str("SITE_REGISTRY_DB_PATH", "/data/site-monitoring.db"))

    # Admin token guards org/member/monitor management and settings endpoints.
    admin_token: str = field(default_factory=lambda: os.getenv("SITE_REGISTRY_ADMIN_TOKEN", "").strip())
    # Shared secret expected in the x-cron-key header of the report trigger.
    cron_key: str = field(default_factory=lambda: os.getenv("CRON_KEY", "").strip())

    # Job configuration used by the trigger endpoint (SMTP, scoring, plan gate).
    monitor_config_path: str = field(default_factory=lambda: _env_str("SITE_MONITOR_CONFIG", "config/site-monitor.yaml"))

    max_extra_emails: int = field(default_factory=lambda: _env_int("SITE_REGISTRY_MAX_EXTRA_EMAILS", 25))
