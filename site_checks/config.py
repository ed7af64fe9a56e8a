"""Configuration management for the site monitoring jobs."""

from __future__ import annotations

import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from site_checks.plans import PLAN_RANKS


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


class SmtpConfig(BaseModel):
    """Outbound mail transport settings."""
    host: str = Field(default="", description="SMTP server hostname")
    port: int = Field(default=587, description="SMTP server port")
    secure: bool = Field(default=False, description="Use implicit TLS (SMTPS) instead of STARTTLS")
    username: str = Field(default="", description="SMTP login user")
    password: str = Field(default="", description="SMTP login password")
    from_address: str = Field(default="", description="Sender address for every notification")
    timeout_seconds: float = Field(default=20.0, description="Socket timeout for one delivery")


class CheckConfig(BaseModel):
    """Monitor check run settings."""
    http_timeout_seconds: float = Field(default=8.0, description="Timeout for one health probe")
    alert_cooldown_minutes: float = Field(default=180.0, description="Minimum minutes between repeated DOWN alerts")
    max_checks_per_run: int = Field(default=100, description="Maximum monitors probed per run")
    min_interval_minutes: int = Field(default=5, description="Floor applied to every monitor interval")
    default_interval_minutes: int = Field(default=60, description="Interval used when a monitor has none")
    max_active_monitors: int = Field(default=5000, description="Maximum active monitors loaded per run")


class DailyConfig(BaseModel):
    """Daily digest settings."""
    down_event_window_hours: float = Field(default=24.0, description="Look-back window for down events")
    trial_warning_hours: float = Field(default=48.0, description="Trials ending within this window are listed")
    max_listed: int = Field(default=50, description="Maximum rows per digest section")


class MonthlyConfig(BaseModel):
    """Monthly reliability report settings."""
    range_days: int = Field(default=30, description="Trailing window of monitor logs")
    required_plan: str = Field(default="ultra", description="Lowest plan that receives the report")
    reachability_probe_url: Optional[str] = Field(default=None, description="External URL probed once per run")

    @field_validator("required_plan")
    @classmethod
    def known_plan(cls, value: str) -> str:
        plan = str(value or "").strip().lower()
        if plan not in PLAN_RANKS:
            raise ValueError(f"required_plan must be one of: {', '.join(PLAN_RANKS)}")
        return plan


class ScoringConfig(BaseModel):
    """Reliability score business constants."""
    incident_penalty_points: float = Field(default=1.5, description="Points removed per incident")
    incident_penalty_cap: float = Field(default=25.0, description="Maximum points removed for incidents")
    slow_response_ms: float = Field(default=1200.0, description="Average response time where the slow penalty starts")
    slow_response_full_ms: float = Field(default=3200.0, description="Average response time where the slow penalty is full")
    slow_penalty_max: float = Field(default=15.0, description="Maximum points removed for slow responses")


class ScheduleConfig(BaseModel):
    """Long-running scheduler triggers (serve mode)."""
    check_interval_seconds: int = Field(default=300, description="Seconds between check runs")
    daily_cron: str = Field(default="0 9 * * *", description="Cron expression for the daily digest")
    monthly_cron: str = Field(default="0 8 1 * *", description="Cron expression for the monthly report")
    trial_expiry_cron: str = Field(default="15 * * * *", description="Cron expression for the trial sweep")


class MonitoringConfig(BaseModel):
    """Main configuration for the monitoring jobs."""

    db_path: str = Field(default="", description="Path to the sqlite database")
    brand_name: str = Field(default="Site Monitoring", description="Product name used in subjects")
    timezone: str = Field(default="UTC", description="Timezone for report dates and periods")
    admin_copy_email: str = Field(default="", description="Address copied on every notification")
    lease_seconds: int = Field(default=900, description="Lifetime of a job run lease")
    log_level: str = Field(default="INFO", description="Logging level")

    # Periodic report trigger
    public_base_url: str = Field(default="", description="Base URL of the registry service")
    cron_key: str = Field(default="", description="Shared secret for the report trigger")

    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    checks: CheckConfig = Field(default_factory=CheckConfig)
    daily: DailyConfig = Field(default_factory=DailyConfig)
    monthly: MonthlyConfig = Field(default_factory=MonthlyConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# env var -> (section or None, key, converter)
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str, Any]] = {
    "MONITOR_DB_PATH": (None, "db_path", str),
    "MONITOR_TIMEZONE": (None, "timezone", str),
    "ALERT_EMAIL_TO": (None, "admin_copy_email", str),
    "PUBLIC_BASE_URL": (None, "public_base_url", str),
    "CRON_KEY": (None, "cron_key", str),
    "LOG_LEVEL": (None, "log_level", str),
    "SMTP_HOST": ("smtp", "host", str),
    "SMTP_PORT": ("smtp", "port", int),
    "SMTP_SECURE": ("smtp", "secure", _env_bool),
    "SMTP_USER": ("smtp", "username", str),
    "SMTP_PASS": ("smtp", "password", str),
    "ALERT_EMAIL_FROM": ("smtp", "from_address", str),
    "MONITOR_HTTP_TIMEOUT_MS": ("checks", "http_timeout_seconds", lambda v: float(v) / 1000.0),
    "MONITOR_ALERT_COOLDOWN_MINUTES": ("checks", "alert_cooldown_minutes", float),
    "MONITOR_MAX_CHECKS_PER_RUN": ("checks", "max_checks_per_run", int),
}


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("SITE_MONITOR_CONFIG", "config/site-monitor.yaml")

    config_data: dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config YAML must be a mapping: {config_path}")
        config_data = loaded

    for env_name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = convert(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from exc
        if section is None:
            config_data[key] = value
            continue
        target = config_data.get(section)
        if not isinstance(target, dict):
            target = {}
            config_data[section] = target
        target[key] = value

    try:
        return MonitoringConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def ensure_job_ready(config: MonitoringConfig, *, needs_mail: bool = True) -> None:
    """Fail fast before any work when a required value is missing."""
    missing: list[str] = []
    if not config.db_path.strip():
        missing.append("db_path (MONITOR_DB_PATH)")
    if needs_mail:
        if not config.smtp.host.strip():
            missing.append("smtp.host (SMTP_HOST)")
        if not config.smtp.from_address.strip():
            missing.append("smtp.from_address (ALERT_EMAIL_FROM)")
    if missing:
        raise ConfigError("Missing required configuration: " + ", ".join(missing))
