from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from html import escape
from typing import Any

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from site_checks.http_check import CheckResult
from site_checks.models import STATUS_DOWN, Member, Monitor, MonitorLog
from site_checks.recipients import Recipients
from site_checks.reliability import ReliabilityReport, round_half_up


LOGGER = logging.getLogger("site-monitoring")


@dataclass(frozen=True)
class Notification:
    subject: str
    text: str
    html: str


def load_timezone(name: str) -> tzinfo:
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except ZoneInfoNotFoundError:
        LOGGER.warning("Timezone not found; falling back to UTC tz=%s", cleaned)
        return timezone.utc


def format_ts(ts: Any, tz: tzinfo = timezone.utc) -> str:
    if ts is None:
        return "n/a"
    try:
        return datetime.fromtimestamp(float(ts), tz).strftime("%Y-%m-%d %H:%M %Z")
    except (TypeError, ValueError, OverflowError, OSError):
        return str(ts)


def format_ms(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{round_half_up(float(value))}ms"
    except (TypeError, ValueError):
        return "n/a"


def format_pct(value: Any) -> str:
    try:
        return f"{float(value):.2f}%"
    except (TypeError, ValueError):
        return "n/a"


def _header_text(value: str) -> str:
    return " ".join(str(value or "").split())


def _html_list(items: list[str], *, empty: str) -> str:
    if not items:
        return f"<p>{escape(empty)}</p>"
    return "<ul>" + "".join(f"<li>{item}</li>" for item in items) + "</ul>"


def compose_alert(
    *,
    brand_name: str,
    recipients: Recipients,
    monitor_url: str,
    result: CheckResult,
    checked_at_ts: float,
    tz: tzinfo = timezone.utc,
) -> Notification:
    is_down = result.status == STATUS_DOWN
    label = "DOWN" if is_down else "UP"
    checked_at = format_ts(checked_at_ts, tz)
    error = result.error.strip() or "-"

    subject = _header_text(f"{brand_name} {label} - {monitor_url}")

    lines = [
        f"Organization: {recipients.org_name}",
        f"URL: {monitor_url}",
        f"Status: {label}",
        f"HTTP: {result.http_status}",
        f"Response time: {format_ms(result.response_time_ms)}",
        f"Error: {error[:500]}",
        f"Checked at: {checked_at}",
        f"Recipients policy: {recipients.policy}",
    ]
    text = "\n".join(lines) + "\n"

    html = (
        f'<h2 style="margin:0">{"&#128680; DOWN" if is_down else "&#9989; UP"}</h2>'
        f'<p style="margin:8px 0"><b>Organization:</b> {escape(recipients.org_name)}</p>'
        f'<p style="margin:8px 0"><b>URL:</b> {escape(monitor_url)}</p>'
        "<ul>"
        f"<li><b>Status:</b> {label}</li>"
        f"<li><b>HTTP:</b> {result.http_status}</li>"
        f"<li><b>Response time:</b> {escape(format_ms(result.response_time_ms))}</li>"
        f"<li><b>Error:</b> {escape(error[:500])}</li>"
        f"<li><b>Checked at:</b> {escape(checked_at)}</li>"
        "</ul>"
    )
    return Notification(subject=subject, text=text, html=html)


@dataclass(frozen=True)
class DailyDigest:
    generated_at_ts: float
    total_users: int
    blocked_users: int
    down_monitors: list[Monitor]
    down_events: list[MonitorLog]
    down_events_total: int
    expiring_trials: list[Member]
    window_hours: float = 24.0


def compose_daily_digest(
    *,
    brand_name: str,
    recipients: Recipients,
    digest: DailyDigest,
    tz: tzinfo = timezone.utc,
) -> Notification:
    day = datetime.fromtimestamp(float(digest.generated_at_ts), tz).strftime("%Y-%m-%d")
    window = f"{float(digest.window_hours):g}h"
    subject = _header_text(f"{brand_name} - Daily report ({day}) - {recipients.org_name}")

    down_lines = [f"- {m.url} (last check: {format_ts(m.last_checked_at_ts, tz)})" for m in digest.down_monitors]
    event_lines = [
        f"- {format_ts(e.checked_at_ts, tz)} | {e.url} | HTTP {e.http_status} | {e.error or '-'}"
        for e in digest.down_events
    ]
    trial_lines = [
        f"- {m.email} | {m.plan} | ends {format_ts(m.trial_ends_at_ts, tz)} | blocked={m.access_blocked}"
        for m in digest.expiring_trials
    ]

    text_parts = [
        f"Organization: {recipients.org_name}",
        f"Recipients policy: {recipients.policy}",
        "",
        f"Users: {digest.total_users}",
        f"Blocked: {digest.blocked_users}",
        "",
        f"Monitors DOWN: {len(digest.down_monitors)}",
        *down_lines,
        "",
        f"Down events (last {window}): {digest.down_events_total}",
        *(event_lines or ["- None"]),
        "",
        "Trials ending soon:",
        *(trial_lines or ["- None"]),
    ]
    text = "\n".join(text_parts) + "\n"

    html = (
        f'<h2 style="margin:0">{escape(brand_name)} - Daily report</h2>'
        f'<p style="margin:8px 0"><b>Organization:</b> {escape(recipients.org_name)}</p>'
        f'<p style="margin:8px 0"><b>Recipients policy:</b> {escape(recipients.policy)} '
        f"({recipients.count} emails)</p>"
        "<hr/>"
        "<ul>"
        f"<li><b>Users:</b> {digest.total_users}</li>"
        f"<li><b>Blocked:</b> {digest.blocked_users}</li>"
        "</ul>"
        f"<h3>Monitors DOWN ({len(digest.down_monitors)})</h3>"
        + _html_list(
            [
                f"<b>{escape(m.url)}</b> - last check: {escape(format_ts(m.last_checked_at_ts, tz))}"
                for m in digest.down_monitors
            ],
            empty="No monitor is down.",
        )
        + f"<h3>Down events, last {escape(window)} ({digest.down_events_total})</h3>"
        + _html_list(
            [
                f"{escape(format_ts(e.checked_at_ts, tz))} - <b>{escape(e.url)}</b> - "
                f"HTTP {e.http_status} - {escape(e.error or '-')}"
                for e in digest.down_events
            ],
            empty="None",
        )
        + "<h3>Trials ending soon</h3>"
        + _html_list(
            [
                f"{escape(m.email)} - {escape(m.plan)} - {escape(format_ts(m.trial_ends_at_ts, tz))} - "
                f"blocked={m.access_blocked}"
                for m in digest.expiring_trials
            ],
            empty="None",
        )
    )
    return Notification(subject=subject, text=text, html=html)


def compose_monthly_report(
    *,
    brand_name: str,
    recipients: Recipients,
    report: ReliabilityReport,
    tz: tzinfo = timezone.utc,
) -> Notification:
    month = datetime.fromtimestamp(float(report.generated_at_ts), tz).strftime("%Y-%m")
    overall = report.overall
    subject = _header_text(f"{brand_name} - Monthly reliability report ({month}) - {recipients.org_name}")

    header = f"{'#':>3}  {'Score':>5}  {'Uptime':>8}  {'Avg':>8}  {'Incidents':>9}  URL"
    rows = [
        f"{idx:>3}  {s.score:>5}  {format_pct(s.uptime_pct):>8}  {format_ms(s.avg_response_ms):>8}  "
        f"{s.incidents:>9}  {s.url}"
        for idx, s in enumerate(report.sites, start=1)
    ]

    text_parts = [
        f"Organization: {recipients.org_name}",
        f"Window: last {report.range_days} days (generated {format_ts(report.generated_at_ts, tz)})",
        "",
        f"Reliability score: {overall.score}/100",
        f"Uptime: {format_pct(overall.uptime_pct)}",
        f"Average response time: {format_ms(overall.avg_response_ms)}",
        f"Incidents: {overall.incidents}",
        f"Sites: {overall.sites_count} ({overall.total_checks} checks)",
        "",
        header,
        *rows,
    ]
    text = "\n".join(text_parts) + "\n"

    table_rows = "".join(
        "<tr>"
        f"<td>{idx}</td>"
        f"<td>{escape(s.url)}</td>"
        f"<td><b>{s.score}</b></td>"
        f"<td>{escape(format_pct(s.uptime_pct))}</td>"
        f"<td>{escape(format_ms(s.avg_response_ms))}</td>"
        f"<td>{s.incidents}</td>"
        f"<td>{s.total_checks}</td>"
        "</tr>"
        for idx, s in enumerate(report.sites, start=1)
    )
    html = (
        f'<h2 style="margin:0">{escape(brand_name)} - Monthly reliability report</h2>'
        f'<p style="margin:8px 0"><b>Organization:</b> {escape(recipients.org_name)}</p>'
        f'<p style="margin:8px 0">Last {report.range_days} days, generated '
        f"{escape(format_ts(report.generated_at_ts, tz))}</p>"
        f'<p style="font-size:20px;margin:12px 0"><b>Reliability score: {overall.score}/100</b></p>'
        "<ul>"
        f"<li><b>Uptime:</b> {escape(format_pct(overall.uptime_pct))}</li>"
        f"<li><b>Average response time:</b> {escape(format_ms(overall.avg_response_ms))}</li>"
        f"<li><b>Incidents:</b> {overall.incidents}</li>"
        f"<li><b>Sites:</b> {overall.sites_count} ({overall.total_checks} checks)</li>"
        "</ul>"
        '<table border="1" cellpadding="4" cellspacing="0">'
        "<tr><th>#</th><th>URL</th><th>Score</th><th>Uptime</th><th>Avg</th><th>Incidents</th><th>Checks</th></tr>"
        f"{table_rows}"
        "</table>"
    )
    return Notification(subject=subject, text=text, html=html)


def compose_trial_ended(*, brand_name: str) -> Notification:
    subject = _header_text(f"Your {brand_name} trial has ended")
    text = (
        "Hello,\n\n"
        f"Your {brand_name} trial has ended and access to your account is now paused.\n"
        "Sign in to pick a plan and keep your monitors running.\n"
    )
    html = (
        "<p>Hello,</p>"
        f"<p>Your {escape(brand_name)} trial has ended and access to your account is now paused.</p>"
        "<p>Sign in to pick a plan and keep your monitors running.</p>"
    )
    return Notification(subject=subject, text=text, html=html)
