from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from site_checks.models import (
    Member,
    Monitor,
    MonitorLog,
    Organization,
    POLICY_ALL,
    ROLE_OWNER,
    STATUS_UNKNOWN,
)


SCHEMA_VERSION = 2


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the registry service read while a job writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def ensure_schema(db_path: str) -> None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orgs (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          alert_recipients TEXT NOT NULL DEFAULT 'all', -- owner|all
          alert_extra_emails_json TEXT NOT NULL DEFAULT '[]',
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS members (
          id TEXT PRIMARY KEY,
          org_id TEXT NOT NULL REFERENCES orgs(id) ON DELETE CASCADE,
          email TEXT NOT NULL,
          role TEXT NOT NULL DEFAULT 'owner', -- owner|member
          plan TEXT NOT NULL DEFAULT 'standard', -- standard|pro|ultra
          subscription_status TEXT,
          has_trial INTEGER NOT NULL DEFAULT 0,
          trial_ends_at_ts REAL,
          access_blocked INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitors (
          id TEXT PRIMARY KEY,
          org_id TEXT NOT NULL REFERENCES orgs(id) ON DELETE CASCADE,
          url TEXT NOT NULL,
          active INTEGER NOT NULL DEFAULT 1,
          interval_minutes INTEGER NOT NULL DEFAULT 60,
          last_checked_at_ts REAL,
          last_status TEXT NOT NULL DEFAULT 'unknown', -- up|down|unknown
          last_alert_status TEXT NOT NULL DEFAULT 'unknown',
          last_alert_at_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitor_logs (
          id TEXT PRIMARY KEY,
          org_id TEXT NOT NULL,
          monitor_id TEXT NOT NULL,
          url TEXT NOT NULL,
          status TEXT NOT NULL, -- up|down
          http_status INTEGER NOT NULL DEFAULT 0,
          response_time_ms REAL,
          error TEXT NOT NULL DEFAULT '',
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_members_org ON members(org_id, role);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_monitors_active ON monitors(active, org_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_monitor_logs_org_checked ON monitor_logs(org_id, checked_at_ts);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    """
    v2 adds idempotency markers for periodic reports and run leases for batch jobs.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cron_runs (
          key TEXT PRIMARY KEY, -- e.g. daily:2024-05-01:<org_id>
          created_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_leases (
          name TEXT PRIMARY KEY,
          holder TEXT NOT NULL,
          expires_at_ts REAL NOT NULL
        );
        """
    )


def _row_to_org(row: sqlite3.Row) -> Organization:
    extra = _json_loads(row["alert_extra_emails_json"])
    return Organization(
        id=str(row["id"]),
        name=str(row["name"] or ""),
        alert_recipients=str(row["alert_recipients"] or POLICY_ALL),
        alert_extra_emails=[str(x) for x in extra] if isinstance(extra, list) else [],
        created_at_ts=float(row["created_at_ts"]) if row["created_at_ts"] is not None else None,
    )


def _row_to_member(row: sqlite3.Row) -> Member:
    return Member(
        id=str(row["id"]),
        org_id=str(row["org_id"]),
        email=str(row["email"] or ""),
        role=str(row["role"] or ROLE_OWNER),
        plan=str(row["plan"] or "standard"),
        subscription_status=str(row["subscription_status"]) if row["subscription_status"] else None,
        has_trial=bool(row["has_trial"]),
        trial_ends_at_ts=float(row["trial_ends_at_ts"]) if row["trial_ends_at_ts"] is not None else None,
        access_blocked=bool(row["access_blocked"]),
    )


def _row_to_monitor(row: sqlite3.Row) -> Monitor:
    return Monitor(
        id=str(row["id"]),
        org_id=str(row["org_id"]),
        url=str(row["url"] or ""),
        active=bool(row["active"]),
        interval_minutes=int(row["interval_minutes"] or 0),
        last_checked_at_ts=float(row["last_checked_at_ts"]) if row["last_checked_at_ts"] is not None else None,
        last_status=str(row["last_status"] or STATUS_UNKNOWN),
        last_alert_status=str(row["last_alert_status"] or STATUS_UNKNOWN),
        last_alert_at_ts=float(row["last_alert_at_ts"]) if row["last_alert_at_ts"] is not None else None,
    )


def _row_to_log(row: sqlite3.Row) -> MonitorLog:
    return MonitorLog(
        id=str(row["id"]),
        org_id=str(row["org_id"]),
        monitor_id=str(row["monitor_id"]),
        url=str(row["url"] or ""),
        status=str(row["status"]),
        http_status=int(row["http_status"] or 0),
        response_time_ms=float(row["response_time_ms"]) if row["response_time_ms"] is not None else None,
        error=str(row["error"] or ""),
        checked_at_ts=float(row["checked_at_ts"]),
    )


# --- Organizations ---


def create_org(
    db_path: str,
    *,
    name: str,
    alert_recipients: str = POLICY_ALL,
    alert_extra_emails: Iterable[str] = (),
) -> Organization:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        oid = _uuid()
        now = _utc_ts()
        extra = [str(x) for x in alert_extra_emails]
        conn.execute(
            """
            INSERT INTO orgs (id, name, alert_recipients, alert_extra_emails_json, created_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (oid, name.strip(), alert_recipients, _json_dumps(extra), now, now),
        )
        return Organization(
            id=oid, name=name.strip(), alert_recipients=alert_recipients, alert_extra_emails=extra, created_at_ts=now
        )
    finally:
        conn.close()


def get_org(db_path: str, *, org_id: str) -> Organization | None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM orgs WHERE id=?", (org_id,)).fetchone()
        return _row_to_org(row) if row else None
    finally:
        conn.close()


def list_orgs(db_path: str, *, limit: int = 5000) -> list[Organization]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM orgs ORDER BY created_at_ts ASC, rowid ASC LIMIT ?", (max(0, int(limit)),)
        ).fetchall()
        return [_row_to_org(r) for r in rows]
    finally:
        conn.close()


def update_org_alert_settings(
    db_path: str,
    *,
    org_id: str,
    alert_recipients: str,
    alert_extra_emails: list[str],
) -> bool:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "UPDATE orgs SET alert_recipients=?, alert_extra_emails_json=?, updated_at_ts=? WHERE id=?",
            (alert_recipients, _json_dumps(list(alert_extra_emails)), _utc_ts(), org_id),
        )
        return res.rowcount > 0
    finally:
        conn.close()


# --- Members ---


def create_member(
    db_path: str,
    *,
    org_id: str,
    email: str,
    role: str = ROLE_OWNER,
    plan: str = "standard",
    subscription_status: str | None = None,
    has_trial: bool = False,
    trial_ends_at_ts: float | None = None,
    access_blocked: bool = False,
) -> Member:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        mid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO members (
              id, org_id, email, role, plan, subscription_status,
              has_trial, trial_ends_at_ts, access_blocked, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mid,
                org_id,
                email.strip(),
                role,
                plan,
                subscription_status,
                1 if has_trial else 0,
                trial_ends_at_ts,
                1 if access_blocked else 0,
                now,
                now,
            ),
        )
        return Member(
            id=mid,
            org_id=org_id,
            email=email.strip(),
            role=role,
            plan=plan,
            subscription_status=subscription_status,
            has_trial=has_trial,
            trial_ends_at_ts=trial_ends_at_ts,
            access_blocked=access_blocked,
        )
    finally:
        conn.close()


def list_members(db_path: str, *, org_id: str) -> list[Member]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM members WHERE org_id=? ORDER BY created_at_ts ASC, rowid ASC", (org_id,)
        ).fetchall()
        return [_row_to_member(r) for r in rows]
    finally:
        conn.close()


def count_members(
    db_path: str,
    *,
    org_id: str | None = None,
    access_blocked: bool | None = None,
    subscription_status: str | None = None,
) -> int:
    clauses: list[str] = []
    params: list[Any] = []
    if org_id is not None:
        clauses.append("org_id=?")
        params.append(org_id)
    if access_blocked is not None:
        clauses.append("access_blocked=?")
        params.append(1 if access_blocked else 0)
    if subscription_status is not None:
        clauses.append("subscription_status=?")
        params.append(subscription_status)
    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(f"SELECT COUNT(*) AS n FROM members{where}", tuple(params)).fetchone()
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


def list_trials_ending(
    db_path: str,
    *,
    org_id: str,
    since_ts: float,
    until_ts: float,
    limit: int = 50,
) -> list[Member]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT * FROM members
            WHERE org_id=? AND has_trial=1 AND trial_ends_at_ts IS NOT NULL
              AND trial_ends_at_ts >= ? AND trial_ends_at_ts <= ?
            ORDER BY trial_ends_at_ts ASC, id ASC
            LIMIT ?
            """,
            (org_id, float(since_ts), float(until_ts), max(0, int(limit))),
        ).fetchall()
        return [_row_to_member(r) for r in rows]
    finally:
        conn.close()


def list_expired_trials(db_path: str, *, now_ts: float, limit: int = 5000) -> list[Member]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT * FROM members
            WHERE has_trial=1 AND access_blocked=0
              AND trial_ends_at_ts IS NOT NULL AND trial_ends_at_ts < ?
            ORDER BY trial_ends_at_ts ASC, id ASC
            LIMIT ?
            """,
            (float(now_ts), max(0, int(limit))),
        ).fetchall()
        return [_row_to_member(r) for r in rows]
    finally:
        conn.close()


def block_member(db_path: str, *, member_id: str) -> bool:
    """
    Returns True only for the call that actually flipped the flag.
    """
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "UPDATE members SET access_blocked=1, updated_at_ts=? WHERE id=? AND access_blocked=0",
            (_utc_ts(), member_id),
        )
        return res.rowcount > 0
    finally:
        conn.close()


# --- Monitors ---


def create_monitor(
    db_path: str,
    *,
    org_id: str,
    url: str,
    interval_minutes: int = 60,
    active: bool = True,
) -> Monitor:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        mid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO monitors (id, org_id, url, active, interval_minutes, created_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (mid, org_id, url.strip(), 1 if active else 0, int(interval_minutes), now, now),
        )
        return Monitor(id=mid, org_id=org_id, url=url.strip(), active=active, interval_minutes=int(interval_minutes))
    finally:
        conn.close()


def get_monitor(db_path: str, *, monitor_id: str) -> Monitor | None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM monitors WHERE id=?", (monitor_id,)).fetchone()
        return _row_to_monitor(row) if row else None
    finally:
        conn.close()


def list_active_monitors(db_path: str, *, limit: int = 5000) -> list[Monitor]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM monitors WHERE active=1 ORDER BY created_at_ts ASC, rowid ASC LIMIT ?",
            (max(0, int(limit)),),
        ).fetchall()
        return [_row_to_monitor(r) for r in rows]
    finally:
        conn.close()


def list_down_monitors(db_path: str, *, org_id: str, limit: int = 50) -> list[Monitor]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            """
            SELECT * FROM monitors
            WHERE org_id=? AND active=1 AND last_status='down'
            ORDER BY created_at_ts ASC, rowid ASC
            LIMIT ?
            """,
            (org_id, max(0, int(limit))),
        ).fetchall()
        return [_row_to_monitor(r) for r in rows]
    finally:
        conn.close()


def count_monitors(db_path: str, *, org_id: str, active_only: bool = True) -> int:
    sql = "SELECT COUNT(*) AS n FROM monitors WHERE org_id=?"
    if active_only:
        sql += " AND active=1"
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(sql, (org_id,)).fetchone()
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


def update_monitor_check(db_path: str, *, monitor_id: str, status: str, checked_at_ts: float) -> bool:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "UPDATE monitors SET last_status=?, last_checked_at_ts=?, updated_at_ts=? WHERE id=?",
            (status, float(checked_at_ts), _utc_ts(), monitor_id),
        )
        return res.rowcount > 0
    finally:
        conn.close()


def record_alert(
    db_path: str,
    *,
    monitor_id: str,
    status: str,
    alerted_at_ts: float,
    expected_last_alert_at_ts: float | None,
) -> bool:
    """
    Compare-and-swap on last_alert_at_ts: the write only lands if nobody else recorded
    an alert for this monitor since we read it.
    """
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            """
            UPDATE monitors
            SET last_alert_status=?, last_alert_at_ts=?, updated_at_ts=?
            WHERE id=? AND last_alert_at_ts IS ?
            """,
            (status, float(alerted_at_ts), _utc_ts(), monitor_id, expected_last_alert_at_ts),
        )
        return res.rowcount > 0
    finally:
        conn.close()


# --- Monitor logs ---


def insert_monitor_log(
    db_path: str,
    *,
    org_id: str,
    monitor_id: str,
    url: str,
    status: str,
    http_status: int,
    response_time_ms: float | None,
    error: str,
    checked_at_ts: float,
) -> MonitorLog:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        lid = _uuid()
        conn.execute(
            """
            INSERT INTO monitor_logs (
              id, org_id, monitor_id, url, status, http_status, response_time_ms, error, checked_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (lid, org_id, monitor_id, url, status, int(http_status), response_time_ms, error or "", float(checked_at_ts)),
        )
        return MonitorLog(
            id=lid,
            org_id=org_id,
            monitor_id=monitor_id,
            url=url,
            status=status,
            http_status=int(http_status),
            response_time_ms=response_time_ms,
            error=error or "",
            checked_at_ts=float(checked_at_ts),
        )
    finally:
        conn.close()


def list_monitor_logs(
    db_path: str,
    *,
    org_id: str,
    since_ts: float,
    status: str | None = None,
    limit: int | None = None,
) -> list[MonitorLog]:
    sql = "SELECT * FROM monitor_logs WHERE org_id=? AND checked_at_ts >= ?"
    params: list[Any] = [org_id, float(since_ts)]
    if status is not None:
        sql += " AND status=?"
        params.append(status)
    sql += " ORDER BY checked_at_ts ASC, rowid ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(max(0, int(limit)))

    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_log(r) for r in rows]
    finally:
        conn.close()


def count_monitor_logs(db_path: str, *, org_id: str, since_ts: float, status: str | None = None) -> int:
    sql = "SELECT COUNT(*) AS n FROM monitor_logs WHERE org_id=? AND checked_at_ts >= ?"
    params: list[Any] = [org_id, float(since_ts)]
    if status is not None:
        sql += " AND status=?"
        params.append(status)

    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["n"] or 0) if row else 0
    finally:
        conn.close()


def distinct_log_org_ids(db_path: str, *, since_ts: float) -> list[str]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT DISTINCT org_id FROM monitor_logs WHERE checked_at_ts >= ? ORDER BY org_id ASC",
            (float(since_ts),),
        ).fetchall()
        return [str(r["org_id"]) for r in rows]
    finally:
        conn.close()


# --- Periodic report markers ---


def has_cron_run(db_path: str, *, key: str) -> bool:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT 1 FROM cron_runs WHERE key=?", (key,)).fetchone()
        return row is not None
    finally:
        conn.close()


def mark_cron_run(db_path: str, *, key: str) -> bool:
    """
    Insert-if-absent. Returns False when the key was already recorded.
    """
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "INSERT OR IGNORE INTO cron_runs (key, created_at_ts) VALUES (?, ?)",
            (key, _utc_ts()),
        )
        return res.rowcount > 0
    finally:
        conn.close()


# --- Job leases ---


def acquire_lease(db_path: str, *, name: str, holder: str, ttl_seconds: float, now_ts: float | None = None) -> bool:
    now = float(now_ts) if now_ts is not None else _utc_ts()
    expires = now + max(1.0, float(ttl_seconds))

    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            row = conn.execute("SELECT holder, expires_at_ts FROM job_leases WHERE name=?", (name,)).fetchone()
            if row is not None and str(row["holder"]) != holder and float(row["expires_at_ts"]) > now:
                conn.execute("ROLLBACK;")
                return False
            conn.execute(
                "INSERT OR REPLACE INTO job_leases (name, holder, expires_at_ts) VALUES (?, ?, ?)",
                (name, holder, expires),
            )
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return True
    finally:
        conn.close()


def release_lease(db_path: str, *, name: str, holder: str) -> bool:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute("DELETE FROM job_leases WHERE name=? AND holder=?", (name, holder))
        return res.rowcount > 0
    finally:
        conn.close()


def new_lease_holder() -> str:
    return _uuid()
