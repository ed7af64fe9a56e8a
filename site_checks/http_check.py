from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx

from site_checks.models import STATUS_DOWN, STATUS_UP


DEFAULT_TIMEOUT_SECONDS = 8.0


@dataclass(frozen=True)
class CheckResult:
    status: str  # up|down
    http_status: int  # 0 when no response was received
    response_time_ms: int
    error: str  # empty on success

    @property
    def ok(self) -> bool:
        return self.status == STATUS_UP


def safe_url(url: str) -> str:
    """
    Prevent huge/sensitive querystrings from bloating logs and emails.
    """
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


def classify_status_code(status_code: int) -> str:
    return STATUS_UP if 200 <= int(status_code) < 400 else STATUS_DOWN


def _describe_error(exc: Exception) -> str:
    detail = str(exc or "").strip()
    name = type(exc).__name__
    return f"{name}: {detail}" if detail else name


async def check_url_once(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> CheckResult:
    """
    One GET with redirects followed. Never raises: every failure becomes a DOWN result.

    timeout_seconds bounds the whole exchange including the body, not each socket op.
    """
    timeout = float(timeout_seconds)
    started = time.perf_counter()
    try:
        resp = await asyncio.wait_for(client.get(url, follow_redirects=True, timeout=timeout), timeout)
    except asyncio.TimeoutError:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return CheckResult(
            status=STATUS_DOWN,
            http_status=0,
            response_time_ms=int(round(elapsed_ms)),
            error=f"timeout after {timeout:g}s",
        )
    except httpx.TimeoutException as e:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return CheckResult(
            status=STATUS_DOWN,
            http_status=0,
            response_time_ms=int(round(elapsed_ms)),
            error=f"timeout after {float(timeout_seconds):g}s ({_describe_error(e)})",
        )
    except Exception as e:
        # Transport failures, DNS errors, invalid or unsupported URLs.
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return CheckResult(
            status=STATUS_DOWN,
            http_status=0,
            response_time_ms=int(round(elapsed_ms)),
            error=f"http_error: {_describe_error(e)}",
        )

    elapsed_ms = (time.perf_counter() - started) * 1000.0
    status = classify_status_code(resp.status_code)
    return CheckResult(
        status=status,
        http_status=int(resp.status_code),
        response_time_ms=int(round(elapsed_ms)),
        error="" if status == STATUS_UP else f"HTTP {resp.status_code}",
    )
