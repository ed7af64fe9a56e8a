from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from site_registry.settings import RegistrySettings


CRON_KEY_HEADER = "x-cron-key"


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_settings(req: Request) -> RegistrySettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, RegistrySettings):
        raise RuntimeError("Registry settings not configured")
    return settings


def require_admin(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not hmac.compare_digest(token.strip(), settings.admin_token.strip()):
        raise HTTPException(status_code=403, detail="invalid_admin_token")


def require_cron_key(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    key = (req.headers.get(CRON_KEY_HEADER) or "").strip()
    if not key:
        raise HTTPException(status_code=401, detail="missing_cron_key")
    if not settings.cron_key:
        raise HTTPException(status_code=503, detail="cron_key_not_configured")
    if not hmac.compare_digest(key, settings.cron_key.strip()):
        raise HTTPException(status_code=403, detail="invalid_cron_key")
