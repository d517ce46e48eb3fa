from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from fleet_guard.config import FleetGuardConfig


def auth_header_token(req: Request) -> str:
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


def get_config(req: Request) -> FleetGuardConfig:
    config: Any = getattr(req.app.state, "config", None)
    if not isinstance(config, FleetGuardConfig):
        raise RuntimeError("Watchdog config not configured")
    return config


def _matches(token: str, expected: str) -> bool:
    return bool(expected.strip()) and hmac.compare_digest(token.strip(), expected.strip())


def require_admin(req: Request, config: FleetGuardConfig = Depends(get_config)) -> str:
    token = auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not config.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not _matches(token, config.admin_token):
        raise HTTPException(status_code=403, detail="invalid_admin_token")
    return token


def require_ingest(req: Request, config: FleetGuardConfig = Depends(get_config)) -> None:
    token = auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not config.ingest_token:
        raise HTTPException(status_code=503, detail="ingest_token_not_configured")
    if not _matches(token, config.ingest_token):
        raise HTTPException(status_code=403, detail="invalid_ingest_token")


def require_reader(req: Request, config: FleetGuardConfig = Depends(get_config)) -> None:
    token = auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not (config.ingest_token or config.admin_token):
        raise HTTPException(status_code=503, detail="tokens_not_configured")
    if not (_matches(token, config.ingest_token) or _matches(token, config.admin_token)):
        raise HTTPException(status_code=403, detail="invalid_token")
