from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import structlog

from fleet_guard.models import DeploymentRecord


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InfraConfig:
    api_base_url: str = "https://api.cloudflare.com/client/v4"
    account_id: str = ""
    api_token: str = ""
    timeout_seconds: float = 20.0

    @property
    def configured(self) -> bool:
        return bool(self.account_id.strip() and self.api_token.strip())


@dataclass(frozen=True)
class RemediationResult:
    success: bool
    error: str | None = None


def _error_text(resp: httpx.Response, *, max_len: int = 300) -> str:
    try:
        text = resp.text or ""
    except Exception:
        text = ""
    return text.strip()[:max_len]


class InfraControlClient:
    """
    Rollback and restart calls against the hosting platform's control API.

    Results are returned, never raised, and never retried here.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: InfraConfig,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.config = config
        self.clock = clock

    def _script_url(self, worker_name: str, suffix: str = "") -> str:
        base = self.config.api_base_url.rstrip("/")
        return f"{base}/accounts/{self.config.account_id}/workers/scripts/{worker_name}{suffix}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_token}", "Content-Type": "application/json"}

    async def _list_deployments(self, worker_name: str) -> list[dict[str, Any]]:
        resp = await self.client.get(
            self._script_url(worker_name, "/deployments"),
            headers=self._headers(),
            timeout=self.config.timeout_seconds,
        )
        if not resp.is_success:
            raise RuntimeError(f"Failed to get deployments: {resp.status_code}")
        data = resp.json()
        result = data.get("result") if isinstance(data, dict) else None
        deployments = result.get("deployments") if isinstance(result, dict) else None
        return [d for d in (deployments or []) if isinstance(d, dict) and d.get("id")]

    async def trigger_rollback(
        self, worker_name: str, reason: str, deployment: DeploymentRecord
    ) -> RemediationResult:
        logger.info(
            "Initiating rollback",
            worker=worker_name,
            reason=reason,
            from_version=deployment.version,
            to_version=deployment.previous_version or "previous",
        )
        if not self.config.configured:
            logger.error("Missing infra API credentials; cannot roll back", worker=worker_name)
            return RemediationResult(success=False, error="Missing infra API credentials")

        try:
            deployments = await self._list_deployments(worker_name)
            if len(deployments) < 2:
                logger.error("No previous deployment to roll back to", worker=worker_name)
                return RemediationResult(success=False, error="No previous deployment available")

            # Deployments are listed newest first.
            previous_id = str(deployments[1]["id"])
            resp = await self.client.post(
                self._script_url(worker_name, f"/deployments/{previous_id}/rollback"),
                headers=self._headers(),
                json={"message": f"Automatic rollback: {reason}"},
                timeout=self.config.timeout_seconds,
            )
            if not resp.is_success:
                logger.warning(
                    "Rollback API call failed; promoting previous version instead",
                    worker=worker_name,
                    status_code=resp.status_code,
                    error=_error_text(resp),
                )
                return await self._promote_version(worker_name, previous_id)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            err = f"{type(exc).__name__}: {exc}"
            logger.error("Rollback failed", worker=worker_name, error=err)
            return RemediationResult(success=False, error=err)

        logger.info("Rolled back worker", worker=worker_name, deployment_id=previous_id)
        return RemediationResult(success=True)

    async def _promote_version(self, worker_name: str, version_id: str) -> RemediationResult:
        resp = await self.client.post(
            self._script_url(worker_name, f"/versions/{version_id}/promote"),
            headers=self._headers(),
            timeout=self.config.timeout_seconds,
        )
        if not resp.is_success:
            return RemediationResult(
                success=False, error=f"Failed to promote previous version: {_error_text(resp)}"
            )
        logger.info("Promoted previous version", worker=worker_name, version_id=version_id)
        return RemediationResult(success=True)

    async def restart_worker(self, worker_name: str) -> RemediationResult:
        logger.info("Attempting restart", worker=worker_name)
        if not self.config.configured:
            logger.error("Missing infra API credentials; cannot restart", worker=worker_name)
            return RemediationResult(success=False, error="Missing infra API credentials")

        try:
            # The platform has no restart call; a no-op settings patch recycles the worker.
            resp = await self.client.patch(
                self._script_url(worker_name, "/settings"),
                headers=self._headers(),
                json={"logpush": False},
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            err = f"{type(exc).__name__}: {exc}"
            logger.error("Restart failed", worker=worker_name, error=err)
            return RemediationResult(success=False, error=err)

        if not resp.is_success:
            logger.warning(
                "Settings patch rejected; worker may not restart",
                worker=worker_name,
                status_code=resp.status_code,
            )
        logger.info("Restart signal sent", worker=worker_name)
        return RemediationResult(success=True)

    async def admin_force_rollback(
        self, worker_name: str, admin_token: str, expected_token: str
    ) -> RemediationResult:
        if not (expected_token or "").strip():
            return RemediationResult(success=False, error="Admin override not configured")
        if not hmac.compare_digest((admin_token or "").strip(), expected_token.strip()):
            logger.warning("Invalid admin token provided for rollback", worker=worker_name)
            return RemediationResult(success=False, error="Invalid admin token")

        logger.warning("Force rollback initiated by admin", worker=worker_name)
        placeholder = DeploymentRecord(deployed_at=self.clock(), version="unknown", worker_name=worker_name)
        return await self.trigger_rollback(worker_name, "Manual admin force rollback", placeholder)
