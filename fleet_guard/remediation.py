"""Carries out policy decisions exactly once per deployment version or cooldown."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from fleet_guard.alerts import AlertContext, AlertDispatcher, AlertType
from fleet_guard.infra import RemediationResult
from fleet_guard.models import DeploymentRecord
from fleet_guard.policy import RemediationAction
from fleet_guard.store import RemediationLedger, StoreWriteError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RemediationOutcome:
    worker_name: str
    action: RemediationAction
    executed: bool
    result: RemediationResult | None = None
    alert_delivered: bool = False
    skipped_reason: str | None = None


def _result_suffix(result: RemediationResult) -> str:
    if result.success:
        return "succeeded"
    return f"failed: {result.error or 'unknown error'}"


class RemediationExecutor:
    """
    Executes a remediation action and routes the matching alert.

    ``infra`` is any object providing ``trigger_rollback(worker, reason, deployment)``
    and ``restart_worker(worker)`` coroutines returning ``RemediationResult``.
    """

    def __init__(
        self,
        infra: Any,
        dispatcher: AlertDispatcher,
        ledger: RemediationLedger,
        *,
        rollback_guard_ttl_ms: int = 60 * 60 * 1000,
        restart_cooldown_ms: int = 5 * 60 * 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.infra = infra
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.rollback_guard_ttl_ms = int(rollback_guard_ttl_ms)
        self.restart_cooldown_ms = int(restart_cooldown_ms)
        self.clock = clock

    async def _claim(self, key: str, ttl_ms: int) -> bool:
        """Record intent to remediate; False if the same remediation was already issued."""
        previous = await self.ledger.read(key)
        if not previous.ok:
            logger.warning("Remediation ledger unreadable; proceeding", key=key, error=previous.error)
        elif previous.value is not None:
            return False
        try:
            await self.ledger.write(key, self.clock(), ttl_seconds=max(1.0, ttl_ms / 1000.0))
        except StoreWriteError as exc:
            logger.error("Failed to record remediation", key=key, error=str(exc))
        return True

    async def execute(
        self,
        action: RemediationAction,
        *,
        worker_name: str,
        reason: str,
        deployment: DeploymentRecord | None,
    ) -> RemediationOutcome:
        if action is RemediationAction.ROLLBACK and deployment is not None:
            key = f"rollback:{worker_name}:{deployment.version}"
            if not await self._claim(key, self.rollback_guard_ttl_ms):
                logger.info("Rollback already issued for this deployment", worker=worker_name, version=deployment.version)
                return RemediationOutcome(worker_name, action, executed=False, skipped_reason="already_rolled_back")
            result = await self.infra.trigger_rollback(worker_name, reason, deployment)
            logger.info("Rollback finished", worker=worker_name, success=result.success, error=result.error)
            delivered = await self.dispatcher.send_alert(
                AlertContext(
                    type=AlertType.ROLLBACK_TRIGGERED,
                    worker_name=worker_name,
                    reason=f"{reason} (rollback {_result_suffix(result)})",
                    deployment=deployment,
                )
            )
            return RemediationOutcome(worker_name, action, executed=True, result=result, alert_delivered=delivered)

        if action is RemediationAction.RESTART:
            key = f"restart:{worker_name}"
            if not await self._claim(key, self.restart_cooldown_ms):
                logger.info("Restart cooling down", worker=worker_name)
                return RemediationOutcome(worker_name, action, executed=False, skipped_reason="restart_cooldown")
            result = await self.infra.restart_worker(worker_name)
            logger.info("Restart finished", worker=worker_name, success=result.success, error=result.error)
            delivered = await self.dispatcher.send_alert(
                AlertContext(
                    type=AlertType.WORKER_RESTARTED,
                    worker_name=worker_name,
                    reason=f"{reason} (restart {_result_suffix(result)})",
                    deployment=deployment,
                )
            )
            return RemediationOutcome(worker_name, action, executed=True, result=result, alert_delivered=delivered)

        delivered = await self.dispatcher.send_alert(
            AlertContext(
                type=AlertType.HEALTH_CHECK_FAILED,
                worker_name=worker_name,
                reason=reason,
                deployment=deployment,
            )
        )
        return RemediationOutcome(worker_name, RemediationAction.ALERT_ONLY, executed=False, alert_delivered=delivered)
