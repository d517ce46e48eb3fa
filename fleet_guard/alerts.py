"""Operator alerts with per-(type, worker) cooldown."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import structlog

from fleet_guard.models import DeploymentRecord
from fleet_guard.store import AlertStateStore, StoreWriteError


logger = structlog.get_logger(__name__)

DEFAULT_COOLDOWN_MS = 5 * 60 * 1000


class AlertType(str, Enum):
    ROLLBACK_TRIGGERED = "rollback_triggered"
    HEALTH_CHECK_FAILED = "health_check_failed"
    WORKER_RESTARTED = "worker_restarted"


_TITLES = {
    AlertType.ROLLBACK_TRIGGERED: "ROLLBACK TRIGGERED 🔄",
    AlertType.HEALTH_CHECK_FAILED: "HEALTH CHECK FAILED ❌",
    AlertType.WORKER_RESTARTED: "WORKER RESTARTED ♻️",
}


@dataclass(frozen=True)
class AlertContext:
    type: AlertType
    worker_name: str
    reason: str
    deployment: DeploymentRecord | None = None

    @property
    def alert_key(self) -> str:
        return f"{self.type.value}:{self.worker_name}"


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_alert_message(context: AlertContext) -> str:
    lines = [
        _TITLES.get(context.type, context.type.value),
        f"Worker: {context.worker_name}",
        f"Reason: {str(context.reason).strip()[:500]}",
    ]
    d = context.deployment
    if d is not None:
        lines.append("Deployment:")
        lines.append(f"- Version: {d.version}")
        lines.append(f"- Deployed at: {_format_ts(d.deployed_at)}")
        if d.previous_version:
            lines.append(f"- Previous version: {d.previous_version}")
    return "\n".join(lines).strip()


class AlertDispatcher:
    """
    Formats and delivers alerts through a notifier.

    The notifier is any object with ``async send(text) -> bool``; ``None``
    means no channel is configured. Alerts are recorded as sent even when
    delivery fails so a recovering channel is not flooded with retries.
    """

    def __init__(
        self,
        state: AlertStateStore,
        notifier: Any | None,
        *,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.notifier = notifier
        self.cooldown_ms = int(cooldown_ms)
        self.clock = clock

    async def _deliver(self, text: str) -> bool:
        if self.notifier is None or not getattr(self.notifier, "configured", True):
            logger.warning("Alert channel not configured; alert logged only", message=text)
            return False
        try:
            ok = bool(await self.notifier.send(text))
        except Exception as exc:
            logger.error("Alert delivery failed", error=f"{type(exc).__name__}: {exc}", message=text)
            return False
        if not ok:
            logger.error("Alert delivery failed", message=text)
        return ok

    async def send_alert(self, context: AlertContext) -> bool:
        now_ts = self.clock()
        key = context.alert_key

        current = await self.state.read()
        if not current.ok:
            logger.warning("Alert state unreadable; treating as empty", alert_key=key, error=current.error)
        state = dict(current.value or {})

        last_sent = state.get(key)
        if last_sent is not None and (now_ts - last_sent) * 1000.0 <= self.cooldown_ms:
            logger.debug("Alert suppressed by cooldown", alert_key=key, last_sent=last_sent)
            return False

        delivered = await self._deliver(format_alert_message(context))
        logger.info("Alert dispatched", alert_key=key, delivered=delivered)

        if not current.ok:
            # Never write an empty-based document over other keys' cooldowns.
            retry = await self.state.read()
            if not retry.ok:
                logger.error("Alert state still unreadable; not recording", alert_key=key, error=retry.error)
                return delivered
            state = dict(retry.value or {})

        state[key] = now_ts
        try:
            await self.state.write(state, now_ts=now_ts)
        except StoreWriteError as exc:
            logger.error("Failed to persist alert state", alert_key=key, error=str(exc))
        return delivered

    async def send_test_alert(self) -> bool:
        """Deliver a test message, ignoring and not touching cooldown state."""
        text = "\n".join(
            [
                "fleet-guard test alert 🔔",
                f"Sent at: {_format_ts(self.clock())}",
                "Alert delivery is working.",
            ]
        )
        return await self._deliver(text)
