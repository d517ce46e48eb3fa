from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from fleet_guard.models import DeploymentRecord


class Signal(str, Enum):
    PROBE_UNHEALTHY = "probe_unhealthy"
    HEARTBEAT_DEAD = "heartbeat_dead"


class RemediationAction(str, Enum):
    ROLLBACK = "rollback"
    RESTART = "restart"
    ALERT_ONLY = "alert_only"


@dataclass(frozen=True)
class EscalationWindows:
    probe_seconds: float = 5 * 60.0
    heartbeat_seconds: float = 60 * 60.0

    def for_signal(self, signal: Signal) -> float:
        if signal is Signal.HEARTBEAT_DEAD:
            return self.heartbeat_seconds
        return self.probe_seconds


DEFAULT_WINDOWS = EscalationWindows()


def is_recent_deployment(deployment: DeploymentRecord | None, now_ts: float, window_seconds: float) -> bool:
    if deployment is None:
        return False
    # A deployed_at in the future (clock skew) is treated as just deployed.
    return (float(now_ts) - float(deployment.deployed_at)) < float(window_seconds)


def decide(
    signal: Signal,
    deployment: DeploymentRecord | None,
    now_ts: float,
    windows: EscalationWindows = DEFAULT_WINDOWS,
) -> RemediationAction:
    """
    Map a failure signal and deployment recency to a remediation action.

    Failures shortly after a deployment are blamed on it and rolled back. A dead
    worker without a recent deployment is restarted. An unhealthy probe without
    one only alerts.
    """
    if is_recent_deployment(deployment, now_ts, windows.for_signal(signal)):
        return RemediationAction.ROLLBACK
    if signal is Signal.HEARTBEAT_DEAD:
        return RemediationAction.RESTART
    return RemediationAction.ALERT_ONLY
