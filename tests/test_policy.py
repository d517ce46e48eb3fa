from __future__ import annotations

import pytest

from fleet_guard.models import DeploymentRecord
from fleet_guard.policy import EscalationWindows, RemediationAction, Signal, decide


NOW = 1_700_000_000.0


def _deployed(seconds_ago: float) -> DeploymentRecord:
    return DeploymentRecord(deployed_at=NOW - seconds_ago, version="v2", worker_name="svc-a", previous_version="v1")


@pytest.mark.parametrize(
    ("signal", "deployment", "expected"),
    [
        (Signal.PROBE_UNHEALTHY, _deployed(120), RemediationAction.ROLLBACK),
        (Signal.PROBE_UNHEALTHY, _deployed(301), RemediationAction.ALERT_ONLY),
        (Signal.PROBE_UNHEALTHY, None, RemediationAction.ALERT_ONLY),
        (Signal.HEARTBEAT_DEAD, _deployed(30 * 60), RemediationAction.ROLLBACK),
        (Signal.HEARTBEAT_DEAD, _deployed(61 * 60), RemediationAction.RESTART),
        (Signal.HEARTBEAT_DEAD, None, RemediationAction.RESTART),
    ],
)
def test_decide_matrix(signal: Signal, deployment: DeploymentRecord | None, expected: RemediationAction) -> None:
    assert decide(signal, deployment, NOW) is expected


def test_window_boundary_is_exclusive() -> None:
    assert decide(Signal.PROBE_UNHEALTHY, _deployed(300), NOW) is RemediationAction.ALERT_ONLY
    assert decide(Signal.PROBE_UNHEALTHY, _deployed(299.9), NOW) is RemediationAction.ROLLBACK


def test_future_deployment_counts_as_recent() -> None:
    assert decide(Signal.PROBE_UNHEALTHY, _deployed(-30), NOW) is RemediationAction.ROLLBACK


def test_custom_windows() -> None:
    windows = EscalationWindows(probe_seconds=60, heartbeat_seconds=120)
    assert decide(Signal.PROBE_UNHEALTHY, _deployed(90), NOW, windows) is RemediationAction.ALERT_ONLY
    assert decide(Signal.HEARTBEAT_DEAD, _deployed(90), NOW, windows) is RemediationAction.ROLLBACK
    assert decide(Signal.HEARTBEAT_DEAD, _deployed(180), NOW, windows) is RemediationAction.RESTART
