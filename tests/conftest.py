from __future__ import annotations

from typing import Any

import pytest

from fleet_guard.alerts import AlertDispatcher
from fleet_guard.infra import RemediationResult
from fleet_guard.models import DeploymentRecord, MonitoredTarget
from fleet_guard.remediation import RemediationExecutor
from fleet_guard.store import MemoryBackend, StateStores


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class RecordingInfra:
    def __init__(self, *, success: bool = True):
        self.success = success
        self.rollbacks: list[tuple[str, str, DeploymentRecord]] = []
        self.restarts: list[str] = []

    async def trigger_rollback(self, worker_name: str, reason: str, deployment: DeploymentRecord) -> RemediationResult:
        self.rollbacks.append((worker_name, reason, deployment))
        return RemediationResult(success=self.success, error=None if self.success else "boom")

    async def restart_worker(self, worker_name: str) -> RemediationResult:
        self.restarts.append(worker_name)
        return RemediationResult(success=self.success, error=None if self.success else "boom")

    async def admin_force_rollback(self, worker_name: str, admin_token: str, expected_token: str) -> RemediationResult:
        self.rollbacks.append((worker_name, "Manual admin force rollback", None))
        return RemediationResult(success=True)


class RecordingNotifier:
    configured = True

    def __init__(self, *, ok: bool = True, raises: bool = False):
        self.ok = ok
        self.raises = raises
        self.messages: list[str] = []

    async def send(self, text: str) -> bool:
        self.messages.append(text)
        if self.raises:
            raise ConnectionError("channel down")
        return self.ok


class FailingBackend(MemoryBackend):
    """Memory backend whose reads and/or writes can be switched to fail."""

    def __init__(self, clock, *, fail_reads: bool = False, fail_writes: bool = False):
        super().__init__(clock)
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.failing_reads_left = 0

    async def get(self, table: str, key: str) -> Any | None:
        if self.failing_reads_left > 0:
            self.failing_reads_left -= 1
            raise OSError("store unavailable")
        if self.fail_reads:
            raise OSError("store unavailable")
        return await super().get(table, key)

    async def put(self, table: str, key: str, value: Any, *, ttl_seconds: float) -> None:
        if self.fail_writes:
            raise OSError("store unavailable")
        await super().put(table, key, value, ttl_seconds=ttl_seconds)


def make_target(name: str, endpoint: str = "http://127.0.0.1:9/health") -> MonitoredTarget:
    return MonitoredTarget(name=name, health_endpoint=endpoint, heartbeat_key=f"hb-{name}", deployment_key=f"dep-{name}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock)


@pytest.fixture
def stores(backend: MemoryBackend) -> StateStores:
    return StateStores.create(backend, "test")


@pytest.fixture
def infra() -> RecordingInfra:
    return RecordingInfra()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(stores: StateStores, notifier: RecordingNotifier, clock: FakeClock) -> AlertDispatcher:
    return AlertDispatcher(stores.alerts, notifier, cooldown_ms=300_000, clock=clock)


@pytest.fixture
def executor(infra: RecordingInfra, dispatcher: AlertDispatcher, stores: StateStores, clock: FakeClock) -> RemediationExecutor:
    return RemediationExecutor(infra, dispatcher, stores.remediations, clock=clock)


@pytest.fixture
def target_factory():
    return make_target
