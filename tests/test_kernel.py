from __future__ import annotations

import asyncio

import httpx
import pytest

from fleet_guard.config import FleetGuardConfig
from fleet_guard.kernel import HEALTH_TRIGGER, HEARTBEAT_TRIGGER, SafetyKernel
from fleet_guard.models import OverallStatus
from fleet_guard.store import LeaseStore, MemoryBackend

from conftest import FailingBackend, RecordingInfra, RecordingNotifier


def _config() -> FleetGuardConfig:
    return FleetGuardConfig(
        namespace="kernel-test",
        targets=[
            {"name": "svc-a", "health_endpoint": "http://svc-a/health"},
            {"name": "svc-b", "health_endpoint": "http://svc-b/health"},
        ],
        store={"backend": "memory"},
        health_check_timeout_ms=1000,
    )


def _kernel(client, backend, clock, infra=None, notifier=None) -> SafetyKernel:
    return SafetyKernel(
        _config(),
        http_client=client,
        backend=backend,
        infra=infra or RecordingInfra(),
        notifier=notifier or RecordingNotifier(),
        clock=clock,
    )


def _handler(unhealthy: set[str]):
    def handle(request: httpx.Request) -> httpx.Response:
        if request.url.host in unhealthy:
            return httpx.Response(500, json={"status": "error"})
        return httpx.Response(200, json={"status": "healthy"})

    return handle


@pytest.mark.asyncio
async def test_health_cycle_rolls_back_recent_deploy(clock) -> None:
    infra, notifier = RecordingInfra(), RecordingNotifier()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler({"svc-b"}))) as client:
        kernel = _kernel(client, MemoryBackend(clock), clock, infra, notifier)
        assert await kernel.record_deployment("svc-b", "v3") is True
        clock.advance(120)

        status = await kernel.run_health_cycle()

    assert status is not None
    assert status.overall is OverallStatus.DEGRADED
    assert [r[0] for r in infra.rollbacks] == ["svc-b"]
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_heartbeat_cycle_restarts_silent_worker(clock) -> None:
    infra = RecordingInfra()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(set()))) as client:
        kernel = _kernel(client, MemoryBackend(clock), clock, infra)
        await kernel.record_heartbeat("svc-a", {"build": "42"})
        await kernel.record_heartbeat("svc-b")
        clock.advance(11 * 60)
        await kernel.record_heartbeat("svc-b")

        report = await kernel.run_heartbeat_cycle()

    assert report is not None
    assert [r.target for r in report.dead] == ["svc-a"]
    assert infra.restarts == ["svc-a"]


@pytest.mark.asyncio
@pytest.mark.parametrize("trigger", [HEALTH_TRIGGER, HEARTBEAT_TRIGGER])
async def test_cycle_skipped_while_lease_held_elsewhere(clock, trigger: str) -> None:
    backend = MemoryBackend(clock)
    other = LeaseStore(backend, "kernel-test", owner="other-process")
    assert await other.acquire(trigger, ttl_seconds=120, now_ts=clock.now)

    infra = RecordingInfra()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler({"svc-a", "svc-b"}))) as client:
        kernel = _kernel(client, backend, clock, infra)
        if trigger == HEALTH_TRIGGER:
            assert await kernel.run_health_cycle() is None
        else:
            assert await kernel.run_heartbeat_cycle() is None

        # The lease expires and the next tick runs.
        clock.advance(120)
        if trigger == HEALTH_TRIGGER:
            assert await kernel.run_health_cycle() is not None
        else:
            assert await kernel.run_heartbeat_cycle() is not None


@pytest.mark.asyncio
async def test_lease_released_after_cycle(clock) -> None:
    backend = MemoryBackend(clock)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(set()))) as client:
        kernel = _kernel(client, backend, clock)
        assert await kernel.run_health_cycle() is not None

    other = LeaseStore(backend, "kernel-test", owner="other-process")
    assert await other.acquire(HEALTH_TRIGGER, ttl_seconds=120, now_ts=clock.now) is True


@pytest.mark.asyncio
async def test_unreadable_lease_store_still_runs_cycle(clock) -> None:
    notifier = RecordingNotifier()
    backend = FailingBackend(clock, fail_reads=True, fail_writes=True)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler({"svc-a"}))) as client:
        kernel = _kernel(client, backend, clock, notifier=notifier)
        status = await kernel.run_health_cycle()

    assert status is not None
    assert [c.target for c in status.unhealthy_checks] == ["svc-a"]
    assert len(notifier.messages) == 1


@pytest.mark.asyncio
async def test_overlapping_cycles_in_one_process(clock) -> None:
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={"status": "healthy"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        kernel = _kernel(client, MemoryBackend(clock), clock)
        first, second = await asyncio.gather(kernel.run_health_cycle(), kernel.run_health_cycle())

    assert (first is None) != (second is None)


@pytest.mark.asyncio
async def test_force_rollback_rejects_unknown_worker(clock) -> None:
    infra = RecordingInfra()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(set()))) as client:
        kernel = _kernel(client, MemoryBackend(clock), clock, infra)
        result = await kernel.force_rollback("ghost", "token")

    assert result.success is False
    assert result.error == "unknown_worker"
    assert infra.rollbacks == []


@pytest.mark.asyncio
async def test_status_queries(clock) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler(set()))) as client:
        kernel = _kernel(client, MemoryBackend(clock), clock)
        assert await kernel.latest_health_status() is None
        await kernel.run_health_cycle()

        latest = await kernel.latest_health_status()
        stats = await kernel.get_health_stats()
        heartbeats = await kernel.get_heartbeat_status()

    assert latest is not None and latest.overall is OverallStatus.HEALTHY
    assert stats.total_checks == 2
    assert stats.success_rate == 100.0
    assert [h.target for h in heartbeats] == ["svc-a", "svc-b"]
    assert kernel.is_known_worker("svc-a")
    assert not kernel.is_known_worker("ghost")


class _SlowInfra(RecordingInfra):
    """Each rollback takes ``step`` seconds; another process tries the lease meanwhile."""

    def __init__(self, clock, backend, step: float):
        super().__init__()
        self.clock = clock
        self.step = step
        self.rival = LeaseStore(backend, "kernel-test", owner="other-process")
        self.rival_acquired: list[bool] = []

    async def trigger_rollback(self, worker_name, reason, deployment):
        self.clock.advance(self.step)
        self.rival_acquired.append(
            await self.rival.acquire(HEALTH_TRIGGER, ttl_seconds=120, now_ts=self.clock.now)
        )
        return await super().trigger_rollback(worker_name, reason, deployment)


@pytest.mark.asyncio
async def test_lease_renewed_across_slow_remediations(clock) -> None:
    backend = MemoryBackend(clock)
    infra = _SlowInfra(clock, backend, step=100)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler({"svc-a", "svc-b"}))) as client:
        kernel = _kernel(client, backend, clock, infra)
        await kernel.record_deployment("svc-a", "v2")
        await kernel.record_deployment("svc-b", "v7")

        status = await kernel.run_health_cycle()

    assert status is not None
    assert [r[0] for r in infra.rollbacks] == ["svc-a", "svc-b"]
    # 200s of remediation outlasts a 120s lease only if it is never renewed.
    assert infra.rival_acquired == [False, False]


@pytest.mark.asyncio
async def test_lost_lease_stops_remaining_remediations(clock) -> None:
    backend = MemoryBackend(clock)
    infra = _SlowInfra(clock, backend, step=150)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler({"svc-a", "svc-b"}))) as client:
        kernel = _kernel(client, backend, clock, infra)
        await kernel.record_deployment("svc-a", "v2")
        await kernel.record_deployment("svc-b", "v7")

        status = await kernel.run_health_cycle()

    assert status is not None
    assert infra.rival_acquired == [True]
    assert [r[0] for r in infra.rollbacks] == ["svc-a"]

    # The rival's lease survives this cycle's exit.
    again = LeaseStore(backend, "kernel-test", owner="third-process")
    assert await again.acquire(HEALTH_TRIGGER, ttl_seconds=120, now_ts=clock.now) is False
