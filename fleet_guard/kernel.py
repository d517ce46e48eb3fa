"""Wires the detectors, policy, remediation and alerting into one watchdog."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog

from fleet_guard.alerts import AlertDispatcher
from fleet_guard.config import FleetGuardConfig
from fleet_guard.deadman import DeadMansSwitchMonitor
from fleet_guard.infra import InfraControlClient, RemediationResult
from fleet_guard.models import DeadMansSwitchReport, HealthStats, HealthStatus, HeartbeatCheck
from fleet_guard.probes import HealthProbeRunner
from fleet_guard.remediation import RemediationExecutor
from fleet_guard.store import JsonFileBackend, KeyValueBackend, MemoryBackend, StateStores, StoreError
from fleet_guard.telegram import TelegramNotifier


logger = structlog.get_logger(__name__)

HEALTH_TRIGGER = "health_checks"
HEARTBEAT_TRIGGER = "dead_mans_switch"


def build_backend(config: FleetGuardConfig, clock: Callable[[], float] = time.time) -> KeyValueBackend:
    if config.store.backend == "memory":
        return MemoryBackend(clock=clock)
    return JsonFileBackend(Path(config.store.path), clock=clock)


class SafetyKernel:
    """
    The fleet safety kernel.

    All topology comes from ``config``; collaborators (store backend, infra
    client, notifier) are injected so tests and alternate deployments can swap them.
    """

    def __init__(
        self,
        config: FleetGuardConfig,
        *,
        http_client: httpx.AsyncClient,
        backend: KeyValueBackend | None = None,
        infra: Any | None = None,
        notifier: Any | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.targets = config.fleet()
        self.stores = StateStores.create(backend or build_backend(config, clock), config.namespace)
        self.infra = infra if infra is not None else InfraControlClient(
            http_client, config.infra_config(), clock=clock
        )
        if notifier is None:
            notifier = TelegramNotifier(http_client, config.telegram_config())
        self.dispatcher = AlertDispatcher(
            self.stores.alerts, notifier, cooldown_ms=config.alert_cooldown_ms, clock=clock
        )
        self.executor = RemediationExecutor(
            self.infra,
            self.dispatcher,
            self.stores.remediations,
            rollback_guard_ttl_ms=config.rollback_guard_ttl_ms,
            restart_cooldown_ms=config.restart_cooldown_ms,
            clock=clock,
        )
        windows = config.windows()
        self.probes = HealthProbeRunner(
            http_client,
            self.targets,
            deployments=self.stores.deployments,
            history=self.stores.history,
            executor=self.executor,
            timeout_ms=config.health_check_timeout_ms,
            windows=windows,
            clock=clock,
        )
        self.deadman = DeadMansSwitchMonitor(
            self.targets,
            heartbeats=self.stores.heartbeats,
            deployments=self.stores.deployments,
            executor=self.executor,
            threshold_ms=config.heartbeat_threshold_ms,
            windows=windows,
            clock=clock,
        )
        self._locks = {HEALTH_TRIGGER: asyncio.Lock(), HEARTBEAT_TRIGGER: asyncio.Lock()}

    def _keepalive(self, trigger: str, guarded: bool) -> Callable[[], Awaitable[bool]]:
        async def renew() -> bool:
            if not guarded:
                return True
            try:
                return await self.stores.leases.renew(
                    trigger, ttl_seconds=self.config.lease_ttl_seconds, now_ts=self.clock()
                )
            except StoreError as exc:
                logger.warning("Lease renewal failed; continuing cycle", trigger=trigger, error=str(exc))
                return True

        return renew

    @asynccontextmanager
    async def _cycle(self, trigger: str) -> AsyncIterator[Callable[[], Awaitable[bool]] | None]:
        """Yield a lease keepalive, or None when another cycle owns the trigger."""
        lock = self._locks[trigger]
        if lock.locked():
            logger.info("Cycle already running in this process; skipping", trigger=trigger)
            yield None
            return
        async with lock:
            guarded = True
            try:
                leased = await self.stores.leases.acquire(
                    trigger, ttl_seconds=self.config.lease_ttl_seconds, now_ts=self.clock()
                )
            except StoreError as exc:
                # Losing the lease store must not stop monitoring.
                logger.warning("Lease unavailable; running cycle unguarded", trigger=trigger, error=str(exc))
                leased, guarded = True, False
            if not leased:
                logger.info("Cycle lease held elsewhere; skipping", trigger=trigger)
                yield None
                return
            try:
                yield self._keepalive(trigger, guarded)
            finally:
                if guarded:
                    try:
                        await self.stores.leases.release(trigger)
                    except StoreError as exc:
                        logger.warning("Failed to release lease", trigger=trigger, error=str(exc))

    async def run_health_cycle(self) -> HealthStatus | None:
        async with self._cycle(HEALTH_TRIGGER) as keepalive:
            if keepalive is None:
                return None
            return await self.probes.run(keepalive=keepalive)

    async def run_heartbeat_cycle(self) -> DeadMansSwitchReport | None:
        async with self._cycle(HEARTBEAT_TRIGGER) as keepalive:
            if keepalive is None:
                return None
            return await self.deadman.run(keepalive=keepalive)

    async def record_heartbeat(self, worker_name: str, metadata: dict[str, Any] | None = None) -> bool:
        return await self.deadman.record_heartbeat(worker_name, metadata)

    async def record_deployment(self, worker_name: str, version: str, previous_version: str | None = None) -> bool:
        return await self.deadman.record_deployment(worker_name, version, previous_version)

    async def get_health_stats(self) -> HealthStats:
        return await self.probes.get_health_stats()

    async def get_heartbeat_status(self) -> list[HeartbeatCheck]:
        return await self.deadman.get_heartbeat_status()

    async def latest_health_status(self) -> HealthStatus | None:
        return await self.probes.latest_status()

    async def send_test_alert(self) -> bool:
        return await self.dispatcher.send_test_alert()

    async def force_rollback(self, worker_name: str, admin_token: str) -> RemediationResult:
        if worker_name not in {t.name for t in self.targets}:
            return RemediationResult(success=False, error="unknown_worker")
        return await self.infra.admin_force_rollback(worker_name, admin_token, self.config.admin_token)

    def is_known_worker(self, worker_name: str) -> bool:
        return any(t.name == worker_name for t in self.targets)
