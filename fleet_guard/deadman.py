"""Dead man's switch: escalate when a worker stops sending heartbeats."""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Sequence

import structlog

from fleet_guard.models import (
    DeadMansSwitchReport,
    DeploymentRecord,
    HeartbeatCheck,
    HeartbeatRecord,
    HeartbeatState,
    MonitoredTarget,
)
from fleet_guard.policy import DEFAULT_WINDOWS, EscalationWindows, Signal, decide
from fleet_guard.remediation import RemediationExecutor, RemediationOutcome
from fleet_guard.store import DeploymentStore, HeartbeatStore, StoreWriteError


logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLD_MS = 10 * 60 * 1000
WARNING_FRACTION = 0.5


def classify_heartbeat(age_ms: float, threshold_ms: int) -> HeartbeatState:
    if age_ms >= threshold_ms:
        return HeartbeatState.DEAD
    if age_ms >= threshold_ms * WARNING_FRACTION:
        return HeartbeatState.WARNING
    return HeartbeatState.ALIVE


class DeadMansSwitchMonitor:
    def __init__(
        self,
        targets: Sequence[MonitoredTarget],
        *,
        heartbeats: HeartbeatStore,
        deployments: DeploymentStore,
        executor: RemediationExecutor,
        threshold_ms: int = DEFAULT_THRESHOLD_MS,
        windows: EscalationWindows = DEFAULT_WINDOWS,
        clock: Callable[[], float] = time.time,
    ):
        self.targets = tuple(targets)
        self.heartbeats = heartbeats
        self.deployments = deployments
        self.executor = executor
        self.threshold_ms = int(threshold_ms)
        self.windows = windows
        self.clock = clock

    def _target(self, worker_name: str) -> MonitoredTarget | None:
        for target in self.targets:
            if target.name == worker_name:
                return target
        return None

    async def _check_one(self, target: MonitoredTarget, threshold_ms: int, now_ts: float) -> HeartbeatCheck:
        read = await self.heartbeats.read(target.heartbeat_key)
        if not read.ok:
            # Unreadable store: assume alive rather than escalate on missing data.
            logger.warning("Heartbeat unreadable; assuming alive", worker=target.name, error=read.error)
            return HeartbeatCheck(target=target.name, alive=True, state=HeartbeatState.ALIVE, error=read.error)
        record = read.value
        if record is None:
            return HeartbeatCheck(target=target.name, alive=True, state=HeartbeatState.ALIVE)

        age_ms = (now_ts - record.timestamp) * 1000.0
        return HeartbeatCheck(
            target=target.name,
            alive=age_ms < threshold_ms,
            state=classify_heartbeat(age_ms, threshold_ms),
            last_seen=record.timestamp,
            age_ms=round(age_ms, 3),
            metadata=record.metadata,
        )

    async def check_heartbeats(self, threshold_ms: int | None = None) -> DeadMansSwitchReport:
        threshold = int(threshold_ms if threshold_ms is not None else self.threshold_ms)
        now_ts = self.clock()
        results = [await self._check_one(t, threshold, now_ts) for t in self.targets]
        return DeadMansSwitchReport(all_alive=all(r.alive for r in results), results=results)

    async def get_heartbeat_status(self) -> list[HeartbeatCheck]:
        report = await self.check_heartbeats()
        return report.results

    async def run(
        self,
        threshold_ms: int | None = None,
        *,
        keepalive: Callable[[], Awaitable[bool]] | None = None,
    ) -> DeadMansSwitchReport:
        """Check every heartbeat and remediate the dead targets."""
        report = await self.check_heartbeats(threshold_ms)
        logger.info("Dead man's switch checked", all_alive=report.all_alive, dead=[r.target for r in report.dead])

        for check in report.dead:
            target = self._target(check.target)
            if target is None:
                continue
            if keepalive is not None and not await keepalive():
                logger.warning("Cycle lease lost; skipping remaining remediations", worker=target.name)
                break
            try:
                await self._remediate(target, check)
            except Exception:
                logger.exception("Remediation crashed", worker=target.name)
        return report

    async def _remediate(self, target: MonitoredTarget, check: HeartbeatCheck) -> RemediationOutcome:
        read = await self.deployments.read(target.deployment_key)
        if not read.ok:
            logger.warning("Deployment record unreadable; assuming none", worker=target.name, error=read.error)
        deployment = read.value if read.ok else None

        action = decide(Signal.HEARTBEAT_DEAD, deployment, self.clock(), self.windows)
        minutes = int((check.age_ms or 0.0) // 60000)
        logger.warning("Worker heartbeat is stale", worker=target.name, minutes=minutes, action=action.value)
        return await self.executor.execute(
            action,
            worker_name=target.name,
            reason=f"No heartbeat for {minutes} minutes",
            deployment=deployment,
        )

    async def record_heartbeat(self, worker_name: str, metadata: dict[str, Any] | None = None) -> bool:
        target = self._target(worker_name)
        if target is None:
            logger.warning("Heartbeat from unknown worker ignored", worker=worker_name)
            return False
        record = HeartbeatRecord(timestamp=self.clock(), worker_name=worker_name, metadata=metadata or None)
        try:
            await self.heartbeats.write(target.heartbeat_key, record)
        except StoreWriteError as exc:
            logger.error("Failed to record heartbeat", worker=worker_name, error=str(exc))
            return False
        logger.debug("Heartbeat recorded", worker=worker_name)
        return True

    async def record_deployment(
        self, worker_name: str, version: str, previous_version: str | None = None
    ) -> bool:
        target = self._target(worker_name)
        if target is None:
            logger.warning("Deployment for unknown worker ignored", worker=worker_name)
            return False

        if previous_version is None:
            current = await self.deployments.read(target.deployment_key)
            if current.value is not None and current.value.version != version:
                previous_version = current.value.version

        record = DeploymentRecord(
            deployed_at=self.clock(),
            version=str(version),
            worker_name=worker_name,
            previous_version=previous_version,
        )
        try:
            await self.deployments.write(target.deployment_key, record)
        except StoreWriteError as exc:
            logger.error("Failed to record deployment", worker=worker_name, error=str(exc))
            return False
        logger.info("Deployment recorded", worker=worker_name, version=version, previous_version=previous_version)
        return True
