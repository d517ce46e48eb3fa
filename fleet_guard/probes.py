"""Active HTTP health probing of the fleet.

Each target is probed concurrently and independently bounded by a timeout. A
probe never raises: every failure becomes an unhealthy ``HealthCheckResult``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Sequence

import httpx
import structlog

from fleet_guard.models import HealthCheckResult, HealthStats, HealthStatus, MonitoredTarget, OverallStatus
from fleet_guard.policy import DEFAULT_WINDOWS, EscalationWindows, Signal, decide
from fleet_guard.remediation import RemediationExecutor, RemediationOutcome
from fleet_guard.store import DeploymentStore, HealthHistoryStore, HISTORY_MAX_ENTRIES, StoreWriteError


logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_MS = 5000
HISTORY_SAMPLE_INTERVAL_SECONDS = 5 * 60.0


def _is_healthy_payload(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return data.get("status") == "healthy" or data.get("healthy") is True


def _describe_payload(data: Any, *, max_len: int = 200) -> str:
    if isinstance(data, dict):
        if "status" in data:
            return f"status={data.get('status')!r}"
        if "healthy" in data:
            return f"healthy={data.get('healthy')!r}"
    return repr(data)[:max_len]


async def _probe_once(client: httpx.AsyncClient, target: MonitoredTarget, timeout_seconds: float) -> str | None:
    """Returns None when healthy, otherwise a description of the failure."""
    resp = await client.get(target.health_endpoint, timeout=timeout_seconds)
    if not (200 <= resp.status_code < 300):
        return f"HTTP {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return "invalid JSON body"
    if not _is_healthy_payload(data):
        return f"unexpected health payload: {_describe_payload(data)}"
    return None


async def probe_target(
    client: httpx.AsyncClient,
    target: MonitoredTarget,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    clock: Callable[[], float] = time.time,
) -> HealthCheckResult:
    timeout_seconds = max(0.001, timeout_ms / 1000.0)
    started = time.perf_counter()
    try:
        error = await asyncio.wait_for(_probe_once(client, target, timeout_seconds), timeout=timeout_seconds)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        error = f"timeout after {int(timeout_ms)}ms"
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        error = f"request failed: {type(exc).__name__}: {exc}"
    elapsed_ms = (time.perf_counter() - started) * 1000.0

    return HealthCheckResult(
        target=target.name,
        healthy=error is None,
        latency_ms=round(elapsed_ms, 3),
        timestamp=clock(),
        error=error,
    )


def aggregate_status(checks: Sequence[HealthCheckResult]) -> OverallStatus:
    unhealthy = sum(1 for c in checks if not c.healthy)
    if unhealthy == 0:
        return OverallStatus.HEALTHY
    if unhealthy == len(checks):
        return OverallStatus.UNHEALTHY
    return OverallStatus.DEGRADED


async def run_health_checks(
    client: httpx.AsyncClient,
    targets: Sequence[MonitoredTarget],
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    clock: Callable[[], float] = time.time,
) -> HealthStatus:
    outcomes = await asyncio.gather(
        *(probe_target(client, t, timeout_ms=timeout_ms, clock=clock) for t in targets),
        return_exceptions=True,
    )

    checks: list[HealthCheckResult] = []
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, HealthCheckResult):
            checks.append(outcome)
            continue
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        logger.error("Health probe crashed", target=target.name, error=f"{type(outcome).__name__}: {outcome}")
        checks.append(
            HealthCheckResult(
                target=target.name,
                healthy=False,
                latency_ms=0.0,
                timestamp=clock(),
                error=f"probe crashed: {type(outcome).__name__}: {outcome}",
            )
        )

    return HealthStatus(overall=aggregate_status(checks), checks=checks, timestamp=clock())


def should_record_history(status: HealthStatus, history: Sequence[HealthStatus]) -> bool:
    if status.overall is not OverallStatus.HEALTHY:
        return True
    if not history:
        return True
    return (status.timestamp - history[-1].timestamp) >= HISTORY_SAMPLE_INTERVAL_SECONDS


def compute_health_stats(history: Sequence[HealthStatus]) -> HealthStats:
    checks = [c for status in history for c in status.checks]
    if not checks:
        return HealthStats(success_rate=100.0, avg_latency_ms=0.0, total_checks=0, samples=len(history))
    healthy = sum(1 for c in checks if c.healthy)
    avg_latency = sum(c.latency_ms for c in checks) / float(len(checks))
    return HealthStats(
        success_rate=round(healthy / float(len(checks)) * 100.0, 2),
        avg_latency_ms=round(avg_latency, 3),
        total_checks=len(checks),
        samples=len(history),
    )


class HealthProbeRunner:
    def __init__(
        self,
        client: httpx.AsyncClient,
        targets: Sequence[MonitoredTarget],
        *,
        deployments: DeploymentStore,
        history: HealthHistoryStore,
        executor: RemediationExecutor,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        windows: EscalationWindows = DEFAULT_WINDOWS,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.targets = tuple(targets)
        self.deployments = deployments
        self.history = history
        self.executor = executor
        self.timeout_ms = int(timeout_ms)
        self.windows = windows
        self.clock = clock

    async def run(self, keepalive: Callable[[], Awaitable[bool]] | None = None) -> HealthStatus:
        """Probe the fleet, remediate unhealthy targets and record history.

        ``keepalive`` is awaited before each remediation; once it returns
        False the cycle has lost its lease and stops remediating.
        """
        status = await run_health_checks(self.client, self.targets, timeout_ms=self.timeout_ms, clock=self.clock)
        logger.info(
            "Health checks complete",
            overall=status.overall.value,
            unhealthy=[c.target for c in status.unhealthy_checks],
        )

        by_name = {t.name: t for t in self.targets}
        for check in status.unhealthy_checks:
            target = by_name.get(check.target)
            if target is None:
                continue
            if keepalive is not None and not await keepalive():
                logger.warning("Cycle lease lost; skipping remaining remediations", worker=target.name)
                break
            try:
                await self._remediate(target, check)
            except Exception:
                logger.exception("Remediation crashed", worker=target.name)

        await self._record_history(status)
        return status

    async def _remediate(self, target: MonitoredTarget, check: HealthCheckResult) -> RemediationOutcome:
        read = await self.deployments.read(target.deployment_key)
        if not read.ok:
            logger.warning("Deployment record unreadable; assuming none", worker=target.name, error=read.error)
        deployment = read.value if read.ok else None

        action = decide(Signal.PROBE_UNHEALTHY, deployment, self.clock(), self.windows)
        logger.info("Remediation decided", worker=target.name, action=action.value, signal="probe")
        return await self.executor.execute(
            action,
            worker_name=target.name,
            reason=f"Health check failed: {check.error or 'unhealthy'}",
            deployment=deployment,
        )

    async def _record_history(self, status: HealthStatus) -> None:
        read = await self.history.read()
        if not read.ok:
            logger.warning("Health history unreadable; starting a new window", error=read.error)
        history = list(read.value or [])
        if not should_record_history(status, history):
            return
        history.append(status)
        try:
            await self.history.write(history[-HISTORY_MAX_ENTRIES:])
        except StoreWriteError as exc:
            logger.error("Failed to write health history", error=str(exc))

    async def get_health_stats(self) -> HealthStats:
        read = await self.history.read()
        if not read.ok:
            logger.warning("Health history unreadable", error=read.error)
        return compute_health_stats(read.value or [])

    async def latest_status(self) -> HealthStatus | None:
        read = await self.history.read()
        history = read.value or []
        return history[-1] if history else None
