from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HeartbeatState(str, Enum):
    ALIVE = "alive"
    WARNING = "warning"
    DEAD = "dead"


@dataclass(frozen=True)
class MonitoredTarget:
    name: str
    health_endpoint: str
    heartbeat_key: str
    deployment_key: str


@dataclass(frozen=True)
class HealthCheckResult:
    target: str
    healthy: bool
    latency_ms: float
    timestamp: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "HealthCheckResult":
        if not isinstance(raw, dict):
            raise ValueError(f"Invalid health check result: {raw!r}")
        error = raw.get("error")
        return cls(
            target=str(raw["target"]),
            healthy=bool(raw["healthy"]),
            latency_ms=float(raw.get("latency_ms") or 0.0),
            timestamp=float(raw["timestamp"]),
            error=str(error) if error is not None else None,
        )


@dataclass(frozen=True)
class HealthStatus:
    overall: OverallStatus
    checks: list[HealthCheckResult]
    timestamp: float

    @property
    def unhealthy_checks(self) -> list[HealthCheckResult]:
        return [c for c in self.checks if not c.healthy]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "checks": [c.to_dict() for c in self.checks],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "HealthStatus":
        if not isinstance(raw, dict):
            raise ValueError(f"Invalid health status: {raw!r}")
        checks = raw.get("checks") or []
        if not isinstance(checks, list):
            raise ValueError("health status checks must be a list")
        return cls(
            overall=OverallStatus(str(raw["overall"])),
            checks=[HealthCheckResult.from_dict(c) for c in checks],
            timestamp=float(raw["timestamp"]),
        )


@dataclass(frozen=True)
class HeartbeatRecord:
    timestamp: float
    worker_name: str
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "HeartbeatRecord":
        if not isinstance(raw, dict):
            raise ValueError(f"Invalid heartbeat record: {raw!r}")
        metadata = raw.get("metadata")
        return cls(
            timestamp=float(raw["timestamp"]),
            worker_name=str(raw["worker_name"]),
            metadata=metadata if isinstance(metadata, dict) else None,
        )


@dataclass(frozen=True)
class DeploymentRecord:
    deployed_at: float
    version: str
    worker_name: str
    previous_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> "DeploymentRecord":
        if not isinstance(raw, dict):
            raise ValueError(f"Invalid deployment record: {raw!r}")
        previous = raw.get("previous_version")
        return cls(
            deployed_at=float(raw["deployed_at"]),
            version=str(raw["version"]),
            worker_name=str(raw["worker_name"]),
            previous_version=str(previous) if previous else None,
        )


@dataclass(frozen=True)
class HealthStats:
    success_rate: float
    avg_latency_ms: float
    total_checks: int
    samples: int


@dataclass(frozen=True)
class HeartbeatCheck:
    target: str
    alive: bool
    state: HeartbeatState
    last_seen: float | None = None
    age_ms: float | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["state"] = self.state.value
        return out


@dataclass(frozen=True)
class DeadMansSwitchReport:
    all_alive: bool
    results: list[HeartbeatCheck] = field(default_factory=list)

    @property
    def dead(self) -> list[HeartbeatCheck]:
        return [r for r in self.results if not r.alive]
