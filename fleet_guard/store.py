"""TTL key-value persistence for the watchdog.

Every record family lives in its own table with its own TTL. Backends are
eventually consistent and offer no transactions: a read may miss a write made
by a concurrent process, which the periodic checks tolerate.

Backends raise ``StoreReadError``; typed stores catch it and return a
``ReadResult`` so each caller decides explicitly what a failed read means for
it. Typed writes raise ``StoreWriteError``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, TypeVar

import structlog

from fleet_guard.models import DeploymentRecord, HealthStatus, HeartbeatRecord


logger = structlog.get_logger(__name__)

T = TypeVar("T")

HEARTBEAT_TTL_SECONDS = 60 * 60
DEPLOYMENT_TTL_SECONDS = 7 * 24 * 60 * 60
HISTORY_TTL_SECONDS = 60 * 60
HISTORY_MAX_ENTRIES = 12
ALERT_STATE_TTL_SECONDS = 60 * 60


class StoreError(Exception):
    pass


class StoreReadError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


@dataclass(frozen=True)
class ReadResult(Generic[T]):
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class KeyValueBackend:
    """Async table/key/value interface with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    async def get(self, table: str, key: str) -> Any | None:
        raise NotImplementedError

    async def put(self, table: str, key: str, value: Any, *, ttl_seconds: float) -> None:
        raise NotImplementedError

    async def delete(self, table: str, key: str) -> None:
        raise NotImplementedError


class MemoryBackend(KeyValueBackend):
    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._tables: dict[str, dict[str, tuple[Any, float]]] = {}

    async def get(self, table: str, key: str) -> Any | None:
        entry = self._tables.get(table, {}).get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock() >= expires_at:
            del self._tables[table][key]
            return None
        return json.loads(value)

    async def put(self, table: str, key: str, value: Any, *, ttl_seconds: float) -> None:
        # Round-trip through JSON so callers never share mutable state with the store.
        encoded = json.dumps(value, ensure_ascii=False, sort_keys=True)
        self._tables.setdefault(table, {})[key] = (encoded, self.clock() + float(ttl_seconds))

    async def delete(self, table: str, key: str) -> None:
        self._tables.get(table, {}).pop(key, None)


class JsonFileBackend(KeyValueBackend):
    """Single JSON document on disk, replaced atomically on every write.

    Layout: ``{table: {key: {"value": ..., "expires_at": ts}}}``.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise StoreReadError(f"Failed to read state file path={self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StoreReadError(f"State file is not a mapping path={self.path}")
        return raw

    def _write_atomic(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def _prune(self, payload: dict[str, Any], now_ts: float) -> None:
        for table in list(payload.keys()):
            entries = payload.get(table)
            if not isinstance(entries, dict):
                del payload[table]
                continue
            for key in list(entries.keys()):
                entry = entries[key]
                if not isinstance(entry, dict) or float(entry.get("expires_at") or 0.0) <= now_ts:
                    del entries[key]
            if not entries:
                del payload[table]

    async def get(self, table: str, key: str) -> Any | None:
        payload = self._load()
        entries = payload.get(table)
        if not isinstance(entries, dict):
            return None
        entry = entries.get(key)
        if not isinstance(entry, dict):
            return None
        if float(entry.get("expires_at") or 0.0) <= self.clock():
            return None
        return entry.get("value")

    async def _mutate(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        async with self._lock:
            try:
                payload = self._load()
            except StoreReadError:
                # An unreadable state file is replaced rather than blocking every write.
                logger.warning("Discarding unreadable state file", path=str(self.path))
                payload = {}
            self._prune(payload, self.clock())
            mutate(payload)
            try:
                self._write_atomic(payload)
            except OSError as exc:
                raise StoreWriteError(f"Failed to write state file path={self.path}: {exc}") from exc

    async def put(self, table: str, key: str, value: Any, *, ttl_seconds: float) -> None:
        expires_at = self.clock() + float(ttl_seconds)

        def _apply(payload: dict[str, Any]) -> None:
            payload.setdefault(table, {})[key] = {"value": value, "expires_at": expires_at}

        await self._mutate(_apply)

    async def delete(self, table: str, key: str) -> None:
        def _apply(payload: dict[str, Any]) -> None:
            entries = payload.get(table)
            if isinstance(entries, dict):
                entries.pop(key, None)

        await self._mutate(_apply)


class _Table:
    name = ""

    def __init__(self, backend: KeyValueBackend, namespace: str):
        self.backend = backend
        self.table = f"{namespace}:{self.name}" if namespace else self.name

    async def _read(self, key: str, decode: Callable[[Any], T]) -> ReadResult[T]:
        try:
            raw = await self.backend.get(self.table, key)
        except Exception as exc:
            return ReadResult(error=f"{type(exc).__name__}: {exc}")
        if raw is None:
            return ReadResult()
        try:
            return ReadResult(value=decode(raw))
        except (KeyError, TypeError, ValueError) as exc:
            return ReadResult(error=f"malformed {self.name} record: {exc}")

    async def _write(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            await self.backend.put(self.table, key, value, ttl_seconds=ttl_seconds)
        except StoreWriteError:
            raise
        except Exception as exc:
            raise StoreWriteError(f"{type(exc).__name__}: {exc}") from exc

    async def _delete(self, key: str) -> None:
        try:
            await self.backend.delete(self.table, key)
        except StoreWriteError:
            raise
        except Exception as exc:
            raise StoreWriteError(f"{type(exc).__name__}: {exc}") from exc


class HeartbeatStore(_Table):
    name = "heartbeats"

    async def read(self, heartbeat_key: str) -> ReadResult[HeartbeatRecord]:
        return await self._read(heartbeat_key, HeartbeatRecord.from_dict)

    async def write(self, heartbeat_key: str, record: HeartbeatRecord) -> None:
        await self._write(heartbeat_key, record.to_dict(), HEARTBEAT_TTL_SECONDS)


class DeploymentStore(_Table):
    name = "deployments"

    async def read(self, deployment_key: str) -> ReadResult[DeploymentRecord]:
        return await self._read(deployment_key, DeploymentRecord.from_dict)

    async def write(self, deployment_key: str, record: DeploymentRecord) -> None:
        await self._write(deployment_key, record.to_dict(), DEPLOYMENT_TTL_SECONDS)


def _decode_history(raw: Any) -> list[HealthStatus]:
    if not isinstance(raw, list):
        raise ValueError("health history must be a list")
    return [HealthStatus.from_dict(item) for item in raw]


class HealthHistoryStore(_Table):
    name = "health_history"
    key = "history"

    async def read(self) -> ReadResult[list[HealthStatus]]:
        return await self._read(self.key, _decode_history)

    async def write(self, history: list[HealthStatus]) -> None:
        trimmed = history[-HISTORY_MAX_ENTRIES:]
        await self._write(self.key, [s.to_dict() for s in trimmed], HISTORY_TTL_SECONDS)


def _decode_timestamps(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        raise ValueError("timestamp state must be a mapping")
    out: dict[str, float] = {}
    for k, v in raw.items():
        try:
            out[str(k)] = float(v)
        except (TypeError, ValueError):
            continue
    return out


class AlertStateStore(_Table):
    """alertKey -> last delivery timestamp, one document per namespace."""

    name = "alert_state"
    key = "state"

    async def read(self) -> ReadResult[dict[str, float]]:
        return await self._read(self.key, _decode_timestamps)

    async def write(self, state: dict[str, float], *, now_ts: float) -> None:
        cutoff = now_ts - ALERT_STATE_TTL_SECONDS
        pruned = {k: float(v) for k, v in state.items() if float(v) >= cutoff}
        await self._write(self.key, pruned, ALERT_STATE_TTL_SECONDS)


class RemediationLedger(_Table):
    """Remembers issued remediations so repeated ticks do not re-issue them."""

    name = "remediations"

    async def read(self, key: str) -> ReadResult[float]:
        return await self._read(key, float)

    async def write(self, key: str, issued_at: float, *, ttl_seconds: float) -> None:
        await self._write(key, float(issued_at), ttl_seconds)


def _decode_lease(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict) or not raw.get("owner"):
        raise ValueError("lease must be a mapping with an owner")
    return {"owner": str(raw["owner"]), "acquired_at": float(raw.get("acquired_at") or 0.0)}


class LeaseStore(_Table):
    """Short-TTL leases keeping one check cycle per trigger at a time.

    Without transactions this is best effort: acquire writes the lease and
    reads it back, and the last writer wins when two processes race.
    """

    name = "leases"

    def __init__(self, backend: KeyValueBackend, namespace: str, *, owner: str | None = None):
        super().__init__(backend, namespace)
        self.owner = owner or uuid.uuid4().hex

    async def acquire(self, trigger: str, *, ttl_seconds: float, now_ts: float) -> bool:
        current = await self._read(trigger, _decode_lease)
        if not current.ok:
            raise StoreReadError(current.error or "lease read failed")
        if current.value is not None and current.value["owner"] != self.owner:
            return False
        await self._write(trigger, {"owner": self.owner, "acquired_at": now_ts}, ttl_seconds)
        confirmed = await self._read(trigger, _decode_lease)
        return confirmed.value is not None and confirmed.value["owner"] == self.owner

    async def renew(self, trigger: str, *, ttl_seconds: float, now_ts: float) -> bool:
        """Push the expiry out while this process still owns the lease."""
        current = await self._read(trigger, _decode_lease)
        if not current.ok:
            raise StoreReadError(current.error or "lease read failed")
        if current.value is not None and current.value["owner"] != self.owner:
            return False
        acquired_at = current.value["acquired_at"] if current.value is not None else now_ts
        await self._write(trigger, {"owner": self.owner, "acquired_at": acquired_at}, ttl_seconds)
        return True

    async def release(self, trigger: str) -> None:
        current = await self._read(trigger, _decode_lease)
        if current.value is not None and current.value["owner"] == self.owner:
            await self._delete(trigger)


@dataclass(frozen=True)
class StateStores:
    heartbeats: HeartbeatStore
    deployments: DeploymentStore
    history: HealthHistoryStore
    alerts: AlertStateStore
    remediations: RemediationLedger
    leases: LeaseStore

    @classmethod
    def create(cls, backend: KeyValueBackend, namespace: str) -> "StateStores":
        return cls(
            heartbeats=HeartbeatStore(backend, namespace),
            deployments=DeploymentStore(backend, namespace),
            history=HealthHistoryStore(backend, namespace),
            alerts=AlertStateStore(backend, namespace),
            remediations=RemediationLedger(backend, namespace),
            leases=LeaseStore(backend, namespace),
        )
