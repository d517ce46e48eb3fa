from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request

from fleet_guard.auth import require_admin, require_ingest, require_reader
from fleet_guard.config import FleetGuardConfig
from fleet_guard.kernel import SafetyKernel
from fleet_guard.scheduler import JobScheduler, schedule_kernel
from fleet_guard.schema import DeploymentRequest, HeartbeatRequest


logger = structlog.get_logger(__name__)


def _kernel(req: Request) -> SafetyKernel:
    kernel = getattr(req.app.state, "kernel", None)
    if not isinstance(kernel, SafetyKernel):
        raise HTTPException(status_code=503, detail="kernel_not_ready")
    return kernel


def create_app(
    config: FleetGuardConfig,
    *,
    kernel: SafetyKernel | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    app = FastAPI(title="fleet-guard", version="0.1.0")
    app.state.config = config
    app.state.kernel = kernel
    app.state.http_client = None
    app.state.scheduler = None

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.kernel is None:
            app.state.http_client = httpx.AsyncClient()
            app.state.kernel = SafetyKernel(config, http_client=app.state.http_client)
        if start_scheduler:
            scheduler = JobScheduler()
            schedule_kernel(scheduler, app.state.kernel)
            scheduler.start()
            app.state.scheduler = scheduler
        logger.info("fleet-guard started", targets=[t.name for t in app.state.kernel.targets])

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
        if app.state.http_client is not None:
            await app.state.http_client.aclose()
        logger.info("fleet-guard stopped")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "healthy", "ts": time.time()}

    @app.post("/api/v1/heartbeats", dependencies=[Depends(require_ingest)])
    async def post_heartbeat(body: HeartbeatRequest, kernel: SafetyKernel = Depends(_kernel)) -> dict[str, Any]:
        if not kernel.is_known_worker(body.worker_name):
            raise HTTPException(status_code=404, detail="unknown_worker")
        ok = await kernel.record_heartbeat(body.worker_name, body.metadata)
        return {"ok": ok}

    @app.post("/api/v1/deployments", dependencies=[Depends(require_ingest)])
    async def post_deployment(body: DeploymentRequest, kernel: SafetyKernel = Depends(_kernel)) -> dict[str, Any]:
        if not kernel.is_known_worker(body.worker_name):
            raise HTTPException(status_code=404, detail="unknown_worker")
        ok = await kernel.record_deployment(body.worker_name, body.version, body.previous_version)
        return {"ok": ok}

    @app.get("/api/v1/status", dependencies=[Depends(require_reader)])
    async def status(kernel: SafetyKernel = Depends(_kernel)) -> dict[str, Any]:
        heartbeats = await kernel.get_heartbeat_status()
        stats = await kernel.get_health_stats()
        latest = await kernel.latest_health_status()
        return {
            "heartbeats": [h.to_dict() for h in heartbeats],
            "health_stats": asdict(stats),
            "latest_health": latest.to_dict() if latest else None,
        }

    @app.post("/api/v1/admin/alerts/test", dependencies=[Depends(require_admin)])
    async def test_alert(kernel: SafetyKernel = Depends(_kernel)) -> dict[str, Any]:
        return {"delivered": await kernel.send_test_alert()}

    @app.post("/api/v1/admin/rollback/{worker_name}")
    async def force_rollback(
        worker_name: str,
        token: str = Depends(require_admin),
        kernel: SafetyKernel = Depends(_kernel),
    ) -> dict[str, Any]:
        if not kernel.is_known_worker(worker_name):
            raise HTTPException(status_code=404, detail="unknown_worker")
        result = await kernel.force_rollback(worker_name, token)
        return {"success": result.success, "error": result.error}

    return app
