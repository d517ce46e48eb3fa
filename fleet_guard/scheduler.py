"""Periodic triggers for the watchdog cycles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fleet_guard.kernel import SafetyKernel


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages the watchdog's interval jobs using APScheduler."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: int,
        description: Optional[str] = None,
    ) -> None:
        """Add an interval job that never overlaps itself."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.jobs[job_id] = {
            "job": job,
            "seconds": seconds,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }
        logger.info("Added interval job", job_id=job_id, interval_seconds=seconds, description=description)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False
        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        out = []
        for job_id, info in self.jobs.items():
            scheduler_job = self.scheduler.get_job(job_id)
            next_run = getattr(scheduler_job, "next_run_time", None) if scheduler_job else None
            out.append(
                {
                    "job_id": job_id,
                    "interval_seconds": info["seconds"],
                    "description": info.get("description"),
                    "next_run": next_run.isoformat() if next_run else None,
                }
            )
        return out


def schedule_kernel(scheduler: JobScheduler, kernel: SafetyKernel) -> None:
    async def _health_job() -> None:
        try:
            await kernel.run_health_cycle()
        except Exception:
            logger.exception("Health check cycle crashed")

    async def _heartbeat_job() -> None:
        try:
            await kernel.run_heartbeat_cycle()
        except Exception:
            logger.exception("Dead man's switch cycle crashed")

    scheduler.add_interval_job(
        "health_checks",
        _health_job,
        kernel.config.health_check_interval_seconds,
        description="Active health probes",
    )
    scheduler.add_interval_job(
        "dead_mans_switch",
        _heartbeat_job,
        kernel.config.heartbeat_check_interval_seconds,
        description="Heartbeat staleness checks",
    )
