from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

import httpx
import structlog
import uvicorn

from fleet_guard.app import create_app
from fleet_guard.config import ConfigError, FleetGuardConfig, load_config
from fleet_guard.kernel import SafetyKernel
from fleet_guard.models import OverallStatus


logger = structlog.get_logger(__name__)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_once(config: FleetGuardConfig) -> int:
    async with httpx.AsyncClient() as client:
        kernel = SafetyKernel(config, http_client=client)
        status = await kernel.run_health_cycle()
        report = await kernel.run_heartbeat_cycle()

    summary = {
        "health": status.to_dict() if status else None,
        "heartbeats": {
            "all_alive": report.all_alive,
            "results": [r.to_dict() for r in report.results],
        }
        if report
        else None,
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2, sort_keys=True))

    healthy = status is None or status.overall is OverallStatus.HEALTHY
    alive = report is None or report.all_alive
    return 0 if healthy and alive else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Fleet safety watchdog")
    parser.add_argument(
        "--config",
        default=os.getenv("FLEET_GUARD_CONFIG", "config/fleet-guard.yaml"),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one health and heartbeat cycle and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--host", default=os.getenv("FLEET_GUARD_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("FLEET_GUARD_PORT", "8080")))
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", config=args.config, error=str(exc))
        return 2
    configure_logging(args.log_level or config.log_level)

    if not config.targets:
        logger.warning("No targets configured", config=args.config)

    if args.once:
        return asyncio.run(run_once(config))

    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
