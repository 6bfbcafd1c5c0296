"""
Main entry point for the kanban rules engine.

Starts the supervisor (stores, tick loop), the health server and signal
handlers. The command-line entry runs with a dry-run executor that only
logs the actions it would run; hosts embed ``serve`` with their own executor.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any, Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from .core.config import ConfigLoader, EngineConfig
from .core.errors import ConfigError
from .core.models import CardSnapshot
from .orchestrator.coordinator import BoardGateway
from .orchestrator.executor import ActionExecutor, CardProvider
from .orchestrator.supervisor import Supervisor


logger = structlog.get_logger()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging; ``LOG_FORMAT=json`` selects JSON output."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class DryRunExecutor:
    """Executor that logs every action instead of running it."""

    async def execute(self, action_type: str, payload: dict[str, Any], card: CardSnapshot) -> None:
        logger.info(
            "dry_run_action",
            action_type=action_type,
            card_id=card.card_id,
            column_id=card.column_id,
            payload=payload,
        )


class HealthServer:
    """Simple HTTP health check server."""

    def __init__(self, supervisor: Supervisor, port: int = 8080, host: str = "0.0.0.0"):
        self.supervisor = supervisor
        self.port = port
        self.host = host
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/ready", self._ready_handler)
        return app

    async def start(self) -> None:
        """Start the health server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info("health_server_started", port=self.port)

    async def stop(self) -> None:
        """Stop the health server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("health_server_stopped")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Basic health check - is the process alive."""
        return web.json_response({"status": "healthy"})

    async def _ready_handler(self, request: web.Request) -> web.Response:
        """Readiness check - are the stores open and the tick loop running."""
        status = await self.supervisor.get_status()

        if status["state"] == "running":
            return web.json_response({"status": "ready", "state": status["state"]})
        return web.json_response(
            {"status": "not_ready", "state": status["state"]},
            status=503,
        )

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Detailed status information."""
        status = await self.supervisor.get_status()
        return web.json_response(status)


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """Engine config from ``config_path`` or ``KANBAN_RULES_CONFIG``, else defaults."""
    config_path = config_path or os.getenv("KANBAN_RULES_CONFIG")
    if not config_path:
        return EngineConfig()
    return ConfigLoader().load_engine_config(config_path)


async def serve(
    executor: ActionExecutor,
    config_path: Optional[str] = None,
    port: int = 8080,
    card_provider: Optional[CardProvider] = None,
    board: Optional[BoardGateway] = None,
) -> None:
    """Run the engine until SIGINT or SIGTERM."""
    config = load_config(config_path)
    supervisor = Supervisor(config, executor, card_provider=card_provider, board=board)
    health_server = HealthServer(supervisor, port=port)
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await supervisor.start()
        await health_server.start()
        await shutdown_event.wait()
    finally:
        await health_server.stop()
        await supervisor.stop()


def _create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kanban-rules",
        description="Kanban column rules engine (dry-run executor)",
    )
    parser.add_argument("--config", "-c", type=str, help="Engine config file (YAML or JSON)")
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=int(os.getenv("HEALTH_PORT", "8080")),
        help="Health server port",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Console entry point."""
    load_dotenv()
    args = _create_argument_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        asyncio.run(serve(DryRunExecutor(), config_path=args.config, port=args.port))
    except ConfigError as e:
        logger.error("config_error", error=e.message, **e.context)
        sys.exit(2)
    except Exception:
        logger.exception("application_error")
        sys.exit(1)


if __name__ == "__main__":
    main()
