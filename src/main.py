"""
Main entry point for the content action engine.

Wires the store, handlers, executor, notifications and scheduler, and
serves the operator HTTP endpoints.
"""

import asyncio
import logging
import signal
import sys
import os
from typing import Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from core.config import ConfigLoader, EngineConfig
from core.errors import ConfigError
from core.store import StateStore
from handlers import create_default_registry
from notifications.email_notifier import EmailNotifier
from notifications.service import NotificationService
from notifications.slack_notifier import SlackNotifier
from orchestrator.executor import ActionExecutor
from orchestrator.scheduler import EngineScheduler


def configure_logging() -> None:
    """Configure structured logging (JSON when LOG_FORMAT=json)."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(message)s",
        stream=sys.stdout,
    )
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


logger = structlog.get_logger()


class OperatorServer:
    """HTTP surface for health checks and operator actions."""

    def __init__(
        self,
        executor: ActionExecutor,
        scheduler: EngineScheduler,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.executor = executor
        self.scheduler = scheduler
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/stats", self._stats_handler)
        app.router.add_post("/actions/{action_id}/execute", self._execute_handler)
        app.router.add_post("/executions/{log_id}/rollback", self._rollback_handler)
        app.router.add_post("/circuit-breaker/reset", self._reset_handler)
        app.router.add_post("/sweep", self._sweep_handler)
        return app

    async def start(self) -> None:
        """Start the operator server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info("operator_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        """Stop the operator server."""
        if self._runner:
            await self._runner.cleanup()
            logger.info("operator_server_stopped")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Process liveness plus breaker state."""
        breaker = self.executor.circuit_breaker.status()
        return web.json_response({
            "status": "healthy",
            "circuit_breaker": breaker["state"],
            "sweep_in_progress": self.scheduler.sweep_in_progress,
        })

    async def _stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(await self.executor.get_execution_stats())

    async def _execute_handler(self, request: web.Request) -> web.Response:
        action_id = request.match_info["action_id"]
        result = await self.executor.execute(action_id, "manual")
        return web.json_response(result.to_dict(), status=self._status_for(result))

    async def _rollback_handler(self, request: web.Request) -> web.Response:
        log_id = request.match_info["log_id"]
        body = await self._json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        result = await self.executor.rollback(
            log_id,
            rolled_back_by=str(body.get("rolled_back_by") or "operator"),
            reason=body.get("reason"),
        )
        return web.json_response(result.to_dict(), status=self._status_for(result))

    async def _reset_handler(self, request: web.Request) -> web.Response:
        was_open = await self.executor.reset_circuit_breaker()
        return web.json_response({"reset": True, "was_open": was_open})

    async def _sweep_handler(self, request: web.Request) -> web.Response:
        result = await self.scheduler.run_sweep()
        if result is None:
            return web.json_response({"error": "Sweep already in progress"}, status=409)
        return web.json_response(result.to_dict())

    @staticmethod
    async def _json_body(request: web.Request) -> Optional[dict]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _status_for(result) -> int:
        if result.success:
            return 200
        return {
            "not_found": 404,
            "invalid_state": 409,
            "validation": 422,
        }.get(result.error_type, 500 if result.error_type == "execution" else 400)


class Application:
    """Main application container."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.store: Optional[StateStore] = None
        self.executor: Optional[ActionExecutor] = None
        self.scheduler: Optional[EngineScheduler] = None
        self.server: Optional[OperatorServer] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        config = self.config
        logger.info("application_starting", name=config.name, config_hash=config.config_hash())

        self.store = StateStore(config.database_path)
        await self.store.initialize()

        notify_cfg = config.notifications
        slack = SlackNotifier(
            webhook_url=notify_cfg.slack_webhook_url,
            store=self.store,
            dashboard_url=notify_cfg.dashboard_url,
            timeout=notify_cfg.request_timeout_seconds,
        )
        email = EmailNotifier(
            api_key=notify_cfg.sendgrid_api_key,
            from_email=notify_cfg.email_from,
            from_name=notify_cfg.email_from_name,
            store=self.store,
            dashboard_url=notify_cfg.dashboard_url,
            timeout=notify_cfg.request_timeout_seconds,
        )
        if not slack.is_configured():
            logger.info("slack_disabled", reason="no webhook configured")
        if not email.is_configured():
            logger.info("email_disabled", reason="no api key configured")

        notifications = NotificationService(self.store, slack, email, config=notify_cfg)
        registry = create_default_registry(self.store)

        self.executor = ActionExecutor(
            self.store,
            registry,
            config=config,
            notifications=notifications,
        )
        self.scheduler = EngineScheduler(
            self.executor,
            notifications=notifications,
            config=config.scheduler,
            digest_recipients=notify_cfg.digest_recipients,
        )
        await self.scheduler.start()

        self.server = OperatorServer(
            self.executor,
            self.scheduler,
            host=config.server.host,
            port=config.server.port,
        )
        await self.server.start()

        logger.info("application_started", handlers=registry.list_action_types())

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self.server:
            await self.server.stop()

        if self.scheduler:
            await self.scheduler.stop()

        if self.store:
            await self.store.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    load_dotenv()
    configure_logging()

    try:
        config = ConfigLoader(os.getenv("CONFIG_DIR", "./config")).load_engine_config(
            os.getenv("CONFIG_PATH")
        )
    except ConfigError as e:
        logger.error("config_load_failed", **e.to_dict())
        sys.exit(2)

    app = Application(config)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
