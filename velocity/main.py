"""Runtime entry point: trigger loop plus the strategy API."""

from __future__ import annotations

import asyncio
import sys
import time

import structlog
import uvicorn

from velocity.api.app import create_app
from velocity.config.settings import load_settings
from velocity.connectors import JupiterClient, SolanaRpcClient
from velocity.execution.engine import StrategyEngine
from velocity.monitoring import Metrics, configure_logging
from velocity.strategy import StrategyService, StrategyStore

log = structlog.get_logger(__name__)


async def main_async() -> None:
    settings = load_settings()
    configure_logging(
        settings.monitoring.log_level,
        settings.storage.logs_path,
        settings.monitoring,
        environment=settings.environment,
    )
    if sys.version_info < (3, 10):
        log.warning(
            "python_version_unverified",
            version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        )
    errors = settings.validate_for_runtime()
    if errors:
        log.error("settings_validation_failed", errors=errors, environment=settings.environment)
        return

    store = StrategyStore(settings.storage.db_path)
    service = StrategyService(store, settings.strategy)
    rpc = SolanaRpcClient(settings.rpc, log_http=settings.monitoring.log_http)
    jupiter = JupiterClient(settings.jupiter, api_key=settings.jupiter_api_key)
    engine = StrategyEngine(settings, store, jupiter, rpc)

    metrics = Metrics()
    metrics.start(settings.monitoring.metrics_port)
    rpc.set_metrics(metrics)
    engine.set_metrics(metrics)

    log.info(
        "velocity_started",
        environment=settings.environment,
        has_backup_rpc=settings.has_backup_rpc,
        trigger_interval_sec=settings.strategy.trigger_interval_sec,
        db_path=settings.storage.db_path,
    )

    async def trigger_loop() -> None:
        """Evaluate every active strategy on a fixed interval."""
        last_tick = time.time()
        while True:
            now = time.time()
            metrics.loop_last_tick_age_sec.labels(loop="trigger").set(now - last_tick)
            last_tick = now
            try:
                await engine.evaluate_triggers()
            except Exception as exc:
                log.warning("trigger_loop_error", error=str(exc))
            await asyncio.sleep(settings.strategy.trigger_interval_sec)

    async def api_server() -> None:
        """Run the strategy API server."""
        try:
            config = uvicorn.Config(
                create_app(settings=settings, store=store, service=service, engine=engine),
                host=settings.monitoring.api_host,
                port=settings.monitoring.api_port,
                log_level="info",
            )
            server = uvicorn.Server(config)
            await server.serve()
        except Exception as exc:
            log.warning("api_server_failed", error=str(exc))

    try:
        await asyncio.gather(
            trigger_loop(),
            api_server(),
            return_exceptions=True,
        )
    finally:
        await rpc.close()
        await jupiter.close()
        store.close()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
