import logging
from pathlib import Path

import structlog

from velocity.config.settings import MonitoringConfig
from velocity.monitoring.logging import configure_logging


def _flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_error_log_receives_only_errors(tmp_path: Path) -> None:
    logs_path = tmp_path / "logs"
    configure_logging("INFO", str(logs_path), MonitoringConfig())
    log = structlog.get_logger("velocity.test")

    try:
        log.info("strategy_triggered", strategy_id="s-1")
        log.error("strategy_trigger_persist_failed", strategy_id="s-2", error="disk full")
        _flush_root_handlers()

        lines = (logs_path / "errors.log").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert "strategy_trigger_persist_failed" in lines[0]
        assert '"strategy_id": "s-2"' in lines[0]
    finally:
        configure_logging("INFO")


def test_http_client_loggers_are_quieted() -> None:
    configure_logging("DEBUG")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING
    assert logging.getLogger().level == logging.DEBUG


def test_events_carry_service_and_environment(tmp_path: Path) -> None:
    logs_path = tmp_path / "logs"
    configure_logging("INFO", str(logs_path), MonitoringConfig(), environment="devnet")
    log = structlog.get_logger("velocity.test")

    try:
        log.error("rpc_failover", method="getBlockHeight")
        _flush_root_handlers()

        [line] = (logs_path / "errors.log").read_text(encoding="utf-8").splitlines()
        assert '"service": "velocity"' in line
        assert '"environment": "devnet"' in line
    finally:
        configure_logging("INFO")
