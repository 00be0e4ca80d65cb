"""Monitoring utilities."""

from velocity.monitoring.logging import configure_logging
from velocity.monitoring.metrics import Metrics

__all__ = [
    "configure_logging",
    "Metrics",
]
