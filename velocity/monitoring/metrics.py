"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class Metrics:
    """Expose engine metrics for monitoring.

    Pass a private ``registry`` when more than one instance lives in a process
    (tests), since collectors register by name.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        reg = self.registry

        self.loop_last_tick_age_sec = Gauge(
            "loop_last_tick_age_sec",
            "Seconds since the loop last ticked",
            ["loop"],
            registry=reg,
        )

        # Trigger sweep
        self.trigger_sweeps_total = Counter(
            "trigger_sweeps_total", "Trigger sweeps run", registry=reg
        )
        self.trigger_sweep_duration_ms = Histogram(
            "trigger_sweep_duration_ms", "Trigger sweep duration (ms)", registry=reg
        )
        self.strategies_active = Gauge(
            "strategies_active", "Active strategies seen by the last sweep", registry=reg
        )
        self.strategies_evaluated_total = Counter(
            "strategies_evaluated_total", "Strategies evaluated against a price", registry=reg
        )
        self.strategies_skipped_total = Counter(
            "strategies_skipped_total", "Strategies skipped for lack of a price", registry=reg
        )
        self.strategies_triggered_total = Counter(
            "strategies_triggered_total", "Strategies moved to triggered", ["type"], registry=reg
        )
        self.price_fetch_failures_total = Counter(
            "price_fetch_failures_total", "Whole-batch price fetch failures", registry=reg
        )
        self.trigger_persist_failures_total = Counter(
            "trigger_persist_failures_total",
            "Per-strategy persistence failures during a sweep",
            registry=reg,
        )

        # Execution
        self.executions_prepared_total = Counter(
            "executions_prepared_total",
            "Execution preparations by outcome",
            ["outcome"],
            registry=reg,
        )
        self.executions_finalized_total = Counter(
            "executions_finalized_total",
            "Strategies finalized by terminal status",
            ["status"],
            registry=reg,
        )
        self.quote_price_impact_bps = Histogram(
            "quote_price_impact_bps",
            "Quoted price impact in bps",
            buckets=[1, 5, 10, 25, 50, 100, 200, 500, 1000],
            registry=reg,
        )

        # Chain access
        self.rpc_request_latency_ms = Histogram(
            "rpc_request_latency_ms", "RPC latency (ms)", ["method"], registry=reg
        )
        self.rpc_error_total = Counter(
            "rpc_error_total", "RPC errors by endpoint role", ["endpoint"], registry=reg
        )
        self.rpc_failover_total = Counter(
            "rpc_failover_total", "Primary to backup RPC failovers", registry=reg
        )
        self.rpc_on_backup = Gauge(
            "rpc_on_backup", "1 while calls are routed to the backup RPC", registry=reg
        )
        self.confirmations_total = Counter(
            "confirmations_total",
            "Transaction confirmation outcomes",
            ["outcome"],
            registry=reg,
        )

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
