"""Periodic sweep that moves active strategies to triggered."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from velocity.strategy.errors import PersistenceError, UpstreamError
from velocity.strategy.models import StrategyStatus, TriggerResult
from velocity.strategy.store import StrategyStore

if TYPE_CHECKING:
    from velocity.connectors.jupiter_client import JupiterClient
    from velocity.monitoring.metrics import Metrics


class TriggerEvaluator:
    """Compare live prices against every active strategy's trigger condition."""

    def __init__(self, store: StrategyStore, pricing: JupiterClient) -> None:
        self.store = store
        self.pricing = pricing
        self.log = structlog.get_logger(__name__)
        self._metrics: Metrics | None = None

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    async def evaluate_triggers(self) -> list[TriggerResult]:
        """Run one sweep.

        Strategies without a usable price (missing or 0) are skipped and not
        reported. A failed price batch yields no results; a persistence error on
        one strategy is logged and the sweep moves on.
        """
        start = time.perf_counter()
        strategies = self.store.list_by_status(StrategyStatus.ACTIVE)
        if self._metrics:
            self._metrics.trigger_sweeps_total.inc()
            self._metrics.strategies_active.set(len(strategies))
        if not strategies:
            return []

        mints = {strategy.token_mint for strategy in strategies}
        try:
            prices = await self.pricing.get_prices(mints)
        except UpstreamError as exc:
            self.log.warning(
                "trigger_sweep_price_failed",
                error=exc.message,
                cause=exc.cause.value,
                strategies=len(strategies),
            )
            if self._metrics:
                self._metrics.price_fetch_failures_total.inc()
            return []

        results: list[TriggerResult] = []
        skipped = 0
        for strategy in strategies:
            price = prices.get(strategy.token_mint) or 0.0
            if price <= 0:
                skipped += 1
                continue

            did_trigger = False
            if strategy.condition_met(price):
                try:
                    attempt = self.store.mark_triggered(strategy, price)
                except PersistenceError as exc:
                    self.log.error(
                        "strategy_trigger_persist_failed",
                        strategy_id=strategy.id,
                        error=exc.message,
                    )
                    if self._metrics:
                        self._metrics.trigger_persist_failures_total.inc()
                else:
                    did_trigger = attempt is not None
                    if did_trigger:
                        self.log.info(
                            "strategy_triggered",
                            strategy_id=strategy.id,
                            type=strategy.type.value,
                            token_symbol=strategy.token_symbol,
                            trigger_price=strategy.trigger_price,
                            observed_price=price,
                        )
                        if self._metrics:
                            self._metrics.strategies_triggered_total.labels(
                                type=strategy.type.value
                            ).inc()
            results.append(
                TriggerResult(strategy_id=strategy.id, did_trigger=did_trigger, observed_price=price)
            )

        duration_ms = (time.perf_counter() - start) * 1000
        triggered = sum(1 for result in results if result.did_trigger)
        if self._metrics:
            self._metrics.strategies_evaluated_total.inc(len(results))
            self._metrics.strategies_skipped_total.inc(skipped)
            self._metrics.trigger_sweep_duration_ms.observe(duration_ms)
        self.log.info(
            "trigger_sweep_completed",
            active=len(strategies),
            evaluated=len(results),
            skipped=skipped,
            triggered=triggered,
            duration_ms=round(duration_ms, 2),
        )
        return results
