"""Turn a triggered strategy into an unsigned swap transaction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from velocity.config.settings import JupiterConfig, StrategyConfig
from velocity.connectors.jupiter_client import Quote, SwapTransaction
from velocity.strategy.errors import (
    ExecutionPreparationError,
    InvalidState,
    NotFound,
    UpstreamCause,
    UpstreamError,
)
from velocity.strategy.models import Strategy, StrategyStatus, StrategyType
from velocity.strategy.store import StrategyStore

if TYPE_CHECKING:
    from velocity.connectors.jupiter_client import JupiterClient
    from velocity.monitoring.metrics import Metrics


@dataclass(frozen=True)
class PreparedExecution:
    strategy: Strategy
    quote: Quote
    swap: SwapTransaction

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.to_dict(),
            "quote": self.quote.to_dict(),
            "swap": self.swap.to_dict(),
        }


def swap_direction(strategy: Strategy, quote_mint: str) -> tuple[str, str]:
    """Return ``(input_mint, output_mint)`` for the strategy's swap."""
    if strategy.type == StrategyType.BUY_DIP:
        return quote_mint, strategy.token_mint
    return strategy.token_mint, quote_mint


class ExecutionPreparer:
    """Quote and build a swap for a triggered strategy. Never changes its status."""

    def __init__(
        self,
        store: StrategyStore,
        pricing: JupiterClient,
        jupiter: JupiterConfig,
        strategy_config: StrategyConfig,
    ) -> None:
        self.store = store
        self.pricing = pricing
        self.quote_mint = jupiter.quote_mint
        self.max_slippage_bps = strategy_config.max_slippage_bps
        self.log = structlog.get_logger(__name__)
        self._metrics: Metrics | None = None

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    def _record(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.executions_prepared_total.labels(outcome=outcome).inc()

    async def prepare_execution(self, strategy_id: str, user_public_key: str) -> PreparedExecution:
        strategy = self.store.get_by_id(strategy_id)
        if strategy is None:
            raise NotFound("Strategy not found")
        if strategy.status != StrategyStatus.TRIGGERED:
            raise InvalidState(
                f"Strategy is {strategy.status.value}, expected triggered",
                current_status=strategy.status.value,
            )

        input_mint, output_mint = swap_direction(strategy, self.quote_mint)
        try:
            quote = await self.pricing.get_quote(
                input_mint, output_mint, strategy.amount, strategy.slippage_bps
            )
        except UpstreamError as exc:
            self._record(UpstreamCause.QUOTE_FAILED.value)
            self.log.warning("execution_quote_failed", strategy_id=strategy.id, error=exc.message)
            raise ExecutionPreparationError(exc.message, UpstreamCause.QUOTE_FAILED) from exc

        impact_bps = quote.price_impact_bps
        if self._metrics:
            self._metrics.quote_price_impact_bps.observe(impact_bps)
        limit_bps = min(strategy.slippage_bps, self.max_slippage_bps)
        if impact_bps > limit_bps:
            self._record(UpstreamCause.SLIPPAGE_EXCEEDED.value)
            self.log.warning(
                "execution_slippage_exceeded",
                strategy_id=strategy.id,
                price_impact_bps=impact_bps,
                limit_bps=limit_bps,
            )
            raise ExecutionPreparationError(
                f"Price impact {impact_bps / 100:.2f}% exceeds tolerance {limit_bps / 100:.2f}%",
                UpstreamCause.SLIPPAGE_EXCEEDED,
            )

        try:
            swap = await self.pricing.build_swap_transaction(quote, user_public_key)
        except UpstreamError as exc:
            self._record(UpstreamCause.BUILD_FAILED.value)
            self.log.warning("execution_build_failed", strategy_id=strategy.id, error=exc.message)
            raise ExecutionPreparationError(exc.message, UpstreamCause.BUILD_FAILED) from exc

        self._record("prepared")
        self.log.info(
            "execution_prepared",
            strategy_id=strategy.id,
            input_mint=input_mint,
            output_mint=output_mint,
            amount=strategy.amount,
            out_amount=quote.out_amount,
            last_valid_block_height=swap.last_valid_block_height,
        )
        return PreparedExecution(strategy=strategy, quote=quote, swap=swap)
