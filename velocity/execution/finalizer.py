"""Record the outcome of a submitted (or abandoned) execution."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from velocity.strategy.errors import InvalidState, NotFound, ValidationError
from velocity.strategy.models import Strategy, StrategyStatus
from velocity.strategy.store import StrategyStore

if TYPE_CHECKING:
    from velocity.connectors.rpc_client import SolanaRpcClient
    from velocity.monitoring.metrics import Metrics

DEFAULT_FAILURE_REASON = "Execution failed"


class ExecutionFinalizer:
    """Move triggered strategies to executed or failed.

    Both transitions are idempotent: repeating ``mark_executed`` with the same
    signature, or ``mark_failed`` on an already failed strategy, rewrites the
    same terminal state instead of raising.
    """

    def __init__(self, store: StrategyStore, rpc: SolanaRpcClient | None = None) -> None:
        self.store = store
        self.rpc = rpc
        self.log = structlog.get_logger(__name__)
        self._metrics: Metrics | None = None

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    def _load(self, strategy_id: str) -> Strategy:
        strategy = self.store.get_by_id(strategy_id)
        if strategy is None:
            raise NotFound("Strategy not found")
        return strategy

    def _executable_from(self, strategy: Strategy, tx_signature: str) -> set[StrategyStatus]:
        if strategy.status == StrategyStatus.TRIGGERED:
            return {StrategyStatus.TRIGGERED}
        if strategy.status == StrategyStatus.EXECUTED and strategy.tx_signature == tx_signature:
            return {StrategyStatus.EXECUTED}
        if strategy.status == StrategyStatus.EXECUTED:
            raise InvalidState(
                "Strategy already executed with a different signature",
                current_status=strategy.status.value,
            )
        raise InvalidState(
            f"Cannot confirm a strategy that is {strategy.status.value}",
            current_status=strategy.status.value,
        )

    def mark_executed(self, strategy_id: str, tx_signature: str) -> Strategy:
        tx_signature = (tx_signature or "").strip()
        if not tx_signature:
            raise ValidationError(
                "Transaction signature is required",
                details=[{"field": "tx_signature", "message": "must be a non-empty string"}],
            )
        strategy = self._load(strategy_id)
        expected = self._executable_from(strategy, tx_signature)
        if not self.store.mark_executed(strategy_id, tx_signature, expected=expected):
            current = self._load(strategy_id)
            raise InvalidState("Strategy changed state concurrently", current_status=current.status.value)

        self.log.info("strategy_executed", strategy_id=strategy_id, tx_signature=tx_signature)
        if self._metrics:
            self._metrics.executions_finalized_total.labels(status=StrategyStatus.EXECUTED.value).inc()
        return self._load(strategy_id)

    def mark_failed(self, strategy_id: str, error_message: str) -> Strategy:
        reason = (error_message or "").strip() or DEFAULT_FAILURE_REASON
        strategy = self._load(strategy_id)
        if strategy.status not in (StrategyStatus.TRIGGERED, StrategyStatus.FAILED):
            raise InvalidState(
                f"Cannot fail a strategy that is {strategy.status.value}",
                current_status=strategy.status.value,
            )
        expected = {StrategyStatus.TRIGGERED, StrategyStatus.FAILED}
        if not self.store.mark_failed(strategy_id, reason, expected=expected):
            current = self._load(strategy_id)
            raise InvalidState("Strategy changed state concurrently", current_status=current.status.value)

        self.log.warning("strategy_failed", strategy_id=strategy_id, reason=reason)
        if self._metrics:
            self._metrics.executions_finalized_total.labels(status=StrategyStatus.FAILED.value).inc()
        return self._load(strategy_id)

    async def confirm_on_chain(
        self,
        strategy_id: str,
        tx_signature: str,
        blockhash: str,
        last_valid_block_height: int,
    ) -> bool:
        """Wait for chain confirmation, then mark executed.

        Returns False (strategy left as is) when the transaction is not
        confirmed before it fails, expires or the poll times out.
        """
        if self.rpc is None:
            raise RuntimeError("confirm_on_chain requires an RPC client")
        tx_signature = (tx_signature or "").strip()
        if not tx_signature:
            raise ValidationError(
                "Transaction signature is required",
                details=[{"field": "tx_signature", "message": "must be a non-empty string"}],
            )
        self._executable_from(self._load(strategy_id), tx_signature)

        confirmed = await self.rpc.confirm_transaction(
            tx_signature, blockhash, last_valid_block_height
        )
        if not confirmed:
            self.log.warning(
                "strategy_confirmation_missing", strategy_id=strategy_id, tx_signature=tx_signature
            )
            return False
        self.mark_executed(strategy_id, tx_signature)
        return True
