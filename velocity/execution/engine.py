"""Strategy engine: the operations the core offers to the API and the scheduler."""

from __future__ import annotations

from typing import TYPE_CHECKING

from velocity.config.settings import Settings
from velocity.execution.finalizer import ExecutionFinalizer
from velocity.execution.preparer import ExecutionPreparer, PreparedExecution
from velocity.execution.trigger_evaluator import TriggerEvaluator
from velocity.strategy.models import Strategy, TriggerResult
from velocity.strategy.store import StrategyStore

if TYPE_CHECKING:
    from velocity.connectors.jupiter_client import JupiterClient
    from velocity.connectors.rpc_client import SolanaRpcClient
    from velocity.monitoring.metrics import Metrics


class StrategyEngine:
    """Wire the trigger evaluator, preparer and finalizer over one store."""

    def __init__(
        self,
        settings: Settings,
        store: StrategyStore,
        pricing: JupiterClient,
        rpc: SolanaRpcClient | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.evaluator = TriggerEvaluator(store, pricing)
        self.preparer = ExecutionPreparer(store, pricing, settings.jupiter, settings.strategy)
        self.finalizer = ExecutionFinalizer(store, rpc)

    def set_metrics(self, metrics: Metrics) -> None:
        self.evaluator.set_metrics(metrics)
        self.preparer.set_metrics(metrics)
        self.finalizer.set_metrics(metrics)

    async def evaluate_triggers(self) -> list[TriggerResult]:
        return await self.evaluator.evaluate_triggers()

    async def prepare_execution(self, strategy_id: str, user_public_key: str) -> PreparedExecution:
        return await self.preparer.prepare_execution(strategy_id, user_public_key)

    def confirm_execution(self, strategy_id: str, tx_signature: str) -> Strategy:
        return self.finalizer.mark_executed(strategy_id, tx_signature)

    def fail_execution(self, strategy_id: str, reason: str) -> Strategy:
        return self.finalizer.mark_failed(strategy_id, reason)

    async def confirm_on_chain(
        self,
        strategy_id: str,
        tx_signature: str,
        blockhash: str,
        last_valid_block_height: int,
    ) -> bool:
        return await self.finalizer.confirm_on_chain(
            strategy_id, tx_signature, blockhash, last_valid_block_height
        )
