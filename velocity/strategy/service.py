"""User-facing strategy lifecycle operations."""

from __future__ import annotations

from typing import Any, Mapping

import structlog

from velocity.config.settings import StrategyConfig
from velocity.strategy.errors import InvalidState, LimitReachedError, NotFound, ValidationError
from velocity.strategy.models import (
    USER_TRANSITIONS,
    ExecutionAttempt,
    Strategy,
    StrategyCreateRequest,
    StrategyStatus,
)
from velocity.strategy.store import StrategyStore
from velocity.strategy.validation import validate_strategy_request

log = structlog.get_logger(__name__)


class StrategyService:
    """Create, inspect, pause/resume and delete a user's strategies."""

    def __init__(self, store: StrategyStore, config: StrategyConfig) -> None:
        self.store = store
        self.config = config

    def create_strategy(self, user_id: str, body: Mapping[str, Any]) -> Strategy:
        errors = validate_strategy_request(
            body, self.config.max_slippage_bps, self.config.max_symbol_length
        )
        if errors:
            raise ValidationError("Validation failed", details=errors)
        request = StrategyCreateRequest.from_dict(body)
        strategy = self.store.create_strategy(
            user_id, request, max_active=self.config.max_active_per_user
        )
        log.info(
            "strategy_created",
            strategy_id=strategy.id,
            user_id=user_id,
            token=strategy.token_symbol,
            type=strategy.type.value,
            trigger_price=strategy.trigger_price,
        )
        return strategy

    def list_strategies(self, user_id: str) -> list[Strategy]:
        return self.store.list_by_user(user_id)

    def get_strategy(self, strategy_id: str, user_id: str) -> Strategy:
        strategy = self.store.get_for_user(strategy_id, user_id)
        if strategy is None:
            raise NotFound("Strategy not found")
        return strategy

    def update_status(self, strategy_id: str, user_id: str, status: str) -> Strategy:
        """Apply a user-requested ``active <-> paused`` transition."""
        try:
            target = StrategyStatus(status)
        except ValueError:
            target = None
        if target not in (StrategyStatus.ACTIVE, StrategyStatus.PAUSED):
            raise ValidationError(
                "Invalid status",
                details=[{"field": "status", "message": "Status must be active or paused"}],
            )

        strategy = self.get_strategy(strategy_id, user_id)
        if strategy.status is target:
            return strategy
        if target not in USER_TRANSITIONS.get(strategy.status, frozenset()):
            raise InvalidState(
                f"Cannot move strategy from {strategy.status.value} to {target.value}",
                current_status=strategy.status.value,
            )

        # Resuming counts against the active limit like a fresh create does.
        if target is StrategyStatus.ACTIVE:
            self._ensure_below_active_limit(user_id)

        changed = self.store.update_status(
            strategy_id, target, expected=strategy.status, user_id=user_id
        )
        if not changed:
            current = self.get_strategy(strategy_id, user_id)
            raise InvalidState(
                f"Strategy changed to {current.status.value} concurrently",
                current_status=current.status.value,
            )
        log.info(
            "strategy_status_updated",
            strategy_id=strategy_id,
            previous=strategy.status.value,
            status=target.value,
        )
        return self.get_strategy(strategy_id, user_id)

    def delete_strategy(self, strategy_id: str, user_id: str) -> None:
        if not self.store.delete(strategy_id, user_id):
            raise NotFound("Strategy not found")
        log.info("strategy_deleted", strategy_id=strategy_id, user_id=user_id)

    def list_attempts(self, strategy_id: str, user_id: str) -> list[ExecutionAttempt]:
        self.get_strategy(strategy_id, user_id)
        return self.store.list_attempts(strategy_id)

    def _ensure_below_active_limit(self, user_id: str) -> None:
        limit = self.config.max_active_per_user
        if self.store.count_active(user_id) >= limit:
            raise LimitReachedError(f"Maximum {limit} active strategies allowed")
