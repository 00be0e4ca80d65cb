"""Strategy domain records and lifecycle rules."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class StrategyType(str, Enum):
    BUY_DIP = "buy_dip"
    TAKE_PROFIT = "take_profit"


class StrategyStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"
    EXECUTED = "executed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({StrategyStatus.EXECUTED, StrategyStatus.FAILED})

# Transitions a user may request directly; everything else is owned by the engine.
USER_TRANSITIONS: dict[StrategyStatus, frozenset[StrategyStatus]] = {
    StrategyStatus.ACTIVE: frozenset({StrategyStatus.PAUSED}),
    StrategyStatus.PAUSED: frozenset({StrategyStatus.ACTIVE}),
}


def unix_now() -> int:
    """Return the current time in whole unix seconds."""
    return int(time.time())


@dataclass(frozen=True)
class Strategy:
    """A user's standing conditional swap order."""

    id: str
    user_id: str
    token_mint: str
    token_symbol: str
    type: StrategyType
    trigger_price: float
    amount: str
    slippage_bps: int
    status: StrategyStatus
    created_at: int
    updated_at: int
    executed_at: int | None = None
    tx_signature: str | None = None

    def condition_met(self, current_price: float) -> bool:
        """Return True when the observed price crosses this strategy's trigger."""
        if self.type is StrategyType.BUY_DIP:
            return current_price <= self.trigger_price
        return current_price >= self.trigger_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "token_mint": self.token_mint,
            "token_symbol": self.token_symbol,
            "type": self.type.value,
            "trigger_price": self.trigger_price,
            "amount": self.amount,
            "slippage_bps": self.slippage_bps,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "executed_at": self.executed_at,
            "tx_signature": self.tx_signature,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Strategy":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            token_mint=row["token_mint"],
            token_symbol=row["token_symbol"],
            type=StrategyType(row["type"]),
            trigger_price=float(row["trigger_price"]),
            amount=str(row["amount"]),
            slippage_bps=int(row["slippage_bps"]),
            status=StrategyStatus(row["status"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            executed_at=row["executed_at"],
            tx_signature=row["tx_signature"],
        )


@dataclass(frozen=True)
class StrategyCreateRequest:
    token_mint: str
    token_symbol: str
    type: StrategyType
    trigger_price: float
    amount: str
    slippage_bps: int

    @classmethod
    def from_dict(cls, body: Mapping[str, Any]) -> "StrategyCreateRequest":
        """Build from an already validated request body."""
        return cls(
            token_mint=body["token_mint"],
            token_symbol=body["token_symbol"],
            type=StrategyType(body["type"]),
            trigger_price=float(body["trigger_price"]),
            amount=str(body["amount"]),
            slippage_bps=int(body["slippage_bps"]),
        )


@dataclass(frozen=True)
class ExecutionAttempt:
    """One logged trigger-to-resolution cycle for a strategy."""

    id: str
    strategy_id: str
    trigger_price: float
    actual_price: float
    status: StrategyStatus
    created_at: int
    error_message: str | None = None
    tx_signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "trigger_price": self.trigger_price,
            "actual_price": self.actual_price,
            "status": self.status.value,
            "error_message": self.error_message,
            "tx_signature": self.tx_signature,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ExecutionAttempt":
        return cls(
            id=row["id"],
            strategy_id=row["strategy_id"],
            trigger_price=float(row["trigger_price"]),
            actual_price=float(row["actual_price"]),
            status=StrategyStatus(row["status"]),
            created_at=int(row["created_at"]),
            error_message=row["error_message"],
            tx_signature=row["tx_signature"],
        )


@dataclass(frozen=True)
class TriggerResult:
    """Outcome of evaluating one strategy during a sweep."""

    strategy_id: str
    did_trigger: bool
    observed_price: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "did_trigger": self.did_trigger,
            "observed_price": self.observed_price,
        }


@dataclass(frozen=True)
class User:
    id: str
    public_key: str
    created_at: int
    last_active: int
