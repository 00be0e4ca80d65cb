"""Strategy records, persistence and user lifecycle operations."""

from velocity.strategy.errors import (
    AuthenticationError,
    ExecutionPreparationError,
    InvalidState,
    LimitReachedError,
    NotFound,
    PersistenceError,
    RateLimitError,
    UpstreamCause,
    UpstreamError,
    ValidationError,
    VelocityError,
)
from velocity.strategy.models import (
    ExecutionAttempt,
    Strategy,
    StrategyStatus,
    StrategyType,
    TriggerResult,
)
from velocity.strategy.service import StrategyService
from velocity.strategy.store import StrategyStore

__all__ = [
    # Records
    "Strategy",
    "StrategyStatus",
    "StrategyType",
    "ExecutionAttempt",
    "TriggerResult",
    # Persistence / service
    "StrategyStore",
    "StrategyService",
    # Errors
    "VelocityError",
    "ValidationError",
    "AuthenticationError",
    "LimitReachedError",
    "NotFound",
    "InvalidState",
    "UpstreamError",
    "UpstreamCause",
    "ExecutionPreparationError",
    "PersistenceError",
    "RateLimitError",
]
