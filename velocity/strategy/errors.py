"""Error taxonomy shared by the store, engine and API layers."""

from __future__ import annotations

from enum import Enum
from typing import Any


class UpstreamCause(str, Enum):
    """Sub-cause of a collaborator failure."""

    QUOTE_FAILED = "quote_failed"
    BUILD_FAILED = "build_failed"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    RPC_UNREACHABLE = "rpc_unreachable"
    RPC_ERROR = "rpc_error"
    PRICE_UNAVAILABLE = "price_unavailable"


class VelocityError(Exception):
    """Base error carrying a machine-readable code and an HTTP-equivalent status."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(VelocityError):
    """Malformed input, rejected before any state change."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, details: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.details:
            payload["details"] = self.details
        return payload


class LimitReachedError(ValidationError):
    code = "LIMIT_REACHED"


class AuthenticationError(VelocityError):
    """Missing, malformed or expired caller credentials."""

    code = "AUTH_REQUIRED"
    http_status = 401

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class NotFound(VelocityError):
    code = "NOT_FOUND"
    http_status = 404


class RateLimitError(VelocityError):
    """Too many mutating requests from one caller within the window."""

    code = "RATE_LIMIT"
    http_status = 429


class InvalidState(VelocityError):
    """Operation attempted against a strategy not in the required status."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.current_status is not None:
            payload["status"] = self.current_status
        return payload


class UpstreamError(VelocityError):
    """Pricing or chain collaborator failure."""

    code = "UPSTREAM_ERROR"
    http_status = 502

    def __init__(self, message: str, cause: UpstreamCause) -> None:
        super().__init__(message)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["cause"] = self.cause.value
        return payload


class ExecutionPreparationError(UpstreamError):
    code = "EXECUTION_ERROR"


class PersistenceError(VelocityError):
    code = "PERSISTENCE_ERROR"
    http_status = 500
