"""HTTP API for managing strategies and driving their execution."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from velocity.api.rate_limit import RateLimitTracker
from velocity.config.settings import Settings
from velocity.execution.engine import StrategyEngine
from velocity.strategy.errors import AuthenticationError, ValidationError, VelocityError
from velocity.strategy.models import User
from velocity.strategy.service import StrategyService
from velocity.strategy.store import StrategyStore
from velocity.strategy.validation import validate_public_key

# Signed requests must carry a timestamp within this window (ms).
MAX_REQUEST_AGE_MS = 5 * 60 * 1000

log = structlog.get_logger(__name__)


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def check_request_age(timestamp: str, now_ms: int | None = None) -> None:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    try:
        sent_ms = int(timestamp)
    except ValueError as exc:
        raise AuthenticationError("Invalid timestamp", code="EXPIRED") from exc
    if abs(now_ms - sent_ms) > MAX_REQUEST_AGE_MS:
        raise AuthenticationError("Request expired", code="EXPIRED")


def create_app(
    settings: Settings,
    store: StrategyStore,
    service: StrategyService,
    engine: StrategyEngine,
    rate_limiter: RateLimitTracker | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Create, status change, delete, execute and confirm are rate limited per
    public key (`api_rate_limit_per_minute`).
    """
    started_at = time.time()
    limiter = rate_limiter or RateLimitTracker(
        max_requests=settings.monitoring.api_rate_limit_per_minute, window_sec=60.0
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        nonlocal started_at
        started_at = time.time()
        yield

    app = FastAPI(
        title="Velocity Strategy API",
        description="Price-triggered swap strategies on Solana",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(VelocityError)
    async def velocity_error_handler(request: Request, exc: VelocityError) -> JSONResponse:
        event = "api_request_failed" if exc.http_status >= 500 else "api_request_rejected"
        log.warning(event, path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())[1:]) or "body",
                "message": err.get("msg", "invalid"),
            }
            for err in exc.errors()
        ]
        error = ValidationError("Invalid request body", details=details)
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    async def current_user(
        x_public_key: str | None = Header(default=None),
        x_signature: str | None = Header(default=None),
        x_timestamp: str | None = Header(default=None),
    ) -> User:
        if not x_public_key:
            raise AuthenticationError("Missing public key", code="AUTH_REQUIRED")
        if not validate_public_key(x_public_key):
            raise AuthenticationError("Invalid public key", code="INVALID_KEY")
        if x_signature and x_timestamp:
            check_request_age(x_timestamp)
        return store.get_or_create_user(x_public_key)

    async def limited_user(user: User = Depends(current_user)) -> User:
        limiter.consume(user.public_key)
        return user

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "uptime_sec": time.time() - started_at,
            "environment": settings.environment,
            "trigger_interval_sec": settings.strategy.trigger_interval_sec,
            "has_backup_rpc": settings.has_backup_rpc,
            "api_port": settings.monitoring.api_port,
            "metrics_port": settings.monitoring.metrics_port,
        }

    prefix = "/api/v1/strategy"

    @app.get(prefix)
    async def list_strategies(user: User = Depends(current_user)) -> dict[str, Any]:
        return ok([s.to_dict() for s in service.list_strategies(user.id)])

    @app.post(prefix)
    async def create_strategy(
        body: dict[str, Any] = Body(...),
        user: User = Depends(limited_user),
    ) -> dict[str, Any]:
        return ok(service.create_strategy(user.id, body).to_dict())

    @app.get(prefix + "/{strategy_id}")
    async def get_strategy(strategy_id: str, user: User = Depends(current_user)) -> dict[str, Any]:
        return ok(service.get_strategy(strategy_id, user.id).to_dict())

    @app.put(prefix + "/{strategy_id}/status")
    async def update_status(
        strategy_id: str,
        body: dict[str, Any] = Body(...),
        user: User = Depends(limited_user),
    ) -> dict[str, Any]:
        status = body.get("status")
        strategy = service.update_status(strategy_id, user.id, status if isinstance(status, str) else "")
        return ok(strategy.to_dict())

    @app.delete(prefix + "/{strategy_id}")
    async def delete_strategy(strategy_id: str, user: User = Depends(limited_user)) -> dict[str, Any]:
        service.delete_strategy(strategy_id, user.id)
        return ok({"deleted": True})

    @app.get(prefix + "/{strategy_id}/executions")
    async def list_executions(
        strategy_id: str, user: User = Depends(current_user)
    ) -> dict[str, Any]:
        return ok([a.to_dict() for a in service.list_attempts(strategy_id, user.id)])

    @app.get(prefix + "/{strategy_id}/execute")
    async def prepare_execution(
        strategy_id: str, user: User = Depends(limited_user)
    ) -> dict[str, Any]:
        service.get_strategy(strategy_id, user.id)
        prepared = await engine.prepare_execution(strategy_id, user.public_key)
        return ok(prepared.to_dict())

    @app.post(prefix + "/{strategy_id}/confirm")
    async def confirm_execution(
        strategy_id: str,
        body: dict[str, Any] = Body(...),
        user: User = Depends(limited_user),
    ) -> dict[str, Any]:
        service.get_strategy(strategy_id, user.id)
        signature = body.get("tx_signature")
        if not isinstance(signature, str):
            signature = ""
        blockhash = body.get("blockhash")
        last_valid = body.get("last_valid_block_height")
        if blockhash and last_valid is not None and engine.finalizer.rpc is not None:
            if not isinstance(last_valid, int) or isinstance(last_valid, bool):
                raise ValidationError(
                    "Invalid request body",
                    details=[{"field": "last_valid_block_height", "message": "must be an integer"}],
                )
            confirmed = await engine.confirm_on_chain(strategy_id, signature, str(blockhash), last_valid)
            strategy = service.get_strategy(strategy_id, user.id)
            return ok({"confirmed": confirmed, "strategy": strategy.to_dict()})
        strategy = engine.confirm_execution(strategy_id, signature)
        return ok({"confirmed": True, "strategy": strategy.to_dict()})

    @app.post(prefix + "/{strategy_id}/fail")
    async def fail_execution(
        strategy_id: str,
        body: dict[str, Any] | None = Body(default=None),
        user: User = Depends(current_user),
    ) -> dict[str, Any]:
        service.get_strategy(strategy_id, user.id)
        reason = (body or {}).get("reason")
        strategy = engine.fail_execution(strategy_id, reason if isinstance(reason, str) else "")
        return ok(strategy.to_dict())

    return app
