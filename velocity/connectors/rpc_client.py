"""Async Solana JSON-RPC client with primary/backup failover."""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import orjson
import structlog

from velocity.config.settings import RpcConfig
from velocity.monitoring.metrics import Metrics
from velocity.strategy.errors import UpstreamCause, UpstreamError

# At most one primary -> backup hop per logical call.
MAX_FAILOVERS_PER_CALL = 1

CONFIRMED_STATUSES = frozenset({"confirmed", "finalized"})


class EndpointFailover:
    """Primary/backup endpoint selection for one RPC client.

    After a primary failure, calls go to the backup until ``retry_interval_sec``
    has passed, then the primary is tried again.
    """

    def __init__(
        self,
        primary_url: str,
        backup_url: str = "",
        retry_interval_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.primary_url = primary_url
        self.backup_url = backup_url
        self.retry_interval_sec = retry_interval_sec
        self.primary_failed = False
        self.last_failure_time = 0.0
        self._clock = clock

    @property
    def has_backup(self) -> bool:
        return bool(self.backup_url)

    def get_endpoint(self) -> str:
        if self.primary_failed:
            if self._clock() - self.last_failure_time > self.retry_interval_sec:
                self.primary_failed = False
            elif self.has_backup:
                return self.backup_url
        return self.primary_url

    def role(self, endpoint: str) -> str:
        return "backup" if self.has_backup and endpoint == self.backup_url else "primary"

    def record_success(self, endpoint: str) -> None:
        # Only a healthy primary clears the flag; backup successes keep the window open.
        if endpoint == self.primary_url:
            self.primary_failed = False

    def record_failure(self, endpoint: str) -> bool:
        """Mark a failure and return True when the call should be retried on the backup."""
        if not self.has_backup or self.role(endpoint) == "backup":
            return False
        self.primary_failed = True
        self.last_failure_time = self._clock()
        return True


@dataclass(frozen=True)
class LatestBlockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    slot: int | None
    confirmations: int | None
    err: Any
    confirmation_status: str | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignatureStatus":
        return cls(
            slot=data.get("slot"),
            confirmations=data.get("confirmations"),
            err=data.get("err"),
            confirmation_status=data.get("confirmationStatus"),
        )


class SolanaRpcClient:
    """Solana JSON-RPC client over a primary and an optional backup endpoint."""

    def __init__(
        self,
        config: RpcConfig,
        http: httpx.AsyncClient | None = None,
        log_http: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.failover = EndpointFailover(
            config.primary_url,
            config.backup_url,
            retry_interval_sec=config.failover_retry_sec,
            clock=clock,
        )
        self.http = http or httpx.AsyncClient(timeout=config.request_timeout_sec)
        self.log_http = log_http
        self.metrics: Metrics | None = None
        self._clock = clock
        self._request_ids = itertools.count(1)
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self.metrics = metrics

    async def close(self) -> None:
        await self.http.aclose()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Issue one logical RPC call, failing over to the backup at most once."""
        failovers = 0
        while True:
            endpoint = self.failover.get_endpoint()
            try:
                result = await self._send(endpoint, method, params or [])
            except UpstreamError as exc:
                if self.metrics:
                    self.metrics.rpc_error_total.labels(endpoint=self.failover.role(endpoint)).inc()
                switched = self.failover.record_failure(endpoint)
                if switched and failovers < MAX_FAILOVERS_PER_CALL:
                    failovers += 1
                    self.log.warning(
                        "rpc_failover",
                        method=method,
                        error=exc.message,
                        retry_after_sec=self.failover.retry_interval_sec,
                    )
                    if self.metrics:
                        self.metrics.rpc_failover_total.inc()
                        self.metrics.rpc_on_backup.set(1)
                    continue
                raise
            self.failover.record_success(endpoint)
            if self.metrics:
                self.metrics.rpc_on_backup.set(1 if self.failover.primary_failed else 0)
            return result

    async def _send(self, endpoint: str, method: str, params: list[Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        role = self.failover.role(endpoint)
        start = time.perf_counter()
        if self.log_http:
            self.log.info("rpc_request", method=method, endpoint=role)
        try:
            response = await self.http.post(
                endpoint,
                content=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            data = orjson.loads(response.content)
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"RPC error: {exc.response.status_code}", UpstreamCause.RPC_UNREACHABLE
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"RPC unreachable: {exc.__class__.__name__}", UpstreamCause.RPC_UNREACHABLE
            ) from exc
        except orjson.JSONDecodeError as exc:
            raise UpstreamError("RPC returned invalid JSON", UpstreamCause.RPC_UNREACHABLE) from exc
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            if self.metrics:
                self.metrics.rpc_request_latency_ms.labels(method=method).observe(latency_ms)

        if not isinstance(data, dict):
            raise UpstreamError("RPC returned a non-object payload", UpstreamCause.RPC_ERROR)
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamError(message or "RPC error", UpstreamCause.RPC_ERROR)
        if self.log_http:
            self.log.info(
                "rpc_response",
                method=method,
                endpoint=role,
                latency_ms=round(latency_ms, 2),
            )
        return data.get("result")

    async def get_latest_blockhash(self) -> LatestBlockhash:
        result = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        try:
            value = result["value"]
            return LatestBlockhash(
                blockhash=value["blockhash"],
                last_valid_block_height=int(value["lastValidBlockHeight"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError("Malformed getLatestBlockhash result", UpstreamCause.RPC_ERROR) from exc

    async def get_block_height(self) -> int:
        result = await self.call("getBlockHeight", [])
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise UpstreamError("Malformed getBlockHeight result", UpstreamCause.RPC_ERROR) from exc

    async def get_signature_statuses(self, signatures: list[str]) -> list[SignatureStatus | None]:
        result = await self.call("getSignatureStatuses", [signatures])
        try:
            values = result["value"]
            return [SignatureStatus.from_dict(v) if v else None for v in values]
        except (KeyError, TypeError, AttributeError) as exc:
            raise UpstreamError(
                "Malformed getSignatureStatuses result", UpstreamCause.RPC_ERROR
            ) from exc

    async def get_balance(self, public_key: str) -> int:
        result = await self.call("getBalance", [public_key, {"commitment": "confirmed"}])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError("Malformed getBalance result", UpstreamCause.RPC_ERROR) from exc

    async def get_token_account_balance(self, account: str) -> str:
        """Return the raw token amount, or ``"0"`` when the account cannot be read."""
        try:
            result = await self.call("getTokenAccountBalance", [account])
            return str(result["value"]["amount"])
        except (UpstreamError, KeyError, TypeError) as exc:
            self.log.warning("token_balance_unavailable", account=account, error=str(exc))
            return "0"

    async def send_transaction(self, serialized_transaction: str) -> str:
        """Broadcast a base64-encoded signed transaction and return its signature."""
        return await self.call(
            "sendTransaction",
            [
                serialized_transaction,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": "confirmed",
                    "maxRetries": 3,
                },
            ],
        )

    async def _poll_signature(
        self,
        signature: str,
        blockhash: str,
        last_valid_block_height: int,
    ) -> str | None:
        """One confirmation check. Returns the final outcome, or None to keep polling."""
        statuses = await self.get_signature_statuses([signature])
        status = statuses[0] if statuses else None
        if status is not None:
            if status.err is not None:
                self.log.warning(
                    "transaction_failed_on_chain", signature=signature, err=str(status.err)
                )
                return "failed"
            if status.confirmation_status in CONFIRMED_STATUSES:
                return "confirmed"

        block_height = await self.get_block_height()
        if block_height > last_valid_block_height:
            self.log.warning(
                "transaction_blockhash_expired",
                signature=signature,
                blockhash=blockhash,
                block_height=block_height,
                last_valid_block_height=last_valid_block_height,
            )
            return "expired"
        return None

    async def confirm_transaction(
        self,
        signature: str,
        blockhash: str,
        last_valid_block_height: int,
    ) -> bool:
        """Poll until the signature is confirmed, fails, expires or the timeout passes.

        Each poll, including its RPC calls, is bounded by the time left, so the
        result arrives within ``confirm_timeout_sec``. Transient RPC errors are
        absorbed; only the final outcome is returned.
        """
        timeout = self.config.confirm_timeout_sec
        start = self._clock()
        outcome: str | None = None

        while outcome is None and (elapsed := self._clock() - start) < timeout:
            remaining = timeout - elapsed
            delay = self.config.confirm_poll_sec
            try:
                outcome = await asyncio.wait_for(
                    self._poll_signature(signature, blockhash, last_valid_block_height),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                break
            except UpstreamError as exc:
                self.log.warning("confirm_poll_error", signature=signature, error=exc.message)
                delay = self.config.confirm_error_poll_sec
            if outcome is None:
                remaining = timeout - (self._clock() - start)
                if remaining > 0:
                    await asyncio.sleep(min(delay, remaining))

        outcome = outcome or "timeout"
        if outcome == "timeout":
            self.log.warning("transaction_confirm_timeout", signature=signature, timeout_sec=timeout)
        else:
            self.log.info("transaction_confirm_result", signature=signature, outcome=outcome)
        if self.metrics:
            self.metrics.confirmations_total.labels(outcome=outcome).inc()
        return outcome == "confirmed"
