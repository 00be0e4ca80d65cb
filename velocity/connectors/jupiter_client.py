"""Jupiter aggregator client: batched prices, quotes and swap builds."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import httpx
import orjson
import structlog

from velocity.config.settings import JupiterConfig
from velocity.strategy.errors import UpstreamCause, UpstreamError


@dataclass(frozen=True)
class Quote:
    """Parsed view of a Jupiter quote.

    Only the fields the engine reads are parsed; ``raw`` is the untouched
    response and is what gets sent back to ``/swap``.
    """

    input_mint: str
    output_mint: str
    in_amount: str
    out_amount: str
    price_impact_pct: float
    platform_fee: str
    route_plan: list[Any]
    context_slot: int | None
    raw: dict[str, Any]

    @property
    def price_impact_bps(self) -> float:
        # Jupiter reports price impact as a percentage.
        return self.price_impact_pct * 100

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "Quote":
        platform_fee = data.get("platformFee") or {}
        return cls(
            input_mint=data["inputMint"],
            output_mint=data["outputMint"],
            in_amount=str(data["inAmount"]),
            out_amount=str(data["outAmount"]),
            price_impact_pct=float(data.get("priceImpactPct") or 0),
            platform_fee=str(platform_fee.get("amount") or "0"),
            route_plan=list(data.get("routePlan") or []),
            context_slot=data.get("contextSlot"),
            raw=data,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "price_impact_pct": self.price_impact_pct,
            "platform_fee": self.platform_fee,
            "route_plan": self.route_plan,
            "context_slot": self.context_slot,
        }


@dataclass(frozen=True)
class SwapTransaction:
    swap_transaction: str
    last_valid_block_height: int
    prioritization_fee_lamports: int | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SwapTransaction":
        return cls(
            swap_transaction=data["swapTransaction"],
            last_valid_block_height=int(data["lastValidBlockHeight"]),
            prioritization_fee_lamports=data.get("prioritizationFeeLamports"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "swap_transaction": self.swap_transaction,
            "last_valid_block_height": self.last_valid_block_height,
            "prioritization_fee_lamports": self.prioritization_fee_lamports,
        }


def _entry_price(entry: Any) -> float:
    # Anything but {"price": <positive finite number>} counts as unknown.
    if not isinstance(entry, dict):
        return 0.0
    try:
        price = float(entry.get("price") or 0)
    except (TypeError, ValueError):
        return 0.0
    return price if math.isfinite(price) and price > 0 else 0.0


class JupiterClient:
    """Jupiter v6 price / quote / swap client."""

    def __init__(
        self,
        config: JupiterConfig,
        api_key: str = "",
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.api_key = api_key
        self.http = http or httpx.AsyncClient(timeout=config.request_timeout_sec)
        self._clock = clock
        # mint -> (price, fetched_at)
        self._price_cache: dict[str, tuple[float, float]] = {}
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def get_prices(self, mints: Iterable[str]) -> dict[str, float]:
        """Return ``{mint: price}`` quoted in the quote mint; unknown mints map to 0.

        Fresh cache entries are served without a request. When the request fails,
        stale cache entries are used if every missing mint has one; otherwise
        ``UpstreamError(price_unavailable)`` is raised.
        """
        now = self._clock()
        prices: dict[str, float] = {}
        uncached: list[str] = []
        for mint in dict.fromkeys(mints):
            cached = self._price_cache.get(mint)
            if cached and now - cached[1] < self.config.price_cache_ttl_sec:
                prices[mint] = cached[0]
            else:
                uncached.append(mint)
        if not uncached:
            return prices

        try:
            response = await self.http.get(
                f"{self.config.price_api_base}/price",
                params={"ids": ",".join(uncached), "vsToken": self.config.quote_mint},
                headers=self._headers(),
            )
            response.raise_for_status()
            payload = orjson.loads(response.content)
        except (httpx.HTTPError, orjson.JSONDecodeError) as exc:
            return self._stale_prices(prices, uncached, str(exc))

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return self._stale_prices(prices, uncached, "malformed price payload")

        fetched_at = self._clock()
        for mint in uncached:
            price = _entry_price(data.get(mint))
            prices[mint] = price
            self._price_cache[mint] = (price, fetched_at)
        return prices

    def _stale_prices(
        self, prices: dict[str, float], uncached: list[str], error: str
    ) -> dict[str, float]:
        stale = {mint: self._price_cache[mint][0] for mint in uncached if mint in self._price_cache}
        if len(stale) == len(uncached):
            self.log.warning("jupiter_price_stale", mints=len(uncached), error=error)
            prices.update(stale)
            return prices
        self.log.warning("jupiter_price_failed", mints=len(uncached), error=error)
        raise UpstreamError("Price fetch failed", UpstreamCause.PRICE_UNAVAILABLE)

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: str,
        slippage_bps: int,
    ) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": amount,
            "slippageBps": str(slippage_bps),
            "platformFeeBps": str(self.config.total_fee_bps),
        }
        try:
            response = await self.http.get(
                f"{self.config.quote_api_base}/quote",
                params=params,
                headers=self._headers(),
            )
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"Quote request failed: {exc.__class__.__name__}", UpstreamCause.QUOTE_FAILED
            ) from exc
        if response.status_code == 401:
            raise UpstreamError(
                "Jupiter API authentication failed; check JUPITER_API_KEY",
                UpstreamCause.QUOTE_FAILED,
            )
        if response.is_error:
            raise UpstreamError(
                f"Quote failed: {response.status_code} {response.text[:200]}",
                UpstreamCause.QUOTE_FAILED,
            )
        try:
            quote = Quote.from_response(orjson.loads(response.content))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise UpstreamError("Malformed quote response", UpstreamCause.QUOTE_FAILED) from exc
        self.log.info(
            "jupiter_quote",
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            price_impact_pct=quote.price_impact_pct,
        )
        return quote

    async def build_swap_transaction(
        self,
        quote: Quote,
        user_public_key: str,
        wrap_and_unwrap_sol: bool = True,
    ) -> SwapTransaction:
        """Build an unsigned swap transaction for ``user_public_key`` against ``quote``."""
        body: dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "prioritizationFeeLamports": "auto",
            "dynamicComputeUnitLimit": True,
        }
        if self.config.fee_account:
            body["feeAccount"] = self.config.fee_account
        try:
            response = await self.http.post(
                f"{self.config.quote_api_base}/swap",
                content=orjson.dumps(body),
                headers={**self._headers(), "Content-Type": "application/json"},
            )
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"Swap build request failed: {exc.__class__.__name__}", UpstreamCause.BUILD_FAILED
            ) from exc
        if response.is_error:
            raise UpstreamError(
                f"Swap build failed: {response.status_code} {response.text[:200]}",
                UpstreamCause.BUILD_FAILED,
            )
        try:
            swap = SwapTransaction.from_response(orjson.loads(response.content))
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamError("Malformed swap response", UpstreamCause.BUILD_FAILED) from exc
        self.log.info(
            "jupiter_swap_built",
            user_public_key=user_public_key,
            last_valid_block_height=swap.last_valid_block_height,
        )
        return swap
