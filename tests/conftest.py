from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from velocity.config.settings import SOL_MINT, Settings
from velocity.connectors.jupiter_client import Quote, SwapTransaction
from velocity.strategy.errors import UpstreamCause, UpstreamError
from velocity.strategy.models import Strategy, StrategyStatus
from velocity.strategy.service import StrategyService
from velocity.strategy.store import StrategyStore

# Well-known 32-byte program ids; any valid base58 key works for tests.
TOKEN_MINT = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
OTHER_MINT = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
USER_KEY = "11111111111111111111111111111111"
OTHER_USER_KEY = "SysvarC1ock11111111111111111111111111111111"


def make_quote(
    input_mint: str = SOL_MINT,
    output_mint: str = TOKEN_MINT,
    amount: str = "1000000000",
    price_impact_pct: str = "0.1",
) -> Quote:
    return Quote.from_response(
        {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inAmount": amount,
            "outAmount": "42000",
            "priceImpactPct": price_impact_pct,
            "platformFee": {"amount": "80", "feeBps": 80},
            "routePlan": [{"swapInfo": {"label": "Orca"}, "percent": 100}],
            "contextSlot": 123,
            "timeTaken": 0.01,
        }
    )


class FakePricing:
    """In-memory pricing collaborator recording every call."""

    def __init__(self) -> None:
        self.prices: dict[str, float] = {}
        self.price_error: UpstreamError | None = None
        self.quote_error: UpstreamError | None = None
        self.build_error: UpstreamError | None = None
        self.price_impact_pct = "0.1"
        self.price_calls: list[set[str]] = []
        self.quote_calls: list[tuple[str, str, str, int]] = []
        self.build_calls: list[tuple[Quote, str]] = []

    async def get_prices(self, mints) -> dict[str, float]:
        self.price_calls.append(set(mints))
        if self.price_error:
            raise self.price_error
        return {mint: self.prices[mint] for mint in mints if mint in self.prices}

    async def get_quote(self, input_mint, output_mint, amount, slippage_bps) -> Quote:
        self.quote_calls.append((input_mint, output_mint, amount, slippage_bps))
        if self.quote_error:
            raise self.quote_error
        return make_quote(input_mint, output_mint, amount, self.price_impact_pct)

    async def build_swap_transaction(self, quote, user_public_key) -> SwapTransaction:
        self.build_calls.append((quote, user_public_key))
        if self.build_error:
            raise self.build_error
        return SwapTransaction(
            swap_transaction="AQAAAA==",
            last_valid_block_height=5000,
            prioritization_fee_lamports=10000,
        )

    @property
    def calls(self) -> int:
        return len(self.price_calls) + len(self.quote_calls) + len(self.build_calls)


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="devnet", _env_file=None)


@pytest.fixture
def store(tmp_path: Path) -> StrategyStore:
    store = StrategyStore(tmp_path / "velocity.db")
    yield store
    store.close()


@pytest.fixture
def service(store: StrategyStore, settings: Settings) -> StrategyService:
    return StrategyService(store, settings.strategy)


@pytest.fixture
def pricing() -> FakePricing:
    return FakePricing()


@pytest.fixture
def user_id(store: StrategyStore) -> str:
    return store.get_or_create_user(USER_KEY).id


@pytest.fixture
def strategy_body() -> Callable[..., dict[str, Any]]:
    def _body(**overrides: Any) -> dict[str, Any]:
        body: dict[str, Any] = {
            "token_mint": TOKEN_MINT,
            "token_symbol": "TKN",
            "type": "buy_dip",
            "trigger_price": 100.0,
            "amount": "1000000000",
            "slippage_bps": 100,
        }
        body.update(overrides)
        return body

    return _body


@pytest.fixture
def make_strategy(
    service: StrategyService,
    store: StrategyStore,
    user_id: str,
    strategy_body: Callable[..., dict[str, Any]],
) -> Callable[..., Strategy]:
    """Create a strategy and optionally force it into another status."""

    def _make(status: StrategyStatus = StrategyStatus.ACTIVE, **overrides: Any) -> Strategy:
        strategy = service.create_strategy(user_id, strategy_body(**overrides))
        if status is StrategyStatus.TRIGGERED:
            store.mark_triggered(strategy, strategy.trigger_price)
        elif status is not StrategyStatus.ACTIVE:
            store.update_status(strategy.id, status)
        found = store.get_by_id(strategy.id)
        assert found is not None
        return found

    return _make


def price_unavailable() -> UpstreamError:
    return UpstreamError("Price fetch failed", UpstreamCause.PRICE_UNAVAILABLE)
