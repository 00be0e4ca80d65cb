"""Request validation for strategy creation and wallet identities."""

from __future__ import annotations

import math
from typing import Any, Mapping

import base58

from velocity.strategy.models import StrategyType

MAX_AMOUNT = 2**64 - 1


def validate_mint(mint: Any) -> bool:
    """Return True when ``mint`` is a base58 string decoding to a 32-byte key."""
    if not isinstance(mint, str) or not mint:
        return False
    try:
        decoded = base58.b58decode(mint)
    except ValueError:
        return False
    return len(decoded) == 32


validate_public_key = validate_mint


def validate_amount(amount: Any) -> bool:
    if not isinstance(amount, str) or not (amount.isascii() and amount.isdigit()):
        return False
    return 0 < int(amount) <= MAX_AMOUNT


def validate_slippage(slippage_bps: Any, max_bps: int) -> bool:
    if isinstance(slippage_bps, bool) or not isinstance(slippage_bps, int):
        return False
    return 1 <= slippage_bps <= max_bps


def validate_price(price: Any) -> bool:
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return False
    return price > 0 and math.isfinite(price)


def validate_strategy_request(
    body: Mapping[str, Any],
    max_slippage_bps: int,
    max_symbol_length: int = 20,
) -> list[dict[str, str]]:
    """Return a list of ``{field, message}`` problems; empty when the body is valid."""
    errors: list[dict[str, str]] = []

    if not validate_mint(body.get("token_mint")):
        errors.append({"field": "token_mint", "message": "Invalid token mint address"})

    symbol = body.get("token_symbol")
    if not isinstance(symbol, str) or not symbol or len(symbol) > max_symbol_length:
        errors.append({"field": "token_symbol", "message": "Invalid token symbol"})

    if body.get("type") not in {t.value for t in StrategyType}:
        errors.append({"field": "type", "message": "Type must be buy_dip or take_profit"})

    if not validate_price(body.get("trigger_price")):
        errors.append({"field": "trigger_price", "message": "Invalid trigger price"})

    if not validate_amount(body.get("amount")):
        errors.append({"field": "amount", "message": "Invalid amount"})

    if not validate_slippage(body.get("slippage_bps"), max_slippage_bps):
        errors.append(
            {
                "field": "slippage_bps",
                "message": f"Slippage must be between 1 and {max_slippage_bps} bps",
            }
        )

    return errors
