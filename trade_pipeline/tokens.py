"""
Trade Pipeline - Token Registry.

============================================================
PURPOSE
============================================================
Token metadata on Base and fixed-point conversion of
smallest units to whole tokens.

All arithmetic is Decimal; floats never touch amounts.

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional


@dataclass(frozen=True)
class Token:
    """ERC-20 token metadata."""

    address: str
    symbol: str
    decimals: int
    is_stable: bool = False


USDC = Token("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USDC", 6, is_stable=True)
WETH = Token("0x4200000000000000000000000000000000000006", "WETH", 18)

TOKENS: Dict[str, Token] = {t.address.lower(): t for t in (USDC, WETH)}


def get_token(address: str) -> Token:
    """Registry lookup; unknown tokens default to 18 decimals."""
    token = TOKENS.get((address or "").lower())
    if token is None:
        return Token(address, (address or "?")[:10], 18)
    return token


def is_token(address: str, token: Token) -> bool:
    return (address or "").lower() == token.address.lower()


def to_units(amount: int, decimals: int) -> Decimal:
    """Smallest units to whole tokens."""
    return Decimal(int(amount)) / (Decimal(10) ** decimals)


def truncate(value: Decimal, places: int) -> Decimal:
    """Drop digits past places without rounding up."""
    quantum = Decimal(1).scaleb(-places)
    return value.quantize(quantum, rounding=ROUND_DOWN)


def realized_entry_price(
    sell_token: str,
    buy_token: str,
    executed_sell_amount: int,
    executed_buy_amount: int,
) -> Optional[Decimal]:
    """
    USD price per unit of the non-stable token.

    Selling the stablecoin: stable spent / other received.
    Buying the stablecoin: stable received / other sold.
    Neither or both stable: buy / sell in whole units.

    Returns:
        Price, or None if the denominator is zero
    """
    sell = get_token(sell_token)
    buy = get_token(buy_token)
    sold = to_units(executed_sell_amount, sell.decimals)
    bought = to_units(executed_buy_amount, buy.decimals)

    if sell.is_stable and not buy.is_stable:
        numerator, denominator = sold, bought
    elif buy.is_stable and not sell.is_stable:
        numerator, denominator = bought, sold
    else:
        numerator, denominator = bought, sold

    if denominator == 0:
        return None
    return numerator / denominator


def format_amount(amount: Optional[int], token_address: str) -> str:
    """Human amount for alerts: 2 places for stables, 6 otherwise."""
    if amount is None:
        return "?"
    token = get_token(token_address)
    places = 2 if token.is_stable else 6
    return f"{to_units(amount, token.decimals):.{places}f}"
