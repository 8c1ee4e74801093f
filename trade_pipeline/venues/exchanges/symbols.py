"""
Exchange Symbol Resolution.

============================================================
PURPOSE
============================================================
Map on-chain token addresses to an exchange pair, order
side and quantity string.

Only ETH/USDC is tradeable on CEX venues:
    USDC -> WETH  buy ETH, quantity in USDC (quote)
    WETH -> USDC  sell ETH, quantity in ETH (base)

============================================================
"""

from dataclasses import dataclass

from ...tokens import USDC, WETH, is_token, to_units, truncate
from ...types import OrderSide, VenueError


PAIR_SYMBOLS = {
    "binance": "ETHUSDC",
    "coinbase": "ETH-USDC",
    "bybit": "ETHUSDC",
    "okx": "ETH-USDC",
}

USDC_PLACES = 2
WETH_PLACES = 8


@dataclass(frozen=True)
class ResolvedSymbol:
    """Exchange pair and side for one trade."""

    symbol: str
    side: OrderSide
    quantity_token: str
    """'USDC' when quantity is quote currency, 'ETH' when base."""


def resolve_exchange_symbol(exchange: str, sell_token: str, buy_token: str) -> ResolvedSymbol:
    """
    Resolve a token pair for an exchange.

    Raises:
        VenueError(VAL_UNSUPPORTED_EXCHANGE | VAL_UNSUPPORTED_PAIR)
    """
    symbol = PAIR_SYMBOLS.get(exchange)
    if symbol is None:
        raise VenueError(
            f"Unsupported exchange: {exchange}",
            code="VAL_UNSUPPORTED_EXCHANGE",
            venue=exchange,
        )

    if is_token(sell_token, USDC) and is_token(buy_token, WETH):
        return ResolvedSymbol(symbol, OrderSide.BUY, "USDC")

    if is_token(sell_token, WETH) and is_token(buy_token, USDC):
        return ResolvedSymbol(symbol, OrderSide.SELL, "ETH")

    raise VenueError(
        f"Unsupported token pair {sell_token} -> {buy_token}; only ETH/USDC trades on CEX",
        code="VAL_UNSUPPORTED_PAIR",
        venue=exchange,
    )


def format_quantity(sell_amount: int, sell_token: str) -> str:
    """
    Raw sell amount to an exchange quantity string.

    Truncates so the exchange is never asked for more than
    the account holds.
    """
    if is_token(sell_token, USDC):
        return str(truncate(to_units(sell_amount, USDC.decimals), USDC_PLACES))
    return str(truncate(to_units(sell_amount, WETH.decimals), WETH_PLACES))
