"""
Exchange Clients Package.

Per-exchange market-order clients used by the centralized venue.
"""

from .base import (
    ExchangeClient,
    CexCredentials,
    CexOrderResult,
    ORDER_STATUSES,
    code_for_http_status,
)
from .binance import BinanceClient
from .coinbase import CoinbaseClient
from .bybit import BybitClient
from .okx import OKXClient
from .symbols import ResolvedSymbol, resolve_exchange_symbol, format_quantity
from .factory import ExchangeId, ExchangeClientFactory


__all__ = [
    "ExchangeClient",
    "CexCredentials",
    "CexOrderResult",
    "ORDER_STATUSES",
    "code_for_http_status",
    "BinanceClient",
    "CoinbaseClient",
    "BybitClient",
    "OKXClient",
    "ResolvedSymbol",
    "resolve_exchange_symbol",
    "format_quantity",
    "ExchangeId",
    "ExchangeClientFactory",
]
