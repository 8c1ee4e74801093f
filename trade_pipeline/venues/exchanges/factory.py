"""
Exchange Client Factory.

============================================================
PURPOSE
============================================================
Creates and caches one client per exchange for the life of
a tick.

============================================================
USAGE
============================================================
```python
factory = ExchangeClientFactory(config.centralized)
client = factory.get("okx")
...
await factory.close_all()
```
============================================================
"""

import logging
from enum import Enum
from typing import Dict, Type

from ...config import CentralizedConfig
from ...types import VenueError
from .base import ExchangeClient
from .binance import BinanceClient
from .coinbase import CoinbaseClient
from .bybit import BybitClient
from .okx import OKXClient


logger = logging.getLogger(__name__)


class ExchangeId(Enum):
    """Supported exchange identifiers."""

    BINANCE = "binance"
    COINBASE = "coinbase"
    BYBIT = "bybit"
    OKX = "okx"


class ExchangeClientFactory:
    """Registry-backed factory of exchange clients."""

    _registry: Dict[str, Type[ExchangeClient]] = {
        ExchangeId.BINANCE.value: BinanceClient,
        ExchangeId.COINBASE.value: CoinbaseClient,
        ExchangeId.BYBIT.value: BybitClient,
        ExchangeId.OKX.value: OKXClient,
    }

    def __init__(self, config: CentralizedConfig):
        self._config = config
        self._clients: Dict[str, ExchangeClient] = {}

    @classmethod
    def supported_exchanges(cls) -> list:
        return sorted(cls._registry)

    def get(self, exchange_id: str) -> ExchangeClient:
        """
        Client for an exchange, created on first use.

        Raises:
            VenueError(VAL_UNSUPPORTED_EXCHANGE)
        """
        exchange_id = (exchange_id or "").lower()
        if exchange_id in self._clients:
            return self._clients[exchange_id]

        client_class = self._registry.get(exchange_id)
        if client_class is None:
            raise VenueError(
                f"Unsupported exchange: {exchange_id}",
                code="VAL_UNSUPPORTED_EXCHANGE",
                venue=exchange_id,
            )

        kwargs = {}
        if client_class is BybitClient:
            kwargs["recv_window"] = self._config.bybit_recv_window

        client = client_class(
            self._config.base_urls[exchange_id],
            timeout_seconds=self._config.request_timeout_seconds,
            **kwargs,
        )
        self._clients[exchange_id] = client
        logger.debug(f"Created {exchange_id} client")
        return client

    async def close_all(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
