"""
Exchange Clients - Base Interface.

============================================================
PURPOSE
============================================================
Shared request plumbing and result types for per-exchange
market-order clients.

Each client:
- Signs its own requests (HMAC, exchange-specific layout)
- Normalizes order status to one vocabulary
- Raises VenueError with a registry code on every failure

NORMALIZED STATUS:
    new | partially_filled | filled | cancelled | rejected | unknown

============================================================
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ...errors import get_error_info
from ...logging_utils import log_request, mask_value
from ...types import OrderSide, VenueError, FillState, FillReport


logger = logging.getLogger(__name__)


ORDER_STATUSES = {"new", "partially_filled", "filled", "cancelled", "rejected", "unknown"}


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class CexCredentials:
    """Decrypted API credentials. Never logged."""

    api_key: str
    secret: str
    passphrase: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CexCredentials":
        return cls(
            api_key=data.get("apiKey") or data.get("api_key") or "",
            secret=data.get("secret") or data.get("apiSecret") or "",
            passphrase=data.get("passphrase") or "",
        )

    def __repr__(self) -> str:
        return f"CexCredentials(api_key={mask_value(self.api_key)})"


@dataclass
class CexOrderResult:
    """Exchange order state in normalized form."""

    order_id: str
    status: str
    filled_qty: Optional[str] = None
    avg_price: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_fill_report(self) -> FillReport:
        if self.status == "filled":
            state = FillState.FILLED
        elif self.status in ("cancelled", "rejected"):
            state = FillState.CANCELLED
        else:
            state = FillState.OPEN
        return FillReport(
            state=state,
            raw_status=self.status,
            filled_quantity=self.filled_qty,
            average_price=self.avg_price,
        )


def _nonzero(value: Any) -> Optional[str]:
    """Exchanges report an unset price as some spelling of zero."""
    if value in (None, ""):
        return None
    try:
        if float(value) == 0:
            return None
    except (TypeError, ValueError):
        return None
    return str(value)


def code_for_http_status(http_status: int) -> str:
    """Registry code for a bare HTTP failure."""
    if http_status == 429 or http_status == 418:
        return "RTE_LIMIT"
    if http_status in (401, 403):
        return "AUT_INVALID_KEY"
    if http_status >= 500:
        return "VEN_SERVER_ERROR"
    return "VEN_ORDER_REJECTED"


# ============================================================
# EXCHANGE CLIENT
# ============================================================

class ExchangeClient(ABC):
    """
    Abstract market-order client.

    Implementations:
    - BinanceClient
    - CoinbaseClient
    - BybitClient
    - OKXClient
    """

    exchange_id: str = ""

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 15.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    @abstractmethod
    async def place_market_order(
        self,
        creds: CexCredentials,
        symbol: str,
        side: OrderSide,
        quantity: str,
        client_order_id: Optional[str] = None,
    ) -> CexOrderResult:
        """
        Place a market order.

        Buys spend quantity in the quote currency; sells sell
        quantity of the base currency.
        client_order_id is sent as the exchange idempotency key,
        so a repeated placement for one trade is rejected.

        Raises:
            VenueError
        """
        pass

    @abstractmethod
    async def get_order_status(
        self,
        creds: CexCredentials,
        order_id: str,
        symbol: str,
    ) -> CexOrderResult:
        """
        Query an order.

        Raises:
            VenueError
        """
        pass

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Send a signed request.

        Args:
            method: HTTP method
            path: Path including query string, exactly as signed
            headers: Auth headers
            body: Serialized JSON body, exactly as signed

        Returns:
            (http_status, parsed JSON body)

        Raises:
            VenueError on transport failures and unparseable bodies
        """
        url = f"{self._base_url}{path}"
        log_request(logger, self.exchange_id, method, url, headers)

        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                data=body,
                timeout=self._timeout,
            ) as response:
                text = await response.text()
                try:
                    data = json.loads(text) if text else {}
                except ValueError:
                    if response.status >= 400:
                        raise self._error(
                            f"HTTP {response.status}",
                            code_for_http_status(response.status),
                            response.status,
                        )
                    raise self._error("Unparseable response", "VEN_BAD_RESPONSE", response.status)
                return response.status, data if isinstance(data, dict) else {"data": data}
        except aiohttp.ClientError as e:
            raise self._error(f"Network error: {e}", "NET_CONNECTION_FAILED")
        except asyncio.TimeoutError:
            raise self._error("Request timeout", "TMO_READ")

    def _error(
        self,
        message: str,
        code: str,
        http_status: Optional[int] = None,
    ) -> VenueError:
        return VenueError(
            message,
            code=code,
            is_retryable=get_error_info(code).is_retryable,
            http_status=http_status,
            venue=self.exchange_id,
        )
