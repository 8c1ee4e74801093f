"""
Binance Spot Client.

============================================================
PURPOSE
============================================================
Market orders on Binance Spot.

EXCHANGE SPECIFICS:
- HMAC-SHA256 hex over the query string
- X-MBX-APIKEY header
- Buys spend quoteOrderQty, sells use quantity

============================================================
API DOCUMENTATION
============================================================
https://binance-docs.github.io/apidocs/spot/en/#new-order-trade

============================================================
"""

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from ...types import OrderSide
from .base import (
    ExchangeClient,
    CexCredentials,
    CexOrderResult,
    code_for_http_status,
    _nonzero,
)


logger = logging.getLogger(__name__)


BINANCE_STATUS_MAP = {
    "NEW": "new",
    "PARTIALLY_FILLED": "partially_filled",
    "FILLED": "filled",
    "CANCELED": "cancelled",
    "REJECTED": "rejected",
    "EXPIRED": "cancelled",
}

BINANCE_ERROR_MAP = {
    -1003: "RTE_LIMIT",
    -1015: "RTE_LIMIT",
    -1000: "VEN_SERVER_ERROR",
    -1001: "VEN_SERVER_ERROR",
    -1021: "TMO_READ",
    -1022: "AUT_INVALID_KEY",
    -2014: "AUT_INVALID_KEY",
    -2015: "AUT_INVALID_KEY",
    -1121: "VAL_UNSUPPORTED_PAIR",
    -1013: "VAL_INVALID_ORDER",
    -1100: "VAL_INVALID_ORDER",
    -1111: "VAL_INVALID_ORDER",
    -2010: "VAL_INSUFFICIENT_BALANCE",
    -2018: "VAL_INSUFFICIENT_BALANCE",
}


def sign_query(secret: str, query: str) -> str:
    """Binance signature: hex HMAC-SHA256 of the query string."""
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def _average_price(data: Dict[str, Any]) -> Optional[str]:
    """Average fill price from cumulative quote / executed quantity."""
    try:
        executed = Decimal(str(data.get("executedQty") or "0"))
        quote = Decimal(str(data.get("cummulativeQuoteQty") or "0"))
    except InvalidOperation:
        executed = quote = Decimal("0")
    if executed > 0 and quote > 0:
        return f"{quote / executed:f}"
    fills = data.get("fills") or []
    if fills:
        return _nonzero(fills[0].get("price"))
    return _nonzero(data.get("price"))


class BinanceClient(ExchangeClient):
    """Binance Spot market-order client."""

    exchange_id = "binance"

    async def place_market_order(
        self,
        creds: CexCredentials,
        symbol: str,
        side: OrderSide,
        quantity: str,
        client_order_id: Optional[str] = None,
    ) -> CexOrderResult:
        params = {"symbol": symbol, "side": side.value.upper(), "type": "MARKET"}
        if side == OrderSide.BUY:
            params["quoteOrderQty"] = quantity
        else:
            params["quantity"] = quantity
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        params["timestamp"] = str(self._now_ms())

        data = await self._signed("POST", "/api/v3/order", creds, params)
        return CexOrderResult(
            order_id=str(data.get("orderId", "")),
            status=BINANCE_STATUS_MAP.get(data.get("status", ""), "unknown"),
            filled_qty=data.get("executedQty"),
            avg_price=_average_price(data),
            raw=data,
        )

    async def get_order_status(
        self,
        creds: CexCredentials,
        order_id: str,
        symbol: str,
    ) -> CexOrderResult:
        params = {"symbol": symbol, "orderId": order_id, "timestamp": str(self._now_ms())}
        data = await self._signed("GET", "/api/v3/order", creds, params)
        return CexOrderResult(
            order_id=str(data.get("orderId", order_id)),
            status=BINANCE_STATUS_MAP.get(data.get("status", ""), "unknown"),
            filled_qty=data.get("executedQty"),
            avg_price=_average_price(data),
            raw=data,
        )

    async def _signed(
        self,
        method: str,
        endpoint: str,
        creds: CexCredentials,
        params: Dict[str, str],
    ) -> Dict[str, Any]:
        query = urlencode(params)
        signature = sign_query(creds.secret, query)
        path = f"{endpoint}?{query}&signature={signature}"

        status, data = await self._send(method, path, {"X-MBX-APIKEY": creds.api_key})
        if status != 200:
            code = BINANCE_ERROR_MAP.get(data.get("code"), code_for_http_status(status))
            raise self._error(
                f"Binance order failed: {data.get('msg') or data}",
                code,
                status,
            )
        return data
