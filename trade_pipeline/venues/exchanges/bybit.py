"""
Bybit V5 Spot Client.

============================================================
PURPOSE
============================================================
Market orders on Bybit spot through the V5 API.

EXCHANGE SPECIFICS:
- X-BAPI-* headers
- Hex HMAC-SHA256 over timestamp + apiKey + recvWindow + payload
- marketUnit quoteCoin (buy) or baseCoin (sell)
- HTTP 200 with retCode != 0 is a failure

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/order/create-order

============================================================
"""

import hashlib
import hmac
import json
import logging
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


BYBIT_STATUS_MAP = {
    "New": "new",
    "PartiallyFilled": "partially_filled",
    "Filled": "filled",
    "Cancelled": "cancelled",
    "PartiallyFilledCanceled": "cancelled",
    "Rejected": "rejected",
    "Deactivated": "cancelled",
}

BYBIT_ERROR_MAP = {
    10002: "TMO_READ",
    10003: "AUT_INVALID_KEY",
    10004: "AUT_INVALID_KEY",
    10005: "AUT_INVALID_KEY",
    10006: "RTE_LIMIT",
    10016: "VEN_SERVER_ERROR",
    170121: "VAL_UNSUPPORTED_PAIR",
    170131: "VAL_INSUFFICIENT_BALANCE",
    170136: "VAL_INVALID_ORDER",
    170140: "VAL_INVALID_ORDER",
}


def sign_payload(secret: str, timestamp: str, api_key: str, recv_window: str, payload: str) -> str:
    """Bybit V5 signature: hex HMAC-SHA256 of ts+key+recvWindow+payload."""
    message = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class BybitClient(ExchangeClient):
    """Bybit V5 spot market-order client."""

    exchange_id = "bybit"

    def __init__(self, *args, recv_window: str = "5000", **kwargs):
        super().__init__(*args, **kwargs)
        self._recv_window = recv_window

    async def place_market_order(
        self,
        creds: CexCredentials,
        symbol: str,
        side: OrderSide,
        quantity: str,
        client_order_id: Optional[str] = None,
    ) -> CexOrderResult:
        order = {
            "category": "spot",
            "symbol": symbol,
            "side": "Buy" if side == OrderSide.BUY else "Sell",
            "orderType": "Market",
            "qty": quantity,
            "marketUnit": "quoteCoin" if side == OrderSide.BUY else "baseCoin",
        }
        if client_order_id:
            order["orderLinkId"] = client_order_id
        body = json.dumps(order)
        data = await self._signed("POST", "/v5/order/create", creds, body=body)
        return CexOrderResult(
            order_id=(data.get("result") or {}).get("orderId", ""),
            status="new",
            raw=data,
        )

    async def get_order_status(
        self,
        creds: CexCredentials,
        order_id: str,
        symbol: str,
    ) -> CexOrderResult:
        query = urlencode({"category": "spot", "orderId": order_id, "symbol": symbol})
        data = await self._signed("GET", "/v5/order/realtime", creds, query=query)

        orders = (data.get("result") or {}).get("list") or []
        if not orders:
            return CexOrderResult(order_id=order_id, status="unknown", raw=data)

        order = orders[0]
        return CexOrderResult(
            order_id=order.get("orderId", order_id),
            status=BYBIT_STATUS_MAP.get(order.get("orderStatus", ""), "unknown"),
            filled_qty=order.get("cumExecQty"),
            avg_price=_nonzero(order.get("avgPrice")),
            raw=data,
        )

    async def _signed(
        self,
        method: str,
        endpoint: str,
        creds: CexCredentials,
        body: Optional[str] = None,
        query: str = "",
    ) -> Dict[str, Any]:
        timestamp = str(self._now_ms())
        payload = body if body is not None else query
        headers = {
            "X-BAPI-API-KEY": creds.api_key,
            "X-BAPI-SIGN": sign_payload(creds.secret, timestamp, creds.api_key, self._recv_window, payload),
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": self._recv_window,
            "Content-Type": "application/json",
        }
        path = f"{endpoint}?{query}" if query else endpoint

        status, data = await self._send(method, path, headers, body)
        ret_code = data.get("retCode")
        if status != 200 or ret_code != 0:
            code = BYBIT_ERROR_MAP.get(ret_code)
            if code is None:
                code = code_for_http_status(status) if status != 200 else "VEN_ORDER_REJECTED"
            raise self._error(f"Bybit request failed: {data.get('retMsg') or data}", code, status)
        return data
