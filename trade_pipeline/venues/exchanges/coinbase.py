"""
Coinbase Advanced Trade Client.

============================================================
PURPOSE
============================================================
Market orders on Coinbase Advanced Trade.

EXCHANGE SPECIFICS:
- CB-ACCESS-* headers
- Base64 HMAC-SHA256 over timestamp + method + path + body
- market_market_ioc with quote_size (buy) or base_size (sell)
- Order placement does not report fills; status polling does

============================================================
API DOCUMENTATION
============================================================
https://docs.cdp.coinbase.com/advanced-trade/reference/

============================================================
"""

import base64
import hashlib
import hmac
import json
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from ...types import OrderSide
from .base import (
    ExchangeClient,
    CexCredentials,
    CexOrderResult,
    code_for_http_status,
)


logger = logging.getLogger(__name__)


COINBASE_STATUS_MAP = {
    "OPEN": "new",
    "PENDING": "new",
    "QUEUED": "new",
    "FILLED": "filled",
    "CANCELLED": "cancelled",
    "EXPIRED": "cancelled",
    "FAILED": "rejected",
}

COINBASE_FAILURE_MAP = {
    "INSUFFICIENT_FUND": "VAL_INSUFFICIENT_BALANCE",
    "UNKNOWN_PRODUCT_ID": "VAL_UNSUPPORTED_PAIR",
    "INVALID_PRODUCT_ID": "VAL_UNSUPPORTED_PAIR",
    "UNSUPPORTED_ORDER_CONFIGURATION": "VAL_INVALID_ORDER",
    "INVALID_SIDE": "VAL_INVALID_ORDER",
}

ORDERS_PATH = "/api/v3/brokerage/orders"


def sign_message(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """Coinbase signature: base64 HMAC-SHA256 of timestamp+method+path+body."""
    message = f"{timestamp}{method.upper()}{path}{body}"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class CoinbaseClient(ExchangeClient):
    """Coinbase Advanced Trade market-order client."""

    exchange_id = "coinbase"

    async def place_market_order(
        self,
        creds: CexCredentials,
        symbol: str,
        side: OrderSide,
        quantity: str,
        client_order_id: Optional[str] = None,
    ) -> CexOrderResult:
        client_order_id = client_order_id or str(uuid.uuid4())
        size_key = "quote_size" if side == OrderSide.BUY else "base_size"
        body = json.dumps({
            "client_order_id": client_order_id,
            "product_id": symbol,
            "side": side.value.upper(),
            "order_configuration": {"market_market_ioc": {size_key: quantity}},
        })

        status, data = await self._signed("POST", ORDERS_PATH, creds, body)
        if status >= 400 or not data.get("success"):
            error = data.get("error_response") or {}
            reason = error.get("error") or data.get("failure_reason") or data.get("error") or ""
            code = COINBASE_FAILURE_MAP.get(reason)
            if code is None:
                code = code_for_http_status(status) if status >= 400 else "VEN_ORDER_REJECTED"
            raise self._error(
                f"Coinbase order failed: {reason or data.get('message') or data}",
                code,
                status,
            )

        success = data.get("success_response") or {}
        return CexOrderResult(
            order_id=data.get("order_id") or success.get("order_id") or client_order_id,
            status="new",
            raw=data,
        )

    async def get_order_status(
        self,
        creds: CexCredentials,
        order_id: str,
        symbol: str,
    ) -> CexOrderResult:
        path = f"{ORDERS_PATH}/historical/{order_id}"
        status, data = await self._signed("GET", path, creds)
        if status != 200:
            raise self._error(
                f"Coinbase status check failed: {data.get('message') or status}",
                code_for_http_status(status),
                status,
            )

        order = data.get("order") or data
        return CexOrderResult(
            order_id=order.get("order_id") or order_id,
            status=COINBASE_STATUS_MAP.get(order.get("status", ""), "unknown"),
            filled_qty=order.get("filled_size"),
            avg_price=order.get("average_filled_price") or None,
            raw=data,
        )

    async def _signed(
        self,
        method: str,
        path: str,
        creds: CexCredentials,
        body: str = "",
    ) -> Tuple[int, Dict[str, Any]]:
        timestamp = str(self._now_ms() // 1000)
        headers = {
            "CB-ACCESS-KEY": creds.api_key,
            "CB-ACCESS-SIGN": sign_message(creds.secret, timestamp, method, path, body),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": creds.passphrase,
            "Content-Type": "application/json",
        }
        return await self._send(method, path, headers, body or None)
