"""
OKX V5 Spot Client.

============================================================
PURPOSE
============================================================
Market orders on OKX spot (cash trade mode).

EXCHANGE SPECIFICS:
- OK-ACCESS-* headers with passphrase
- Base64 HMAC-SHA256 over timestamp + method + path + body
- tgtCcy quote_ccy (buy) or base_ccy (sell)
- code == "0" is the only success

============================================================
API DOCUMENTATION
============================================================
https://www.okx.com/docs-v5/

============================================================
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
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


OKX_STATUS_MAP = {
    "live": "new",
    "partially_filled": "partially_filled",
    "filled": "filled",
    "canceled": "cancelled",
    "mmp_canceled": "cancelled",
}

OKX_ERROR_MAP = {
    "50011": "RTE_LIMIT",
    "50013": "RTE_LIMIT",
    "50000": "VEN_SERVER_ERROR",
    "50001": "VEN_SERVER_ERROR",
    "50004": "TMO_READ",
    "50101": "AUT_INVALID_KEY",
    "50102": "AUT_INVALID_KEY",
    "50103": "AUT_INVALID_KEY",
    "50104": "AUT_INVALID_KEY",
    "50105": "AUT_INVALID_KEY",
    "50111": "AUT_INVALID_KEY",
    "50113": "AUT_INVALID_KEY",
    "51001": "VAL_UNSUPPORTED_PAIR",
    "51000": "VAL_INVALID_ORDER",
    "51008": "VAL_INSUFFICIENT_BALANCE",
    "51020": "VAL_INVALID_ORDER",
}


def sign_message(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """OKX signature: base64 HMAC-SHA256 of timestamp+method+path+body."""
    message = f"{timestamp}{method.upper()}{path}{body}"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class OKXClient(ExchangeClient):
    """OKX V5 spot market-order client."""

    exchange_id = "okx"

    def _timestamp(self) -> str:
        now = datetime.fromtimestamp(self._now_ms() / 1000, tz=timezone.utc)
        return now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

    async def place_market_order(
        self,
        creds: CexCredentials,
        symbol: str,
        side: OrderSide,
        quantity: str,
        client_order_id: Optional[str] = None,
    ) -> CexOrderResult:
        order = {
            "instId": symbol,
            "tdMode": "cash",
            "side": side.value,
            "ordType": "market",
            "sz": quantity,
            "tgtCcy": "quote_ccy" if side == OrderSide.BUY else "base_ccy",
        }
        if client_order_id:
            order["clOrdId"] = client_order_id
        body = json.dumps(order)
        data = await self._signed("POST", "/api/v5/trade/order", creds, body)
        first = (data.get("data") or [{}])[0]
        return CexOrderResult(order_id=first.get("ordId", ""), status="new", raw=data)

    async def get_order_status(
        self,
        creds: CexCredentials,
        order_id: str,
        symbol: str,
    ) -> CexOrderResult:
        path = "/api/v5/trade/order?" + urlencode({"ordId": order_id, "instId": symbol})
        data = await self._signed("GET", path, creds)

        orders = data.get("data") or []
        if not orders:
            return CexOrderResult(order_id=order_id, status="unknown", raw=data)

        order = orders[0]
        return CexOrderResult(
            order_id=order.get("ordId", order_id),
            status=OKX_STATUS_MAP.get(order.get("state", ""), "unknown"),
            filled_qty=order.get("accFillSz"),
            avg_price=_nonzero(order.get("avgPx")),
            raw=data,
        )

    async def _signed(
        self,
        method: str,
        path: str,
        creds: CexCredentials,
        body: Optional[str] = None,
    ) -> Dict[str, Any]:
        timestamp = self._timestamp()
        headers = {
            "OK-ACCESS-KEY": creds.api_key,
            "OK-ACCESS-SIGN": sign_message(creds.secret, timestamp, method, path, body or ""),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": creds.passphrase,
            "Content-Type": "application/json",
        }

        status, data = await self._send(method, path, headers, body)
        if status != 200 or data.get("code") != "0":
            first = (data.get("data") or [{}])[0] if isinstance(data.get("data"), list) else {}
            okx_code = first.get("sCode") if first.get("sCode") not in (None, "0") else data.get("code")
            code = OKX_ERROR_MAP.get(str(okx_code))
            if code is None:
                code = code_for_http_status(status) if status != 200 else "VEN_ORDER_REJECTED"
            message = first.get("sMsg") or data.get("msg") or data
            raise self._error(f"OKX request failed: {message}", code, status)
        return data
