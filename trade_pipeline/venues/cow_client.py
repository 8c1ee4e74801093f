"""
Batch-Auction Order Book Client.

============================================================
PURPOSE
============================================================
REST client for the CoW Protocol order book on Base.

ENDPOINTS:
- POST /quote         price a sell order
- POST /orders        submit a signed order, returns its uid
- GET  /orders/{uid}  order status and executed amounts

ERRORS:
- 429 -> RTE_LIMIT, 5xx -> VEN_SERVER_ERROR (retryable)
- quote 4xx -> VEN_QUOTE_FAILED (retryable)
- order 4xx -> VEN_ORDER_REJECTED (terminal)

============================================================
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import aiohttp

from ..config import OnChainConfig
from ..errors import get_error_info
from ..logging_utils import log_request, mask_text
from ..types import VenueError


logger = logging.getLogger(__name__)

VENUE_NAME = "cow"


class CowClient:
    """Order-book REST client."""

    def __init__(
        self,
        config: OnChainConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config
        self._base_url = config.api_base.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # --------------------------------------------------------
    # ENDPOINTS
    # --------------------------------------------------------

    async def quote(
        self,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        owner: str,
    ) -> Dict[str, Any]:
        """
        Price a sell order.

        Returns:
            The response's "quote" object
        """
        body = {
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmountBeforeFee": str(sell_amount),
            "from": owner,
            "receiver": owner,
            "kind": "sell",
            "appData": self._config.app_data,
            "partiallyFillable": False,
            "signingScheme": "eip712",
            "slippageBps": self._config.slippage_bps,
        }
        data = await self._request("POST", "/quote", body, rejection_code="VEN_QUOTE_FAILED")
        quote = data.get("quote") if isinstance(data, dict) else None
        if not isinstance(quote, dict) or "buyAmount" not in quote:
            raise self._error("Quote response missing buyAmount", "VEN_BAD_RESPONSE")
        return quote

    async def submit_order(
        self,
        order: Dict[str, Any],
        signature: str,
        signing_scheme: str = "eip712",
    ) -> str:
        """
        Submit a signed order.

        Returns:
            Order uid
        """
        body = dict(order)
        body.update(
            signature=signature,
            signingScheme=signing_scheme,
            appData=order.get("appData", self._config.app_data),
        )
        data = await self._request("POST", "/orders", body, rejection_code="VEN_ORDER_REJECTED")
        uid = data if isinstance(data, str) else (data or {}).get("uid")
        if not uid:
            raise self._error("Order submission returned no uid", "VEN_BAD_RESPONSE")
        return uid

    async def get_order(self, uid: str) -> Dict[str, Any]:
        """Order status and executed amounts."""
        data = await self._request("GET", f"/orders/{uid}", rejection_code="VEN_ORDER_REJECTED")
        if not isinstance(data, dict):
            raise self._error("Order status response is not an object", "VEN_BAD_RESPONSE")
        return data

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        rejection_code: str = "VEN_ORDER_REJECTED",
    ) -> Any:
        request_id = uuid.uuid4().hex[:12]
        url = f"{self._base_url}{path}"
        log_request(logger, VENUE_NAME, method, url, params=body)

        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=body,
                headers={"X-Request-Id": request_id},
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise self._error(
                        f"{method} {path} failed: {response.status} - {mask_text(text[:500])}",
                        self._code_for(response.status, rejection_code),
                        response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError:
                    raise self._error("Unparseable response", "VEN_BAD_RESPONSE", response.status)
        except aiohttp.ClientError as e:
            raise self._error(f"Network error ({request_id}): {e}", "NET_CONNECTION_FAILED")
        except asyncio.TimeoutError:
            raise self._error(f"Request timeout ({request_id})", "TMO_READ")

    @staticmethod
    def _code_for(http_status: int, rejection_code: str) -> str:
        if http_status == 429:
            return "RTE_LIMIT"
        if http_status >= 500:
            return "VEN_SERVER_ERROR"
        return rejection_code

    def _error(self, message: str, code: str, http_status: Optional[int] = None) -> VenueError:
        return VenueError(
            message,
            code=code,
            is_retryable=get_error_info(code).is_retryable,
            http_status=http_status,
            venue=VENUE_NAME,
        )
