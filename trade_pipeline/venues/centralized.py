"""
Venues - Centralized Exchange.

============================================================
PURPOSE
============================================================
Market orders on a CEX through the account's stored API key.

There is no separate signature step: every request is
authenticated with the key, so quote, authorize and submit
run back to back in one tick. Many exchanges report a
market order as filled in the placement response.

============================================================
"""

import logging
from typing import Optional

from ..repository import ExchangeKeyRepository
from ..secrets import SecretStore
from ..types import (
    TradeRequest,
    Agent,
    Quote,
    Authorization,
    SubmittedOrder,
    FillReport,
    ExecutionVenue,
    ExchangeKey,
    OrderSide,
    CredentialError,
    VenueError,
)
from .base import Venue
from .exchanges import (
    CexCredentials,
    ExchangeClientFactory,
    resolve_exchange_symbol,
    format_quantity,
)


logger = logging.getLogger(__name__)


def client_order_id_for(trade: TradeRequest) -> str:
    """Exchange idempotency key for a trade: 32 hex chars, accepted by every adapter."""
    return trade.id.replace("-", "")


class CentralizedVenue(Venue):
    """CEX market-order venue."""

    venue = ExecutionVenue.CENTRALIZED
    inline_execution = True
    label = "CEX"

    def __init__(
        self,
        factory: ExchangeClientFactory,
        secrets: SecretStore,
        keys: ExchangeKeyRepository,
    ):
        self._factory = factory
        self._secrets = secrets
        self._keys = keys

    def describe(self, trade: TradeRequest) -> str:
        exchange = trade.signed_payload.get("exchange") or trade.quote_snapshot.get("exchange")
        return f"CEX ({exchange})" if exchange else self.label

    # --------------------------------------------------------
    # CREDENTIALS
    # --------------------------------------------------------

    def _key_id(self, trade: TradeRequest, agent: Optional[Agent] = None) -> Optional[str]:
        return (
            trade.signed_payload.get("exchangeKeyId")
            or trade.quote_snapshot.get("exchangeKeyId")
            or trade.exchange_key_id
            or (agent.default_exchange_key_id if agent else None)
        )

    async def _load_key(self, key_id: Optional[str], active_only: bool = True) -> ExchangeKey:
        if not key_id:
            raise CredentialError("Centralized trade has no exchange key")
        key = await self._keys.get(key_id, active_only=active_only)
        if key is None:
            raise CredentialError(f"Exchange key {key_id} is missing or revoked")
        return key

    def _credentials(self, key: ExchangeKey) -> CexCredentials:
        with self._secrets.reveal(key.encrypted_data) as plaintext:
            creds = CexCredentials.from_dict(plaintext.as_json())
        if not creds.api_key or not creds.secret:
            raise CredentialError(f"Exchange key {key.id} is incomplete")
        return creds

    # --------------------------------------------------------
    # VENUE STEPS
    # --------------------------------------------------------

    async def quote(self, trade: TradeRequest, agent: Agent) -> Quote:
        key = await self._load_key(self._key_id(trade, agent))
        resolved = resolve_exchange_symbol(key.exchange, trade.sell_token, trade.buy_token)
        quantity = format_quantity(trade.sell_amount, trade.sell_token)

        snapshot = {
            "exchange": key.exchange,
            "exchangeKeyId": key.id,
            "symbol": resolved.symbol,
            "side": resolved.side.value,
            "quantity": quantity,
            "quantityToken": resolved.quantity_token,
            "sellToken": trade.sell_token,
            "buyToken": trade.buy_token,
            "sellAmount": str(trade.sell_amount),
        }
        return Quote(snapshot=snapshot)

    async def authorize(self, trade: TradeRequest, agent: Agent) -> Authorization:
        return Authorization(scheme="api-key")

    async def submit(
        self,
        trade: TradeRequest,
        agent: Agent,
        authorization: Authorization,
    ) -> SubmittedOrder:
        snapshot = trade.quote_snapshot
        key = await self._load_key(snapshot.get("exchangeKeyId") or self._key_id(trade, agent))
        client = self._factory.get(snapshot["exchange"])

        result = await client.place_market_order(
            self._credentials(key),
            snapshot["symbol"],
            OrderSide(snapshot["side"]),
            snapshot["quantity"],
            client_order_id=client_order_id_for(trade),
        )
        if not result.order_id:
            raise VenueError(
                "Exchange accepted the order without an id",
                code="VEN_BAD_RESPONSE",
                venue=snapshot["exchange"],
            )

        logger.info(
            f"Placed {snapshot['side']} {snapshot['quantity']} {snapshot['quantityToken']} "
            f"on {snapshot['exchange']} {snapshot['symbol']}: {result.order_id} ({result.status})"
        )
        return SubmittedOrder(
            order_id=result.order_id,
            metadata={
                "exchange": snapshot["exchange"],
                "exchangeKeyId": key.id,
                "orderId": result.order_id,
                "symbol": snapshot["symbol"],
            },
            fill=result.to_fill_report(),
        )

    async def poll_status(self, trade: TradeRequest) -> FillReport:
        payload = trade.signed_payload
        order_id = payload.get("orderId")
        if not order_id:
            raise VenueError("Submitted trade has no exchange order id", code="VEN_BAD_RESPONSE")

        key = await self._load_key(self._key_id(trade), active_only=False)
        client = self._factory.get(payload.get("exchange") or key.exchange)
        result = await client.get_order_status(
            self._credentials(key),
            order_id,
            payload.get("symbol") or trade.quote_snapshot.get("symbol", ""),
        )
        return result.to_fill_report()

    async def close(self) -> None:
        await self._factory.close_all()
