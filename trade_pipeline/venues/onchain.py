"""
Venues - On-Chain Batch Auction.

============================================================
PURPOSE
============================================================
CoW Protocol venue on Base. Every step is a separate phase
in a separate tick:

    quote      POST /quote, snapshot persisted
    authorize  allowance check/approval, EIP-712 signature
    submit     POST /orders, uid recorded
    poll       GET /orders/{uid}

The agent key is revealed only inside authorize().

============================================================
"""

import time
import logging
from typing import Any, Callable, Dict, Optional

from eth_account import Account

from ..allowance import AllowanceManager
from ..secrets import SecretStore
from ..signing import OrderSigner
from ..types import (
    TradeRequest,
    Agent,
    Quote,
    Authorization,
    SubmittedOrder,
    FillReport,
    FillState,
    ExecutionVenue,
    CredentialError,
    VenueError,
)
from .base import Venue
from .cow_client import CowClient


logger = logging.getLogger(__name__)

FILLED_STATUSES = {"fulfilled", "traded"}
EXPIRED_STATUSES = {"expired", "cancelled"}

ORDER_FIELDS = (
    "sellToken",
    "buyToken",
    "receiver",
    "sellAmount",
    "buyAmount",
    "validTo",
    "appData",
    "feeAmount",
    "kind",
    "partiallyFillable",
    "sellTokenBalance",
    "buyTokenBalance",
    "from",
)


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


class OnChainVenue(Venue):
    """Batch-auction order book venue."""

    venue = ExecutionVenue.ON_CHAIN
    inline_execution = False
    label = "CoW Protocol (MEV-protected)"

    def __init__(
        self,
        client: CowClient,
        signer: OrderSigner,
        allowance: AllowanceManager,
        secrets: SecretStore,
        app_data: str,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._signer = signer
        self._allowance = allowance
        self._secrets = secrets
        self._app_data = app_data
        self._clock = clock

    async def quote(self, trade: TradeRequest, agent: Agent) -> Quote:
        owner = agent.routing_address
        if not owner:
            raise CredentialError(f"Agent {agent.id} has no wallet address", "CFG_MISSING_WALLET")

        q = await self._client.quote(trade.sell_token, trade.buy_token, trade.sell_amount, owner)

        snapshot = {
            "sellToken": q.get("sellToken", trade.sell_token),
            "buyToken": q.get("buyToken", trade.buy_token),
            "sellAmount": str(q.get("sellAmount", trade.sell_amount)),
            "buyAmount": str(q["buyAmount"]),
            "feeAmount": "0",
            "quoteFeeAmount": str(q.get("feeAmount", "0")),
            "validTo": int(q["validTo"]),
            "appData": self._app_data,
            "kind": q.get("kind", "sell"),
            "receiver": owner,
            "from": owner,
            "partiallyFillable": False,
            "sellTokenBalance": "erc20",
            "buyTokenBalance": "erc20",
        }
        return Quote(
            snapshot=snapshot,
            buy_amount=int(q["buyAmount"]),
            fee_amount=_int_or_none(q.get("feeAmount")),
            valid_to=int(q["validTo"]),
        )

    async def authorize(self, trade: TradeRequest, agent: Agent) -> Authorization:
        if not agent.encrypted_private_key:
            raise CredentialError(f"Agent {agent.id} has no signing key", "CFG_MISSING_WALLET")

        snapshot = trade.quote_snapshot
        self._check_valid_to(trade)
        owner = snapshot.get("from") or snapshot.get("receiver")

        with self._secrets.reveal(agent.encrypted_private_key) as key:
            private_key = key.as_text()
            if Account.from_key(private_key).address.lower() != (owner or "").lower():
                raise CredentialError(
                    f"Agent {agent.id} signing key does not control {owner}",
                    "CFG_MISSING_WALLET",
                )
            await self._allowance.ensure_allowance(
                private_key,
                owner,
                snapshot["sellToken"],
                int(snapshot["sellAmount"]),
            )
            authorization = self._signer.sign(private_key, snapshot)
            del private_key

        return authorization

    async def submit(
        self,
        trade: TradeRequest,
        agent: Agent,
        authorization: Authorization,
    ) -> SubmittedOrder:
        if not authorization.signature:
            raise VenueError("Signed payload has no signature", code="VAL_INVALID_ORDER", venue="cow")
        self._check_valid_to(trade)

        order = {k: trade.quote_snapshot[k] for k in ORDER_FIELDS if k in trade.quote_snapshot}
        uid = await self._client.submit_order(order, authorization.signature, authorization.scheme)
        return SubmittedOrder(order_id=uid, metadata={"orderUid": uid})

    def _check_valid_to(self, trade: TradeRequest) -> None:
        """A quote past its validTo cannot be signed or accepted."""
        valid_to = trade.quote_snapshot.get("validTo")
        if valid_to is not None and int(valid_to) <= int(self._clock()):
            raise VenueError(
                f"Quote for trade {trade.id} expired at {valid_to}",
                code="VAL_QUOTE_EXPIRED",
                venue="cow",
            )

    async def poll_status(self, trade: TradeRequest) -> FillReport:
        uid = trade.signed_payload.get("orderUid")
        if not uid:
            raise VenueError("Submitted trade has no order uid", code="VEN_BAD_RESPONSE", venue="cow")

        data = await self._client.get_order(uid)
        status = str(data.get("status", ""))

        if status in FILLED_STATUSES:
            return FillReport(
                state=FillState.FILLED,
                raw_status=status,
                executed_sell_amount=_int_or_none(data.get("executedSellAmount")),
                executed_buy_amount=_int_or_none(data.get("executedBuyAmount")),
            )
        if data.get("invalidated") or status in EXPIRED_STATUSES:
            return FillReport(state=FillState.EXPIRED, raw_status=status or "invalidated")
        return FillReport(state=FillState.OPEN, raw_status=status)

    async def close(self) -> None:
        await self._client.close()
