"""
Trade Pipeline - Fill Monitor.

============================================================
PURPOSE
============================================================
Polls submitted orders and settles the ones that finished.

STATE MAPPING:
- FILLED    -> filled, settlement side effects
- EXPIRED   -> expired
- CANCELLED -> cancelled
- OPEN      -> untouched, polled again next tick

SETTLEMENT (only after the filled write lands):
1. Agent stats (trade count, last trade time)
2. TradeFilled on the event bus
3. Fresh queued copy for recurring trades

A poll that raises leaves the record for the next tick.

============================================================
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Sequence

from .events import EventBus, TradeFilled, TradeCancelled
from .repository import TradeQueueRepository, AgentRepository
from .tokens import realized_entry_price
from .types import (
    TradeRequest,
    TradeStatus,
    FillReport,
    FillState,
    utcnow,
)
from .venues.base import Venue


logger = logging.getLogger(__name__)


def entry_price_for(trade: TradeRequest, fill: FillReport) -> Optional[Decimal]:
    """
    Realized USD entry price.

    Executed amounts when the venue reports them, else the
    exchange's average price.
    """
    if fill.executed_sell_amount and fill.executed_buy_amount:
        return realized_entry_price(
            trade.sell_token,
            trade.buy_token,
            fill.executed_sell_amount,
            fill.executed_buy_amount,
        )
    if fill.average_price:
        try:
            return Decimal(fill.average_price)
        except InvalidOperation:
            logger.warning(f"Trade {trade.id}: unparseable average price {fill.average_price!r}")
    return None


class FillMonitor:
    """Fill polling and settlement."""

    def __init__(
        self,
        trades: TradeQueueRepository,
        agents: AgentRepository,
        bus: EventBus,
        recurrence_interval: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._trades = trades
        self._agents = agents
        self._bus = bus
        self._recurrence_interval = recurrence_interval
        self._clock = clock

    # --------------------------------------------------------
    # POLLING
    # --------------------------------------------------------

    async def check(self, trade: TradeRequest, venue: Venue) -> Optional[TradeStatus]:
        """
        Poll one submitted trade and apply the result.

        Returns:
            New status if this call moved the trade, else None

        Raises:
            Whatever the venue poll raises
        """
        fill = await venue.poll_status(trade)

        if fill.state == FillState.FILLED:
            settled = await self.settle(trade, venue, fill)
            return TradeStatus.FILLED if settled else None

        if fill.state in (FillState.EXPIRED, FillState.CANCELLED):
            target = TradeStatus.EXPIRED if fill.state == FillState.EXPIRED else TradeStatus.CANCELLED
            reason = f"venue reports {fill.raw_status or fill.state.value}"
            moved = await self._trades.transition(
                trade.id,
                TradeStatus.SUBMITTED,
                target,
                reason=reason,
                details=fill.to_dict(),
            )
            if moved:
                await self._bus.publish(TradeCancelled(
                    trade=trade,
                    status=target.value,
                    reason=reason,
                    code="VEN_ORDER_EXPIRED" if target == TradeStatus.EXPIRED else "VEN_ORDER_REJECTED",
                ))
                return target
            return None

        logger.debug(f"Trade {trade.id}: still {fill.raw_status or 'open'}")
        return None

    # --------------------------------------------------------
    # SETTLEMENT
    # --------------------------------------------------------

    async def settle(
        self,
        trade: TradeRequest,
        venue: Venue,
        fill: FillReport,
        expected: TradeStatus = TradeStatus.SUBMITTED,
        via: Sequence[TradeStatus] = (),
        signed_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a trade to filled and run settlement side effects.

        Args:
            trade: Trade as last read
            venue: Venue it executed on
            fill: Filled report
            expected: Status the caller observed
            via: Intermediate statuses (single-tick CEX fills)
            signed_payload: Fields appended to signed_payload in the same write

        Returns:
            True if this call filled the trade
        """
        now = self._clock()
        price = entry_price_for(trade, fill)

        result = fill.to_dict()
        result["filledAt"] = now.isoformat()
        if price is not None:
            result["entryPriceUsd"] = str(price)

        append: Dict[str, Dict[str, Any]] = {"execution_result": result}
        if signed_payload:
            append["signed_payload"] = signed_payload

        moved = await self._trades.transition(
            trade.id,
            expected,
            TradeStatus.FILLED,
            reason="filled",
            via=via,
            append=append,
            details={"entryPriceUsd": result.get("entryPriceUsd")},
        )
        if not moved:
            return False

        if price is not None:
            logger.info(f"Trade {trade.id} filled at ${price:.2f}")

        await self._agents.record_trade(trade.agent_id, now)
        agent = await self._agents.get(trade.agent_id)

        filled = replace(
            trade,
            status=TradeStatus.FILLED,
            signed_payload={**trade.signed_payload, **(signed_payload or {})},
            execution_result=result,
        )
        await self._bus.publish(TradeFilled(
            trade=filled,
            agent=agent,
            fill=fill,
            entry_price_usd=price,
            venue_label=venue.describe(filled),
        ))

        if trade.recurring:
            await self.enqueue_next(trade, now)
        return True

    async def enqueue_next(self, trade: TradeRequest, now: datetime) -> TradeRequest:
        """Queue the next run of a recurring trade."""
        follow_up = TradeRequest(
            agent_id=trade.agent_id,
            account_id=trade.account_id,
            sell_token=trade.sell_token,
            buy_token=trade.buy_token,
            sell_amount=trade.sell_amount,
            execution_venue=trade.execution_venue,
            exchange_key_id=trade.exchange_key_id,
            recurring=True,
            next_run_at=now + self._recurrence_interval,
        )
        await self._trades.create(follow_up)
        logger.info(f"Recurring trade {trade.id} re-queued as {follow_up.id}")
        return follow_up
