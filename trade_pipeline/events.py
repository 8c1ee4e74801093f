"""
Trade Pipeline - Event Bus.

============================================================
PURPOSE
============================================================
In-process dispatch of settlement events to best-effort
subscribers (outcome linking, notifications).

PRINCIPLES:
- Published only after the state change is committed
- A subscriber failure is logged and swallowed
- Subscribers run in registration order

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from .types import TradeRequest, Agent, FillReport, utcnow


logger = logging.getLogger(__name__)


# ============================================================
# EVENTS
# ============================================================

@dataclass
class PipelineEvent:
    """Base event."""

    event_type = "event"

    occurred_at: datetime = field(default_factory=utcnow, init=False)


@dataclass
class TradeFilled(PipelineEvent):
    """A trade reached filled."""

    event_type = "trade_filled"

    trade: TradeRequest = None
    agent: Optional[Agent] = None
    fill: Optional[FillReport] = None
    entry_price_usd: Optional[Decimal] = None
    venue_label: str = ""


@dataclass
class TradeCancelled(PipelineEvent):
    """A trade reached cancelled or expired."""

    event_type = "trade_cancelled"

    trade: TradeRequest = None
    status: str = "cancelled"
    reason: str = ""
    code: Optional[str] = None


@dataclass
class AgentPaused(PipelineEvent):
    """The risk gate paused an agent."""

    event_type = "agent_paused"

    agent_id: str = ""
    reason: str = ""


Subscriber = Callable[[Any], Awaitable[None]]


# ============================================================
# EVENT BUS
# ============================================================

class EventBus:
    """Routes events to subscribers by event class."""

    def __init__(self):
        self._subscribers: Dict[Type[PipelineEvent], List[Subscriber]] = {}

    def subscribe(self, event_class: Type[PipelineEvent], callback: Subscriber) -> None:
        self._subscribers.setdefault(event_class, []).append(callback)

    def subscriber_count(self, event_class: Type[PipelineEvent]) -> int:
        return len(self._subscribers.get(event_class, []))

    async def publish(self, event: PipelineEvent) -> int:
        """
        Deliver an event to every subscriber of its class.

        Returns:
            Number of subscribers that completed without error
        """
        delivered = 0
        for callback in self._subscribers.get(type(event), []):
            try:
                await callback(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Subscriber {getattr(callback, '__qualname__', callback)} "
                    f"failed on {event.event_type}: {e}"
                )
        return delivered
