"""
Trade Pipeline - Notifications.

============================================================
PURPOSE
============================================================
Fire-and-forget trade alerts.

Sinks implement notify(agent_id, event_type, payload).
TradeAlertSubscriber turns bus events into payloads and
hands them to every sink.

PRINCIPLES:
- Notification-only, failures never reach the pipeline
- No secrets, signatures or order payloads in messages

============================================================
"""

import asyncio
import html
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .config import NotificationConfig
from .events import EventBus, TradeFilled, TradeCancelled, AgentPaused
from .tokens import get_token, format_amount


logger = logging.getLogger(__name__)


# ============================================================
# PAYLOADS
# ============================================================

def trade_side(sell_token: str, buy_token: str) -> str:
    """'buy' when spending the stablecoin, else 'sell'."""
    if get_token(sell_token).is_stable and not get_token(buy_token).is_stable:
        return "buy"
    return "sell"


def format_price(price: Optional[Decimal]) -> str:
    return f"${price:.2f}" if price is not None else "n/a"


def trade_filled_payload(event: TradeFilled) -> Dict[str, Any]:
    trade = event.trade
    fill = event.fill
    executed_sell = fill.executed_sell_amount if fill else None
    executed_buy = fill.executed_buy_amount if fill else None

    if executed_buy is not None:
        buy_amount = format_amount(executed_buy, trade.buy_token)
    elif fill and fill.filled_quantity:
        buy_amount = fill.filled_quantity
    else:
        buy_amount = "?"

    return {
        "agentName": event.agent.name if event.agent else "",
        "agentId": trade.agent_id,
        "tradeId": trade.id,
        "side": trade_side(trade.sell_token, trade.buy_token),
        "sellToken": get_token(trade.sell_token).symbol,
        "buyToken": get_token(trade.buy_token).symbol,
        "sellAmount": format_amount(
            executed_sell if executed_sell is not None else trade.sell_amount,
            trade.sell_token,
        ),
        "buyAmount": buy_amount,
        "entryPrice": format_price(event.entry_price_usd),
        "venue": event.venue_label,
    }


# ============================================================
# SINKS
# ============================================================

class NotificationSink(ABC):
    """Alert destination."""

    @abstractmethod
    async def notify(self, agent_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Deliver one alert. Returns True if delivered."""
        pass

    async def close(self) -> None:
        pass


class LoggingNotifier(NotificationSink):
    """Writes alerts to the log. Always available."""

    async def notify(self, agent_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        logger.info(f"[{event_type}] agent {agent_id}: {payload}")
        return True


class TelegramNotifier(NotificationSink):
    """
    Sends trade alerts to a Telegram chat.

    Disabled (every notify returns False) unless both bot
    token and chat id are configured.
    """

    BASE_URL = "https://api.telegram.org/bot"

    TITLES = {
        "trade_filled": "✅ Trade filled",
        "trade_cancelled": "⛔ Trade stopped",
        "agent_paused": "🚨 Agent paused",
    }

    def __init__(
        self,
        config: NotificationConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._bot_token = config.telegram_bot_token or ""
        self._chat_id = config.telegram_chat_id or ""
        self._enabled = config.telegram_enabled
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._session = session
        self._owns_session = session is None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @classmethod
    def format_message(cls, event_type: str, payload: Dict[str, Any]) -> str:
        title = cls.TITLES.get(event_type, event_type)
        if event_type == "trade_filled":
            body = [
                f"<b>{html.escape(str(payload.get('agentName') or payload.get('agentId')))}</b> "
                f"{html.escape(payload['side'])}: "
                f"{payload['sellAmount']} {html.escape(payload['sellToken'])} → "
                f"{payload['buyAmount']} {html.escape(payload['buyToken'])}",
                f"Entry: {payload['entryPrice']}",
                f"Venue: {html.escape(payload['venue'])}",
            ]
        else:
            body = [
                f"<code>{html.escape(str(k))}</code>: {html.escape(str(v))}"
                for k, v in payload.items()
            ]
        return "\n".join([f"<b>{title}</b>", ""] + body)

    async def notify(self, agent_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self._enabled:
            return False

        url = f"{self.BASE_URL}{self._bot_token}/sendMessage"
        body = {
            "chat_id": self._chat_id,
            "text": self.format_message(event_type, payload),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            session = await self._get_session()
            async with session.post(url, json=body) as response:
                if response.status == 200:
                    return True
                logger.error(f"Telegram API error: {response.status} - {(await response.text())[:200]}")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error sending Telegram message: {e}")
            return False


# ============================================================
# BUS SUBSCRIBER
# ============================================================

class TradeAlertSubscriber:
    """Fans bus events out to notification sinks."""

    def __init__(self, sinks: List[NotificationSink]):
        self._sinks = list(sinks)

    def register(self, bus: EventBus) -> None:
        bus.subscribe(TradeFilled, self.on_trade_filled)
        bus.subscribe(TradeCancelled, self.on_trade_cancelled)
        bus.subscribe(AgentPaused, self.on_agent_paused)

    async def on_trade_filled(self, event: TradeFilled) -> None:
        await self._dispatch(event.trade.agent_id, event.event_type, trade_filled_payload(event))

    async def on_trade_cancelled(self, event: TradeCancelled) -> None:
        await self._dispatch(event.trade.agent_id, event.event_type, {
            "tradeId": event.trade.id,
            "status": event.status,
            "reason": event.reason,
            "code": event.code,
        })

    async def on_agent_paused(self, event: AgentPaused) -> None:
        await self._dispatch(event.agent_id, event.event_type, {"reason": event.reason})

    async def _dispatch(self, agent_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                await sink.notify(agent_id, event_type, payload)
            except Exception as e:
                logger.error(f"{type(sink).__name__} failed on {event_type}: {e}")

    async def close(self) -> None:
        for sink in self._sinks:
            await sink.close()


def build_sinks(config: NotificationConfig) -> List[NotificationSink]:
    """Logging always, Telegram when configured."""
    sinks: List[NotificationSink] = [LoggingNotifier()]
    if config.telegram_enabled:
        sinks.append(TelegramNotifier(config))
    return sinks
