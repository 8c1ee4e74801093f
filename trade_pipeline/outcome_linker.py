"""
Trade Pipeline - Outcome Linker.

============================================================
PURPOSE
============================================================
Joins a filled trade back to the AI consultation that
queued it, so a later scoring job can judge the call.

On TradeFilled:
1. Find the consultation whose trade_queue_id is the trade
2. Parse confidence out of the stored AI response
3. Write entry_price_usd and confidence_at_rec once

Runs as an event subscriber with its own session; nothing
here can change trade status.

============================================================
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_db_session

from .events import EventBus, TradeFilled
from .repository import ConsultationRepository


logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 50

_CONFIDENCE_OBJECT = re.compile(r"\{[^{}]*\"confidence\"[^{}]*\}")
_CONFIDENCE_FIELD = re.compile(r"\"confidence\"\s*:\s*(-?\d+(?:\.\d+)?)")


def _clamp(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(round(min(100, max(0, value))))


def parse_confidence(ai_response: Optional[str]) -> int:
    """
    Best-effort confidence from an AI response.

    Tries, in order: the innermost JSON object mentioning
    confidence, any decodable JSON object with a confidence key,
    a bare "confidence": number pair. Falls back to 50.
    """
    if not ai_response:
        return DEFAULT_CONFIDENCE

    for match in _CONFIDENCE_OBJECT.finditer(ai_response):
        try:
            value = _clamp(json.loads(match.group(0)).get("confidence"))
        except ValueError:
            continue
        if value is not None:
            return value

    decoder = json.JSONDecoder()
    for start in (i for i, ch in enumerate(ai_response) if ch == "{"):
        try:
            obj, _ = decoder.raw_decode(ai_response, start)
        except ValueError:
            continue
        if isinstance(obj, dict):
            value = _clamp(obj.get("confidence"))
            if value is not None:
                return value

    match = _CONFIDENCE_FIELD.search(ai_response)
    if match:
        return _clamp(float(match.group(1)))

    return DEFAULT_CONFIDENCE


class OutcomeLinker:
    """Writes realized entry price onto the linked consultation."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    def register(self, bus: EventBus) -> None:
        bus.subscribe(TradeFilled, self.on_trade_filled)

    async def on_trade_filled(self, event: TradeFilled) -> None:
        if event.entry_price_usd is None:
            logger.info(f"Trade {event.trade.id}: no entry price, consultation not linked")
            return
        await self.link(event.trade.id, event.entry_price_usd)

    async def link(self, trade_id: str, entry_price_usd: Decimal) -> bool:
        """
        Link one trade's outcome.

        Returns:
            True if a consultation was updated
        """
        async with get_db_session(self._session_factory) as session:
            consultations = ConsultationRepository(session)
            consultation = await consultations.find_by_trade(trade_id)
            if consultation is None:
                logger.debug(f"Trade {trade_id}: no linked consultation")
                return False

            confidence = parse_confidence(consultation.ai_response)
            updated = await consultations.attach_outcome(
                consultation.id,
                entry_price_usd.quantize(Decimal("0.00000001")),
                confidence,
            )

        if updated:
            logger.info(
                f"Consultation {consultation.id} linked to trade {trade_id}: "
                f"entry ${entry_price_usd:.2f}, confidence {confidence}"
            )
        return updated
