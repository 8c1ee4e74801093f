"""
Trade Pipeline - Tick Runner.

============================================================
PURPOSE
============================================================
One stateless scheduler tick: four phase batches, run
strictly in sequence.

    1. QUOTE   queued    -> quoted     (CEX: on to submitted/filled)
    2. SIGN    quoted    -> signed     (risk gate first)
    3. SUBMIT  signed    -> submitted
    4. FILL    submitted -> filled | expired | cancelled

Each phase takes at most batch_size records in one status,
oldest eligible first, and advances them one at a time. All
four batches are selected when the tick starts, so a record
moved by one phase reaches the next phase on the next tick.

FAILURES:
- Transient: status kept, next_run_at pushed by the retry policy
- Terminal:  cancelled / expired
- A failing record never stops the rest of the batch

OVERLAPPING TICKS:
- Status writes are compare-and-swap on the expected status
- Venue calls with side effects run only after a claim that
  pushes next_run_at past the other tick's view

============================================================
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import get_db_session, get_session_factory

from .allowance import AllowanceManager
from .config import PipelineConfig
from .errors import Disposition, Phase, classify_error, error_code
from .events import EventBus, TradeCancelled, AgentPaused
from .fill_monitor import FillMonitor
from .logging_utils import mask_text
from .notifications import TradeAlertSubscriber, build_sinks
from .outcome_linker import OutcomeLinker
from .repository import TradeQueueRepository, AgentRepository, ExchangeKeyRepository
from .risk_gate import RiskGate, GateDecision
from .secrets import SecretStore
from .signing import OrderSigner
from .types import (
    TradeRequest,
    TradeStatus,
    ExecutionVenue,
    Agent,
    AgentStatus,
    Authorization,
    InvalidTransitionError,
    utcnow,
)
from .venues import Venue, CowClient, OnChainVenue, CentralizedVenue
from .venues.exchanges import ExchangeClientFactory


logger = logging.getLogger(__name__)


# ============================================================
# TRADE CREATION
# ============================================================

def build_trade_request(
    agent: Agent,
    sell_token: str,
    buy_token: str,
    sell_amount: int,
    recurring: bool = False,
    exchange_key_id: Optional[str] = None,
    next_run_at: Optional[datetime] = None,
) -> TradeRequest:
    """
    New queued trade with its venue fixed.

    Centralized when an exchange key is given or the agent has
    a default one, on-chain otherwise.
    """
    key_id = exchange_key_id or agent.default_exchange_key_id
    return TradeRequest(
        agent_id=agent.id,
        account_id=agent.account_id,
        sell_token=sell_token,
        buy_token=buy_token,
        sell_amount=int(sell_amount),
        execution_venue=ExecutionVenue.CENTRALIZED if key_id else ExecutionVenue.ON_CHAIN,
        exchange_key_id=key_id,
        recurring=recurring,
        next_run_at=next_run_at or utcnow(),
    )


# ============================================================
# TICK SUMMARY
# ============================================================

@dataclass
class TickSummary:
    """Counts for one tick, returned by the trigger endpoint."""

    tick_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    checked: int = 0
    cow: Dict[str, int] = field(default_factory=lambda: {
        "quoted": 0, "signed": 0, "submitted": 0, "filled": 0,
    })
    cex: Dict[str, int] = field(default_factory=lambda: {
        "submitted": 0, "filled": 0,
    })
    cancelled: int = 0
    expired: int = 0
    rescheduled: int = 0
    skipped: int = 0
    errors: int = 0

    def bucket(self, venue: Venue) -> Dict[str, int]:
        return self.cex if venue.venue == ExecutionVenue.CENTRALIZED else self.cow

    def count(self, venue: Venue, key: str) -> None:
        bucket = self.bucket(venue)
        if key in bucket:
            bucket[key] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tickId": self.tick_id,
            "checked": self.checked,
            "cow": dict(self.cow),
            "cex": dict(self.cex),
            "cancelled": self.cancelled,
            "expired": self.expired,
            "rescheduled": self.rescheduled,
            "skipped": self.skipped,
            "errors": self.errors,
            "durationMs": (
                int((self.completed_at - self.started_at).total_seconds() * 1000)
                if self.completed_at else None
            ),
        }


@dataclass
class _Tick:
    """Per-tick collaborators bound to one session."""

    session: AsyncSession
    trades: TradeQueueRepository
    agents: AgentRepository
    venues: Dict[ExecutionVenue, Venue]
    monitor: FillMonitor
    now: datetime


# ============================================================
# PIPELINE
# ============================================================

class TradePipeline:
    """
    Runs scheduler ticks.

    Safe to run concurrently with itself: every status change
    is a compare-and-swap on the status this tick observed.
    """

    def __init__(
        self,
        config: PipelineConfig,
        session_factory: Optional[async_sessionmaker] = None,
        onchain_venue: Optional[Venue] = None,
        exchange_factory: Optional[ExchangeClientFactory] = None,
        secret_store: Optional[SecretStore] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._session_factory = session_factory or get_session_factory()
        self._secrets = secret_store or SecretStore.from_config(config.secrets)
        self._onchain = onchain_venue or self._build_onchain_venue()
        self._exchanges = exchange_factory or ExchangeClientFactory(config.centralized)
        self._gate = RiskGate(config.risk)
        self._retry = config.retry
        self._clock = clock

        self._alerts: Optional[TradeAlertSubscriber] = None
        if bus is None:
            bus = EventBus()
            OutcomeLinker(self._session_factory).register(bus)
            self._alerts = TradeAlertSubscriber(build_sinks(config.notifications))
            self._alerts.register(bus)
        self._bus = bus

    @property
    def bus(self) -> EventBus:
        return self._bus

    def _build_onchain_venue(self) -> OnChainVenue:
        onchain = self._config.onchain
        return OnChainVenue(
            client=CowClient(onchain),
            signer=OrderSigner(onchain),
            allowance=AllowanceManager(onchain),
            secrets=self._secrets,
            app_data=onchain.app_data,
        )

    async def close(self) -> None:
        await self._onchain.close()
        await self._exchanges.close_all()
        if self._alerts:
            await self._alerts.close()

    async def enqueue(self, trade: TradeRequest) -> TradeRequest:
        """Persist a new trade request."""
        async with get_db_session(self._session_factory) as session:
            return await TradeQueueRepository(session).create(trade)

    # --------------------------------------------------------
    # TICK
    # --------------------------------------------------------

    async def run_tick(self) -> TickSummary:
        """Run the four phases once."""
        summary = TickSummary(started_at=self._clock())
        logger.info(f"Tick {summary.tick_id} START", extra={"tick_id": summary.tick_id})

        async with get_db_session(self._session_factory) as session:
            trades = TradeQueueRepository(session)
            agents = AgentRepository(session)
            tick = _Tick(
                session=session,
                trades=trades,
                agents=agents,
                venues={
                    ExecutionVenue.ON_CHAIN: self._onchain,
                    ExecutionVenue.CENTRALIZED: CentralizedVenue(
                        self._exchanges,
                        self._secrets,
                        ExchangeKeyRepository(session),
                    ),
                },
                monitor=FillMonitor(
                    trades,
                    agents,
                    self._bus,
                    timedelta(seconds=self._config.recurrence_interval_seconds),
                    clock=self._clock,
                ),
                now=summary.started_at,
            )

            # Batches are taken before any phase runs, so a record
            # advanced by one phase waits for the next tick.
            batches = []
            for status, handler, due_only in (
                (TradeStatus.QUEUED, self._quote, True),
                (TradeStatus.QUOTED, self._sign, True),
                (TradeStatus.SIGNED, self._submit, True),
                (TradeStatus.SUBMITTED, self._check_fill, False),
            ):
                batch = await trades.select_batch(
                    status,
                    self._config.scheduler.batch_size,
                    now=tick.now,
                    due_only=due_only,
                )
                batches.append((handler, batch))

            for handler, batch in batches:
                for trade in batch:
                    summary.checked += 1
                    await self._guarded(tick, summary, trade, handler)

        summary.completed_at = self._clock()
        logger.info(
            f"Tick {summary.tick_id} COMPLETE: {summary.to_dict()}",
            extra={"tick_id": summary.tick_id},
        )
        return summary

    async def _guarded(self, tick: _Tick, summary: TickSummary, trade: TradeRequest, handler) -> None:
        try:
            await handler(tick, summary, trade)
        except SQLAlchemyError as e:
            summary.errors += 1
            logger.error(f"Trade {trade.id}: database error, left for next tick: {e}")
            await tick.session.rollback()
        except (InvalidTransitionError, ValueError) as e:
            summary.errors += 1
            logger.error(f"Trade {trade.id}: refused write: {e}")
            await tick.session.rollback()

    # --------------------------------------------------------
    # PHASE 1: QUOTE
    # --------------------------------------------------------

    async def _quote(self, tick: _Tick, summary: TickSummary, trade: TradeRequest) -> None:
        venue = tick.venues[trade.execution_venue]
        agent = await tick.agents.get(trade.agent_id)
        if agent is None or agent.status != AgentStatus.ACTIVE or not agent.trading_enabled:
            summary.skipped += 1
            return

        try:
            quote = await venue.quote(trade, agent)
        except Exception as e:
            await self._fail(tick, summary, trade, e, Phase.QUOTE)
            return

        moved = await tick.trades.transition(
            trade.id,
            TradeStatus.QUEUED,
            TradeStatus.QUOTED,
            reason="quoted",
            fields={"quote_snapshot": quote.snapshot},
            details={"buyAmount": str(quote.buy_amount) if quote.buy_amount is not None else None},
        )
        if not moved:
            return

        trade.status = TradeStatus.QUOTED
        trade.quote_snapshot = dict(quote.snapshot)

        if venue.inline_execution:
            await self._execute_inline(tick, summary, trade, venue, agent)
        else:
            summary.count(venue, "quoted")

    # --------------------------------------------------------
    # PHASE 2: SIGN
    # --------------------------------------------------------

    async def _sign(self, tick: _Tick, summary: TickSummary, trade: TradeRequest) -> None:
        venue = tick.venues[trade.execution_venue]
        agent = await tick.agents.get(trade.agent_id)
        if not await self._pass_gate(tick, summary, trade, agent):
            return

        if venue.inline_execution:
            await self._execute_inline(tick, summary, trade, venue, agent)
            return

        if not await self._claim(tick, trade):
            return

        try:
            authorization = await venue.authorize(trade, agent)
        except Exception as e:
            await self._fail(tick, summary, trade, e, Phase.SIGN)
            return

        moved = await tick.trades.transition(
            trade.id,
            TradeStatus.QUOTED,
            TradeStatus.SIGNED,
            reason="signed",
            fields={"next_run_at": tick.now},
            append={"signed_payload": venue.signed_fields(authorization)},
        )
        if moved:
            summary.count(venue, "signed")

    async def _pass_gate(
        self,
        tick: _Tick,
        summary: TickSummary,
        trade: TradeRequest,
        agent: Optional[Agent],
    ) -> bool:
        """Risk gate for a quoted trade. False means stop here."""
        result = self._gate.evaluate(agent)

        if result.decision == GateDecision.SKIP:
            summary.skipped += 1
            return False

        if result.decision == GateDecision.BLOCK:
            if await tick.agents.pause(agent.id):
                logger.warning(f"Agent {agent.id} auto-paused: {result.reason}")
                await self._bus.publish(AgentPaused(agent_id=agent.id, reason=result.reason))
            await self._cancel(tick, summary, trade, result.reason, "RSK_DRAWDOWN_BREACH")
            return False

        return True

    # --------------------------------------------------------
    # PHASE 3: SUBMIT
    # --------------------------------------------------------

    async def _submit(self, tick: _Tick, summary: TickSummary, trade: TradeRequest) -> None:
        venue = tick.venues[trade.execution_venue]
        agent = await tick.agents.get(trade.agent_id)
        payload = trade.signed_payload
        authorization = Authorization(
            scheme=payload.get("signingScheme", "eip712"),
            signature=payload.get("signature"),
            owner=payload.get("owner"),
        )

        if not await self._claim(tick, trade):
            return

        try:
            submitted = await venue.submit(trade, agent, authorization)
        except Exception as e:
            await self._fail(tick, summary, trade, e, Phase.SUBMIT)
            return

        if submitted.is_filled:
            if await tick.monitor.settle(
                trade,
                venue,
                submitted.fill,
                expected=TradeStatus.SIGNED,
                via=(TradeStatus.SUBMITTED,),
                signed_payload=submitted.metadata,
            ):
                summary.count(venue, "filled")
            return

        moved = await tick.trades.transition(
            trade.id,
            TradeStatus.SIGNED,
            TradeStatus.SUBMITTED,
            reason=f"submitted {submitted.order_id}",
            append={"signed_payload": submitted.metadata},
        )
        if moved:
            summary.count(venue, "submitted")

    # --------------------------------------------------------
    # INLINE EXECUTION (quote, authorize, submit in one tick)
    # --------------------------------------------------------

    async def _execute_inline(
        self,
        tick: _Tick,
        summary: TickSummary,
        trade: TradeRequest,
        venue: Venue,
        agent: Agent,
    ) -> None:
        """
        Authorize and submit a quoted trade right away.

        Runs straight after the quote and again for a trade left
        quoted by a failed placement. A tick that loses the claim
        leaves the record alone.
        """
        if not await self._pass_gate(tick, summary, trade, agent):
            return

        if not await self._claim(tick, trade):
            return

        try:
            authorization = await venue.authorize(trade, agent)
            submitted = await venue.submit(trade, agent, authorization)
        except Exception as e:
            await self._fail(tick, summary, trade, e, Phase.SUBMIT)
            return

        signed = {**venue.signed_fields(authorization), **submitted.metadata}

        if submitted.is_filled:
            if await tick.monitor.settle(
                trade,
                venue,
                submitted.fill,
                expected=TradeStatus.QUOTED,
                via=(TradeStatus.SIGNED, TradeStatus.SUBMITTED),
                signed_payload=signed,
            ):
                summary.count(venue, "filled")
            return

        moved = await tick.trades.transition(
            trade.id,
            TradeStatus.QUOTED,
            TradeStatus.SUBMITTED,
            reason=f"submitted {submitted.order_id}",
            via=(TradeStatus.SIGNED,),
            append={"signed_payload": signed},
        )
        if moved:
            summary.count(venue, "submitted")

    async def _claim(self, tick: _Tick, trade: TradeRequest) -> bool:
        """Hide a due record from other ticks before a venue call with side effects."""
        lease = timedelta(seconds=self._config.scheduler.claim_lease_seconds)
        return await tick.trades.claim(trade.id, trade.status, tick.now, tick.now + lease)

    # --------------------------------------------------------
    # PHASE 4: FILL
    # --------------------------------------------------------

    async def _check_fill(self, tick: _Tick, summary: TickSummary, trade: TradeRequest) -> None:
        venue = tick.venues[trade.execution_venue]
        try:
            status = await tick.monitor.check(trade, venue)
        except SQLAlchemyError:
            raise
        except Exception as e:
            await self._fail(tick, summary, trade, e, Phase.FILL)
            return

        if status == TradeStatus.FILLED:
            summary.count(venue, "filled")
        elif status == TradeStatus.EXPIRED:
            summary.expired += 1
        elif status == TradeStatus.CANCELLED:
            summary.cancelled += 1

    # --------------------------------------------------------
    # FAILURE HANDLING
    # --------------------------------------------------------

    async def _fail(
        self,
        tick: _Tick,
        summary: TickSummary,
        trade: TradeRequest,
        exc: Exception,
        phase: Phase,
    ) -> None:
        """Apply the disposition for a failed venue step."""
        disposition = classify_error(exc, phase)
        code = error_code(exc)
        message = mask_text(str(exc))

        if disposition == Disposition.RETRY:
            if phase == Phase.FILL:
                logger.warning(f"Trade {trade.id}: status poll failed, retry next tick: {message}")
                return

            if self._retry.is_exhausted(trade.attempts):
                await self._cancel(tick, summary, trade, "retry budget exhausted", "RET_BUDGET_EXHAUSTED")
                return

            next_run_at = self._retry.next_run_at(trade.attempts, tick.now)
            logger.warning(
                f"Trade {trade.id}: {phase.value} failed ({code}), "
                f"retry at {next_run_at.isoformat()}: {message}"
            )
            if await tick.trades.reschedule(
                trade.id, trade.status, next_run_at, reason=message, error_code=code,
            ):
                summary.rescheduled += 1
            return

        if disposition == Disposition.EXPIRE and trade.status == TradeStatus.SUBMITTED:
            await self._cancel(tick, summary, trade, message, code, target=TradeStatus.EXPIRED)
            return

        logger.error(f"Trade {trade.id}: {phase.value} failed terminally ({code}): {message}")
        await self._cancel(tick, summary, trade, message, code)

    async def _cancel(
        self,
        tick: _Tick,
        summary: TickSummary,
        trade: TradeRequest,
        reason: str,
        code: Optional[str],
        target: TradeStatus = TradeStatus.CANCELLED,
    ) -> bool:
        moved = await tick.trades.transition(
            trade.id,
            trade.status,
            target,
            reason=reason[:500],
            fields={"last_error": f"{code}: {reason}"[:1000] if code else reason[:1000]},
            details={"code": code},
        )
        if not moved:
            return False

        if target == TradeStatus.EXPIRED:
            summary.expired += 1
        else:
            summary.cancelled += 1
        await self._bus.publish(TradeCancelled(
            trade=trade,
            status=target.value,
            reason=reason,
            code=code,
        ))
        return True
