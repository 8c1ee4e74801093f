"""
Trade Pipeline - Repository.

============================================================
PURPOSE
============================================================
Database operations for the trade queue and the records
the pipeline reads and updates.

RESPONSIBILITIES:
- Select bounded, due batches per status
- Compare-and-swap status transitions
- Reschedule after transient failures
- Agent pause and stats, consultation outcome link

CRITICAL REQUIREMENTS:
- Every status write is UPDATE ... WHERE id AND status = expected
- A write that matches no row is a no-op, never an error
- Snapshots are append-only
- Every change lands in trade_events in the same transaction

============================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .types import (
    TradeRequest,
    TradeStatus,
    ExecutionVenue,
    Agent,
    AgentStatus,
    Consultation,
    ExchangeKey,
    utcnow,
)
from .state_machine import TransitionGuard, StateTransitionEvent
from .models import (
    TradeQueueModel,
    TradeEventModel,
    AgentModel,
    ConsultationModel,
    ExchangeApiKeyModel,
)


logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = ("quote_snapshot", "signed_payload", "execution_result")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def merge_append(existing: Optional[Dict[str, Any]], additions: Dict[str, Any]) -> Dict[str, Any]:
    """
    Append keys to a snapshot.

    Raises:
        ValueError if an addition would overwrite a different value
    """
    merged = dict(existing or {})
    for key, value in additions.items():
        if key in merged and merged[key] != value:
            raise ValueError(f"Snapshot field '{key}' is already set")
        merged[key] = value
    return merged


# ============================================================
# TRADE QUEUE REPOSITORY
# ============================================================

class TradeQueueRepository:
    """
    Repository for trade queue persistence.

    The store is the concurrency boundary: overlapping ticks
    are safe because every transition is conditional on the
    status the caller observed.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    # --------------------------------------------------------
    # CREATE / READ
    # --------------------------------------------------------

    async def create(self, trade: TradeRequest) -> TradeRequest:
        """Persist a new trade request."""
        model = TradeQueueModel(
            id=trade.id,
            agent_id=trade.agent_id,
            account_id=trade.account_id,
            execution_venue=trade.execution_venue.value,
            exchange_key_id=trade.exchange_key_id,
            sell_token=trade.sell_token,
            buy_token=trade.buy_token,
            sell_amount=str(trade.sell_amount),
            recurring=trade.recurring,
            status=trade.status.value,
            next_run_at=trade.next_run_at,
            attempts=trade.attempts,
            quote_snapshot=dict(trade.quote_snapshot),
            signed_payload=dict(trade.signed_payload),
            execution_result=dict(trade.execution_result),
            created_at=trade.created_at,
            updated_at=trade.updated_at,
        )
        self._session.add(model)
        await self._session.commit()
        logger.info(
            f"Enqueued trade {trade.id} for agent {trade.agent_id} "
            f"({trade.execution_venue.value})"
        )
        return trade

    async def get(self, trade_id: str) -> Optional[TradeRequest]:
        """Fresh read of one trade."""
        stmt = (
            select(TradeQueueModel)
            .where(TradeQueueModel.id == trade_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._model_to_trade(model) if model else None

    async def select_batch(
        self,
        status: TradeStatus,
        limit: int,
        now: Optional[datetime] = None,
        due_only: bool = True,
    ) -> List[TradeRequest]:
        """
        Oldest-eligible-first batch of trades in one status.

        Args:
            status: Status to select
            limit: Batch size
            now: Reference time for next_run_at gating
            due_only: Skip records whose next_run_at is in the future
        """
        stmt = select(TradeQueueModel).where(TradeQueueModel.status == status.value)
        if due_only:
            stmt = stmt.where(TradeQueueModel.next_run_at <= (now or utcnow()))
        stmt = (
            stmt.order_by(TradeQueueModel.next_run_at, TradeQueueModel.created_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [self._model_to_trade(m) for m in result.scalars().all()]

    async def get_events(self, trade_id: str) -> List[StateTransitionEvent]:
        """Audit trail for one trade, oldest first."""
        stmt = (
            select(TradeEventModel)
            .where(TradeEventModel.trade_id == trade_id)
            .order_by(TradeEventModel.id)
        )
        result = await self._session.execute(stmt)
        return [
            StateTransitionEvent(
                trade_id=m.trade_id,
                from_status=TradeStatus(m.from_status),
                to_status=TradeStatus(m.to_status),
                reason=m.reason,
                details=m.details or {},
                timestamp=_as_utc(m.created_at),
            )
            for m in result.scalars().all()
        ]

    # --------------------------------------------------------
    # COMPARE-AND-SWAP WRITES
    # --------------------------------------------------------

    async def transition(
        self,
        trade_id: str,
        expected: TradeStatus,
        target: TradeStatus,
        reason: str = "",
        via: Sequence[TradeStatus] = (),
        fields: Optional[Dict[str, Any]] = None,
        append: Optional[Dict[str, Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a trade from expected to target in one conditional write.

        Args:
            trade_id: Trade to move
            expected: Status the caller observed
            target: Final status
            reason: Audit reason
            via: Intermediate statuses walked in the same write
            fields: Plain column values to set
            append: Snapshot column -> keys to append
            details: Extra audit details

        Returns:
            True if this call moved the trade, False if another
            writer got there first (status no longer matches)

        Raises:
            InvalidTransitionError if any edge of the walk is not allowed
            ValueError if an append would overwrite a snapshot field
        """
        path = [expected, *via, target]
        TransitionGuard.validate_path(path)

        current = await self._read_snapshots(trade_id)
        if current is None or current["status"] != expected.value:
            logger.debug(
                f"Trade {trade_id}: skip {expected.value} -> {target.value}, "
                f"status is {current['status'] if current else 'missing'}"
            )
            return False

        now = utcnow()
        values: Dict[str, Any] = dict(fields or {})

        if values.get("quote_snapshot") and current["quote_snapshot"]:
            raise ValueError("Quote snapshot is immutable once set")

        for column, additions in (append or {}).items():
            if column not in SNAPSHOT_COLUMNS:
                raise ValueError(f"Not a snapshot column: {column}")
            values[column] = merge_append(current[column], additions)

        values.update(status=target.value, updated_at=now)

        stmt = (
            update(TradeQueueModel)
            .where(
                TradeQueueModel.id == trade_id,
                TradeQueueModel.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            await self._session.rollback()
            logger.info(f"Trade {trade_id}: lost race on {expected.value} -> {target.value}")
            return False

        for from_status, to_status in zip(path, path[1:]):
            self._session.add(TradeEventModel(
                trade_id=trade_id,
                from_status=from_status.value,
                to_status=to_status.value,
                reason=reason,
                details=details or {},
                created_at=now,
            ))

        await self._session.commit()
        logger.info(
            f"Trade {trade_id}: {' -> '.join(s.value for s in path)}"
            + (f" ({reason})" if reason else "")
        )
        return True

    async def reschedule(
        self,
        trade_id: str,
        expected: TradeStatus,
        next_run_at: datetime,
        reason: str = "",
        error_code: Optional[str] = None,
    ) -> bool:
        """
        Push next_run_at forward without touching status.

        Returns:
            True if the trade was still in the expected status
        """
        stmt = (
            update(TradeQueueModel)
            .where(
                TradeQueueModel.id == trade_id,
                TradeQueueModel.status == expected.value,
            )
            .values(
                next_run_at=next_run_at,
                attempts=TradeQueueModel.attempts + 1,
                last_error=reason[:1000] if reason else None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            await self._session.rollback()
            return False

        self._session.add(TradeEventModel(
            trade_id=trade_id,
            from_status=expected.value,
            to_status=expected.value,
            reason=f"rescheduled: {reason}" if reason else "rescheduled",
            details={"next_run_at": next_run_at.isoformat(), "code": error_code},
        ))
        await self._session.commit()
        logger.info(f"Trade {trade_id}: rescheduled in {expected.value} until {next_run_at.isoformat()}")
        return True

    async def claim(
        self,
        trade_id: str,
        expected: TradeStatus,
        now: datetime,
        until: datetime,
    ) -> bool:
        """
        Take a due trade for one venue call.

        Pushes next_run_at to until, conditional on the trade
        still being in expected and due at now. A second tick
        that selected the same record no longer matches. No
        audit row: status does not change.

        Returns:
            True if this caller holds the claim
        """
        stmt = (
            update(TradeQueueModel)
            .where(
                TradeQueueModel.id == trade_id,
                TradeQueueModel.status == expected.value,
                TradeQueueModel.next_run_at <= now,
            )
            .values(next_run_at=until, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)

        if result.rowcount != 1:
            await self._session.rollback()
            logger.info(f"Trade {trade_id}: already claimed in {expected.value}")
            return False

        await self._session.commit()
        logger.debug(f"Trade {trade_id}: claimed in {expected.value} until {until.isoformat()}")
        return True

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _read_snapshots(self, trade_id: str) -> Optional[Dict[str, Any]]:
        stmt = select(
            TradeQueueModel.status,
            TradeQueueModel.quote_snapshot,
            TradeQueueModel.signed_payload,
            TradeQueueModel.execution_result,
        ).where(TradeQueueModel.id == trade_id)
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return {
            "status": row.status,
            "quote_snapshot": row.quote_snapshot or {},
            "signed_payload": row.signed_payload or {},
            "execution_result": row.execution_result or {},
        }

    def _model_to_trade(self, model: TradeQueueModel) -> TradeRequest:
        return TradeRequest(
            id=model.id,
            agent_id=model.agent_id,
            account_id=model.account_id,
            execution_venue=ExecutionVenue(model.execution_venue),
            exchange_key_id=model.exchange_key_id,
            sell_token=model.sell_token,
            buy_token=model.buy_token,
            sell_amount=int(model.sell_amount),
            recurring=bool(model.recurring),
            status=TradeStatus(model.status),
            next_run_at=_as_utc(model.next_run_at),
            attempts=model.attempts or 0,
            quote_snapshot=dict(model.quote_snapshot or {}),
            signed_payload=dict(model.signed_payload or {}),
            execution_result=dict(model.execution_result or {}),
            last_error=model.last_error,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


# ============================================================
# AGENT REPOSITORY
# ============================================================

class AgentRepository:
    """Agents as seen by the pipeline: risk fields and stats."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, agent: Agent) -> Agent:
        self._session.add(AgentModel(
            id=agent.id,
            account_id=agent.account_id,
            name=agent.name,
            status=agent.status.value,
            trading_enabled=agent.trading_enabled,
            wallet_address=agent.wallet_address,
            agent_wallet_address=agent.agent_wallet_address,
            agent_wallet_encrypted=agent.encrypted_private_key,
            exchange_key_id=agent.default_exchange_key_id,
            max_drawdown_pct=agent.max_drawdown_pct,
            pnl_pct=agent.pnl_pct,
            trade_count=agent.trade_count,
            last_trade_at=agent.last_trade_at,
        ))
        await self._session.commit()
        return agent

    async def get(self, agent_id: str) -> Optional[Agent]:
        stmt = (
            select(AgentModel)
            .where(AgentModel.id == agent_id)
            .execution_options(populate_existing=True)
        )
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        if model is None:
            return None
        return Agent(
            id=model.id,
            account_id=model.account_id,
            name=model.name or "",
            status=AgentStatus(model.status),
            trading_enabled=bool(model.trading_enabled),
            wallet_address=model.wallet_address,
            agent_wallet_address=model.agent_wallet_address,
            encrypted_private_key=model.agent_wallet_encrypted,
            default_exchange_key_id=model.exchange_key_id,
            max_drawdown_pct=(
                Decimal(str(model.max_drawdown_pct))
                if model.max_drawdown_pct is not None else None
            ),
            pnl_pct=Decimal(str(model.pnl_pct or 0)),
            trade_count=model.trade_count or 0,
            last_trade_at=_as_utc(model.last_trade_at),
        )

    async def pause(self, agent_id: str) -> bool:
        """
        Pause an active agent and disable trading.

        Returns:
            True if this call paused it
        """
        stmt = (
            update(AgentModel)
            .where(
                AgentModel.id == agent_id,
                AgentModel.status == AgentStatus.ACTIVE.value,
            )
            .values(
                status=AgentStatus.PAUSED.value,
                trading_enabled=False,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount == 1

    async def record_trade(self, agent_id: str, at: Optional[datetime] = None) -> None:
        """Increment trade count and stamp last trade time."""
        at = at or utcnow()
        stmt = (
            update(AgentModel)
            .where(AgentModel.id == agent_id)
            .values(
                trade_count=AgentModel.trade_count + 1,
                last_trade_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.commit()


# ============================================================
# CONSULTATION REPOSITORY
# ============================================================

class ConsultationRepository:
    """AI consultations. The pipeline only writes the outcome link."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, consultation: Consultation) -> Consultation:
        self._session.add(ConsultationModel(
            id=consultation.id,
            agent_id=consultation.agent_id,
            trade_queue_id=consultation.trade_queue_id,
            recommendation=consultation.recommendation,
            ai_response=consultation.ai_response,
            created_at=consultation.created_at,
        ))
        await self._session.commit()
        return consultation

    async def get(self, consultation_id: str) -> Optional[Consultation]:
        stmt = (
            select(ConsultationModel)
            .where(ConsultationModel.id == consultation_id)
            .execution_options(populate_existing=True)
        )
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return self._model_to_consultation(model) if model else None

    async def find_by_trade(self, trade_id: str) -> Optional[Consultation]:
        stmt = (
            select(ConsultationModel)
            .where(ConsultationModel.trade_queue_id == trade_id)
            .order_by(ConsultationModel.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        return self._model_to_consultation(model) if model else None

    async def attach_outcome(
        self,
        consultation_id: str,
        entry_price_usd: Decimal,
        confidence: int,
    ) -> bool:
        """
        Write entry price and confidence. Only the first write lands.
        """
        stmt = (
            update(ConsultationModel)
            .where(
                ConsultationModel.id == consultation_id,
                ConsultationModel.entry_price_usd.is_(None),
            )
            .values(entry_price_usd=entry_price_usd, confidence_at_rec=confidence)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount == 1

    def _model_to_consultation(self, model: ConsultationModel) -> Consultation:
        return Consultation(
            id=model.id,
            agent_id=model.agent_id,
            trade_queue_id=model.trade_queue_id,
            ai_response=model.ai_response or "",
            recommendation=model.recommendation,
            entry_price_usd=(
                Decimal(str(model.entry_price_usd))
                if model.entry_price_usd is not None else None
            ),
            confidence_at_rec=model.confidence_at_rec,
            created_at=_as_utc(model.created_at),
        )


# ============================================================
# EXCHANGE KEY REPOSITORY
# ============================================================

class ExchangeKeyRepository:
    """Encrypted CEX credential rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, key: ExchangeKey) -> ExchangeKey:
        self._session.add(ExchangeApiKeyModel(
            id=key.id,
            account_id=key.account_id,
            exchange=key.exchange,
            encrypted_data=key.encrypted_data,
            status=key.status,
        ))
        await self._session.commit()
        return key

    async def get_active(self, key_id: str) -> Optional[ExchangeKey]:
        """Active key by id; revoked or missing keys return None."""
        return await self.get(key_id, active_only=True)

    async def get(self, key_id: str, active_only: bool = False) -> Optional[ExchangeKey]:
        """
        Key by id.

        Status polls of already-placed orders use any status; a
        key revoked after placement can still read its order.
        """
        stmt = select(ExchangeApiKeyModel).where(ExchangeApiKeyModel.id == key_id)
        if active_only:
            stmt = stmt.where(ExchangeApiKeyModel.status == "active")
        model = (await self._session.execute(stmt)).scalar_one_or_none()
        if model is None:
            return None
        return ExchangeKey(
            id=model.id,
            account_id=model.account_id,
            exchange=model.exchange,
            encrypted_data=model.encrypted_data,
            status=model.status,
        )
