"""
Trade Pipeline - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the trade queue and the records
it touches.

TABLES:
- trade_queue: Trade requests and their lifecycle phase
- trade_events: Status transitions and reschedules
- agents: Owning agents (risk limits, stats)
- agent_ai_consultations: AI recommendations
- exchange_api_keys: Encrypted CEX credentials

STORAGE RULES:
- Token amounts are decimal strings (uint256 does not fit
  portable numeric columns)
- Snapshots are JSON

============================================================
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

from .types import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# ============================================================
# TRADE QUEUE MODEL
# ============================================================

class TradeQueueModel(Base):
    """
    Persisted trade request.

    Status changes go through TradeQueueRepository.transition only.
    """

    __tablename__ = "trade_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Venue selection, frozen at creation
    execution_venue: Mapped[str] = mapped_column(String(16), nullable=False)
    exchange_key_id: Mapped[Optional[str]] = mapped_column(String(36))

    # Instruction
    sell_token: Mapped[str] = mapped_column(String(42), nullable=False)
    buy_token: Mapped[str] = mapped_column(String(42), nullable=False)
    sell_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    recurring: Mapped[bool] = mapped_column(Boolean, default=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    next_run_at: Mapped[datetime] = mapped_column(default=utcnow)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # Snapshots
    quote_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    signed_payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    execution_result: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        Index("ix_trade_queue_status_next_run", "status", "next_run_at"),
    )


class TradeEventModel(Base):
    """
    Audit trail row.

    from_status == to_status marks a reschedule.
    """

    __tablename__ = "trade_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trade_queue.id"), nullable=False, index=True
    )
    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# ============================================================
# AGENT MODELS
# ============================================================

class AgentModel(Base):
    """Trading agent. Never deleted, only paused or stopped."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), default="")

    status: Mapped[str] = mapped_column(String(16), default="active")
    trading_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    wallet_address: Mapped[Optional[str]] = mapped_column(String(42))
    agent_wallet_address: Mapped[Optional[str]] = mapped_column(String(42))
    agent_wallet_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    exchange_key_id: Mapped[Optional[str]] = mapped_column(String(36))

    # Risk
    max_drawdown_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4))
    pnl_pct: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0"))

    # Stats
    trade_count: Mapped[int] = mapped_column(Integer, default=0)
    last_trade_at: Mapped[Optional[datetime]] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)


class ConsultationModel(Base):
    """AI recommendation, optionally linked to the trade it queued."""

    __tablename__ = "agent_ai_consultations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    trade_queue_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    recommendation: Mapped[Optional[str]] = mapped_column(String(32))
    ai_response: Mapped[str] = mapped_column(Text, default="")

    # Outcome link, written once on fill
    entry_price_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(24, 8))
    confidence_at_rec: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class ExchangeApiKeyModel(Base):
    """Encrypted CEX credentials (iv:tag:ciphertext)."""

    __tablename__ = "exchange_api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    exchange: Mapped[str] = mapped_column(String(16), nullable=False)
    encrypted_data: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active")
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
