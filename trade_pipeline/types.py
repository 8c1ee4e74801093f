"""
Trade Pipeline - Types.

============================================================
PURPOSE
============================================================
All type definitions for the trade execution pipeline.

CRITICAL PRINCIPLE:
    "The trade queue is the single source of truth."
    "Status only moves forward along the lifecycle graph."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal
import uuid


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================
# LIFECYCLE STATES
# ============================================================

class TradeStatus(Enum):
    """
    Trade request lifecycle state.

    State Machine:

    QUEUED ──► QUOTED ──► SIGNED ──► SUBMITTED ──► FILLED
       │          │          │           │
       ▼          ▼          ▼           ├──► EXPIRED
    CANCELLED  CANCELLED  CANCELLED      ▼
                                     CANCELLED

    FILLED, EXPIRED and CANCELLED are terminal.
    """

    QUEUED = "queued"
    """Waiting for a quote."""

    QUOTED = "quoted"
    """Quote snapshot persisted, awaiting signature."""

    SIGNED = "signed"
    """Authorization attached, awaiting submission."""

    SUBMITTED = "submitted"
    """Venue accepted the order, awaiting fill."""

    FILLED = "filled"
    """Order executed. Terminal."""

    EXPIRED = "expired"
    """Venue invalidated the order. Terminal."""

    CANCELLED = "cancelled"
    """Stopped by the pipeline. Terminal."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TradeStatus.FILLED,
    TradeStatus.EXPIRED,
    TradeStatus.CANCELLED,
})


class ExecutionVenue(Enum):
    """Where a trade executes. Frozen at creation."""

    ON_CHAIN = "on_chain"
    """Batch-auction order book (CoW Protocol on Base)."""

    CENTRALIZED = "centralized"
    """Centralized exchange REST API."""


class AgentStatus(Enum):
    """Agent lifecycle state. Agents are never deleted."""

    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class OrderSide(Enum):
    """Order side on a CEX pair."""

    BUY = "buy"
    SELL = "sell"


class FillState(Enum):
    """Venue-neutral order state reported by a status poll."""

    OPEN = "open"
    """Still working (new, partially filled, unknown)."""

    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# ============================================================
# DOMAIN RECORDS
# ============================================================

@dataclass
class TradeRequest:
    """
    The queue record.

    Amounts are integers in the token's smallest unit.
    """

    agent_id: str
    account_id: str
    sell_token: str
    buy_token: str
    sell_amount: int

    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    execution_venue: ExecutionVenue = ExecutionVenue.ON_CHAIN
    exchange_key_id: Optional[str] = None
    """Credential set reference. Only set for CENTRALIZED."""

    status: TradeStatus = TradeStatus.QUEUED
    recurring: bool = False
    next_run_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    """Transient failures seen so far."""

    quote_snapshot: Dict[str, Any] = field(default_factory=dict)
    """Fields needed to rebuild the exact instruction. Immutable once set."""

    signed_payload: Dict[str, Any] = field(default_factory=dict)
    """Signature, order id and venue metadata. Append-only."""

    execution_result: Dict[str, Any] = field(default_factory=dict)
    """Realized amounts and price. Only populated once filled."""

    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_centralized(self) -> bool:
        return self.execution_venue == ExecutionVenue.CENTRALIZED


@dataclass
class Agent:
    """Owning account of a trade and its risk/stat fields."""

    id: str
    account_id: str
    name: str = ""
    status: AgentStatus = AgentStatus.ACTIVE
    trading_enabled: bool = True

    wallet_address: Optional[str] = None
    """Owner wallet."""

    agent_wallet_address: Optional[str] = None
    """Dedicated agent wallet, preferred for routing."""

    encrypted_private_key: Optional[str] = None
    default_exchange_key_id: Optional[str] = None

    max_drawdown_pct: Optional[Decimal] = None
    pnl_pct: Decimal = Decimal("0")
    trade_count: int = 0
    last_trade_at: Optional[datetime] = None

    @property
    def routing_address(self) -> Optional[str]:
        return self.agent_wallet_address or self.wallet_address


@dataclass
class Consultation:
    """AI recommendation record, joined to a trade by trade_queue_id."""

    id: str
    agent_id: str
    trade_queue_id: Optional[str] = None
    ai_response: str = ""
    recommendation: Optional[str] = None
    entry_price_usd: Optional[Decimal] = None
    confidence_at_rec: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ExchangeKey:
    """Encrypted CEX credential row."""

    id: str
    account_id: str
    exchange: str
    encrypted_data: str
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"


# ============================================================
# VENUE EXCHANGE OBJECTS
# ============================================================

@dataclass
class Quote:
    """Result of a venue quote."""

    snapshot: Dict[str, Any]
    """Persisted verbatim as the record's quote snapshot."""

    buy_amount: Optional[int] = None
    fee_amount: Optional[int] = None
    valid_to: Optional[int] = None


@dataclass
class Authorization:
    """Venue-appropriate authorization for an order."""

    scheme: str
    """'eip712' for typed-data signatures, 'api-key' for per-request auth."""

    signature: Optional[str] = None
    owner: Optional[str] = None


@dataclass
class FillReport:
    """Normalized result of a status poll."""

    state: FillState
    raw_status: str = ""

    executed_sell_amount: Optional[int] = None
    executed_buy_amount: Optional[int] = None
    """On-chain executed amounts in smallest units."""

    filled_quantity: Optional[str] = None
    average_price: Optional[str] = None
    """CEX fill fields as the exchange reports them."""

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.raw_status or self.state.value}
        if self.executed_sell_amount is not None:
            data["executedSellAmount"] = str(self.executed_sell_amount)
        if self.executed_buy_amount is not None:
            data["executedBuyAmount"] = str(self.executed_buy_amount)
        if self.filled_quantity is not None:
            data["filledQty"] = self.filled_quantity
        if self.average_price is not None:
            data["avgPrice"] = self.average_price
        return data


@dataclass
class SubmittedOrder:
    """Venue acknowledgement of a submitted order."""

    order_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    fill: Optional[FillReport] = None
    """Set when the venue reports a state together with the ack."""

    @property
    def is_filled(self) -> bool:
        return self.fill is not None and self.fill.state == FillState.FILLED


# ============================================================
# EXCEPTIONS
# ============================================================

class PipelineError(Exception):
    """Base exception for the trade pipeline."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class VenueError(PipelineError):
    """A venue call failed."""

    def __init__(
        self,
        message: str,
        code: str = "VEN_UNKNOWN",
        is_retryable: bool = False,
        http_status: Optional[int] = None,
        venue: str = "",
    ):
        super().__init__(message, code)
        self.is_retryable = is_retryable
        self.http_status = http_status
        self.venue = venue

    def __str__(self) -> str:
        prefix = f"[{self.venue}] " if self.venue else ""
        return f"{prefix}{self.code}: {self.message}"


class InsufficientFundsError(PipelineError):
    """Funds will not materialize without user action."""

    def __init__(self, message: str, code: str = "VAL_INSUFFICIENT_BALANCE"):
        super().__init__(message, code)


class InsufficientAllowanceError(InsufficientFundsError):
    """Allowance still short after an approval was confirmed."""

    def __init__(self, message: str):
        super().__init__(message, "VAL_INSUFFICIENT_ALLOWANCE")


class CredentialError(PipelineError):
    """Credentials missing, revoked or undecryptable."""

    def __init__(self, message: str, code: str = "CFG_MISSING_CREDENTIALS"):
        super().__init__(message, code)


class AllowanceError(PipelineError):
    """Approval transaction reverted or RPC unreachable."""

    def __init__(self, message: str):
        super().__init__(message, "CHN_APPROVAL_FAILED")


class SigningError(PipelineError):
    """Typed-data signing failed."""

    def __init__(self, message: str):
        super().__init__(message, "SIG_FAILED")


class InvalidTransitionError(PipelineError):
    """Status change not allowed by the lifecycle graph."""

    def __init__(self, from_status: TradeStatus, to_status: TradeStatus, reason: str):
        super().__init__(
            f"Invalid transition {from_status.value} -> {to_status.value}: {reason}",
            "INT_INVALID_TRANSITION",
        )
        self.from_status = from_status
        self.to_status = to_status


class SecretError(PipelineError):
    """Secret store misconfigured or ciphertext malformed."""

    def __init__(self, message: str):
        super().__init__(message, "CFG_SECRET")
