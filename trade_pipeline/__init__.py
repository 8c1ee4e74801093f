"""
Trade Pipeline Package.

============================================================
PURPOSE
============================================================
Moves agent trade requests through quote, signature,
submission and fill across an on-chain batch-auction venue
and centralized exchanges.

CRITICAL PRINCIPLE:
    "The trade queue is the single source of truth."
    "Every status change is a compare-and-swap on the status observed."

============================================================
MODULES
============================================================
- types: Records, enums, exceptions
- config: Pipeline configuration
- errors: Error codes and dispositions
- retry: Explicit backoff and retry ceiling
- state_machine: Lifecycle graph
- models / repository: Persistence
- secrets: Scoped decryption of keys and credentials
- tokens: Token registry and entry price
- venues: On-chain and centralized venues
- allowance / signing: ERC-20 allowance, EIP-712 signatures
- risk_gate: Drawdown gate
- fill_monitor: Fill polling and settlement
- outcome_linker: Consultation outcome link
- events / notifications: Best-effort subscribers
- pipeline: Tick runner
- api / cli: Trigger endpoint and command line

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    TradeStatus,
    ExecutionVenue,
    AgentStatus,
    OrderSide,
    FillState,
    # Dataclasses
    TradeRequest,
    Agent,
    Consultation,
    ExchangeKey,
    Quote,
    Authorization,
    FillReport,
    SubmittedOrder,
    # Exceptions
    PipelineError,
    VenueError,
    InsufficientFundsError,
    InsufficientAllowanceError,
    CredentialError,
    AllowanceError,
    SigningError,
    InvalidTransitionError,
    SecretError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    SchedulerConfig,
    OnChainConfig,
    CentralizedConfig,
    SecretsConfig,
    NotificationConfig,
    RiskConfig,
    PipelineConfig,
)
from .retry import RetryPolicy

# ============================================================
# ERRORS / STATE MACHINE
# ============================================================
from .errors import (
    ErrorCategory,
    Disposition,
    Phase,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    classify_error,
)
from .state_machine import (
    VALID_TRANSITIONS,
    StateTransitionEvent,
    TransitionGuard,
)

# ============================================================
# PERSISTENCE
# ============================================================
from .models import (
    TradeQueueModel,
    TradeEventModel,
    AgentModel,
    ConsultationModel,
    ExchangeApiKeyModel,
)
from .repository import (
    TradeQueueRepository,
    AgentRepository,
    ConsultationRepository,
    ExchangeKeyRepository,
)

# ============================================================
# CORE COMPONENTS
# ============================================================
from .secrets import SecretStore, Plaintext
from .venues import Venue, OnChainVenue, CentralizedVenue, CowClient
from .allowance import AllowanceManager
from .signing import OrderSigner
from .risk_gate import RiskGate, GateDecision, GateResult
from .fill_monitor import FillMonitor
from .outcome_linker import OutcomeLinker, parse_confidence
from .events import EventBus, TradeFilled, TradeCancelled, AgentPaused
from .notifications import TradeAlertSubscriber, TelegramNotifier, LoggingNotifier
from .pipeline import TradePipeline, TickSummary, build_trade_request


# ============================================================
# VERSION
# ============================================================
__version__ = "1.0.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
    "TradeStatus",
    "ExecutionVenue",
    "AgentStatus",
    "OrderSide",
    "FillState",
    "TradeRequest",
    "Agent",
    "Consultation",
    "ExchangeKey",
    "Quote",
    "Authorization",
    "FillReport",
    "SubmittedOrder",
    "PipelineError",
    "VenueError",
    "InsufficientFundsError",
    "InsufficientAllowanceError",
    "CredentialError",
    "AllowanceError",
    "SigningError",
    "InvalidTransitionError",
    "SecretError",
    # Config
    "SchedulerConfig",
    "OnChainConfig",
    "CentralizedConfig",
    "SecretsConfig",
    "NotificationConfig",
    "RiskConfig",
    "PipelineConfig",
    "RetryPolicy",
    # Errors / state machine
    "ErrorCategory",
    "Disposition",
    "Phase",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "classify_error",
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "TransitionGuard",
    # Persistence
    "TradeQueueModel",
    "TradeEventModel",
    "AgentModel",
    "ConsultationModel",
    "ExchangeApiKeyModel",
    "TradeQueueRepository",
    "AgentRepository",
    "ConsultationRepository",
    "ExchangeKeyRepository",
    # Core
    "SecretStore",
    "Plaintext",
    "Venue",
    "OnChainVenue",
    "CentralizedVenue",
    "CowClient",
    "AllowanceManager",
    "OrderSigner",
    "RiskGate",
    "GateDecision",
    "GateResult",
    "FillMonitor",
    "OutcomeLinker",
    "parse_confidence",
    "EventBus",
    "TradeFilled",
    "TradeCancelled",
    "AgentPaused",
    "TradeAlertSubscriber",
    "TelegramNotifier",
    "LoggingNotifier",
    "TradePipeline",
    "TickSummary",
    "build_trade_request",
    "__version__",
]
