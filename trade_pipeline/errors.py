"""
Trade Pipeline - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of every failure the pipeline can see into
one disposition the phases act on.

DISPOSITIONS:
1. RETRY  - Transient. Status unchanged, next_run_at pushed
2. CANCEL - Non-retriable business rejection. Terminal
3. EXPIRE - Venue invalidated the order. Terminal

Phases never test error strings themselves; they call
classify_error() and act on the result.

============================================================
"""

import asyncio
from enum import Enum
from typing import Dict, Optional, Set
from dataclasses import dataclass

import aiohttp

from .types import PipelineError, VenueError


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    VENUE = "VENUE"
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    CONFIGURATION = "CONFIGURATION"
    CHAIN = "CHAIN"
    RISK = "RISK"
    INTERNAL = "INTERNAL"


class Disposition(Enum):
    """What the pipeline does with a failed record."""

    RETRY = "RETRY"
    """Leave status, reschedule."""

    CANCEL = "CANCEL"
    """Terminal cancelled."""

    EXPIRE = "EXPIRE"
    """Terminal expired."""


class Phase(Enum):
    """Pipeline phase an error was raised in."""

    QUOTE = "quote"
    SIGN = "sign"
    SUBMIT = "submit"
    FILL = "fill"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    is_retryable: bool
    description: str


def _info(code: str, category: ErrorCategory, retryable: bool, description: str) -> ErrorCodeInfo:
    return ErrorCodeInfo(code, category, retryable, description)


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    info.code: info for info in [
        # ========== TRANSIENT ==========
        _info("NET_CONNECTION_FAILED", ErrorCategory.NETWORK, True,
              "Could not reach the venue"),
        _info("TMO_READ", ErrorCategory.TIMEOUT, True,
              "Venue did not answer in time"),
        _info("RTE_LIMIT", ErrorCategory.RATE_LIMIT, True,
              "Venue rate limit hit"),
        _info("VEN_SERVER_ERROR", ErrorCategory.VENUE, True,
              "Venue returned 5xx"),
        _info("VEN_BAD_RESPONSE", ErrorCategory.VENUE, True,
              "Venue response could not be parsed"),
        _info("VEN_QUOTE_FAILED", ErrorCategory.VENUE, True,
              "Quote request rejected; retried on the next schedule"),
        _info("CHN_APPROVAL_FAILED", ErrorCategory.CHAIN, True,
              "Approval transaction reverted or RPC unreachable"),
        _info("CHN_RPC_ERROR", ErrorCategory.CHAIN, True,
              "RPC call failed"),
        _info("SIG_FAILED", ErrorCategory.INTERNAL, True,
              "Typed-data signing failed"),
        _info("INT_UNEXPECTED", ErrorCategory.INTERNAL, True,
              "Unexpected error"),

        # ========== TERMINAL ==========
        _info("VEN_ORDER_REJECTED", ErrorCategory.VENUE, False,
              "Venue rejected the order"),
        _info("VEN_ORDER_EXPIRED", ErrorCategory.VENUE, False,
              "Venue reports the order as invalidated"),
        _info("VAL_INSUFFICIENT_BALANCE", ErrorCategory.VALIDATION, False,
              "Insufficient balance for order"),
        _info("VAL_INSUFFICIENT_ALLOWANCE", ErrorCategory.VALIDATION, False,
              "Allowance still insufficient after approval"),
        _info("VAL_UNSUPPORTED_PAIR", ErrorCategory.VALIDATION, False,
              "Token pair not tradeable on this venue"),
        _info("VAL_UNSUPPORTED_EXCHANGE", ErrorCategory.VALIDATION, False,
              "Exchange has no adapter"),
        _info("VAL_INVALID_ORDER", ErrorCategory.VALIDATION, False,
              "Order failed venue validation"),
        _info("VAL_QUOTE_EXPIRED", ErrorCategory.VALIDATION, False,
              "Quote validity window has passed"),
        _info("AUT_INVALID_KEY", ErrorCategory.AUTHENTICATION, False,
              "API key invalid or lacks permission"),
        _info("CFG_MISSING_CREDENTIALS", ErrorCategory.CONFIGURATION, False,
              "Exchange key missing or revoked"),
        _info("CFG_MISSING_WALLET", ErrorCategory.CONFIGURATION, False,
              "Agent has no signing key or routing address"),
        _info("CFG_SECRET", ErrorCategory.CONFIGURATION, False,
              "Secret store cannot decrypt"),
        _info("RSK_DRAWDOWN_BREACH", ErrorCategory.RISK, False,
              "Agent exceeded its drawdown limit"),
        _info("RET_BUDGET_EXHAUSTED", ErrorCategory.INTERNAL, False,
              "Retry budget exhausted"),
        _info("INT_INVALID_TRANSITION", ErrorCategory.INTERNAL, False,
              "Status change not allowed by the lifecycle graph"),
    ]
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """Get error info for a code, unknown codes are treated as terminal."""
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

# Signing-phase codes whose message may carry an insufficient-funds revert
TEXT_CLASSIFIED_CODES: Set[str] = {
    "CHN_APPROVAL_FAILED",
    "CHN_RPC_ERROR",
    "SIG_FAILED",
    "INT_UNEXPECTED",
}


# ============================================================
# CLASSIFICATION
# ============================================================

def error_code(exc: BaseException) -> str:
    """Stable code for an exception, for logs and the audit trail."""
    if isinstance(exc, PipelineError) and exc.code:
        return exc.code
    if isinstance(exc, asyncio.TimeoutError):
        return "TMO_READ"
    if isinstance(exc, aiohttp.ClientError):
        return "NET_CONNECTION_FAILED"
    return "INT_UNEXPECTED"


def classify_error(exc: BaseException, phase: Optional[Phase] = None) -> Disposition:
    """
    Map an exception to a disposition.

    Args:
        exc: The exception raised while advancing a record
        phase: Phase the exception was raised in

    Returns:
        Disposition
    """
    # Fill polling never ends a trade on a transport or lookup error;
    # only a venue-reported state can.
    if phase == Phase.FILL:
        return Disposition.RETRY

    code = error_code(exc)

    if code == "VEN_ORDER_EXPIRED":
        return Disposition.EXPIRE

    if isinstance(exc, VenueError) and code not in ERROR_CODES:
        return Disposition.RETRY if exc.is_retryable else Disposition.CANCEL

    info = get_error_info(code)
    if not info.is_retryable:
        return Disposition.CANCEL

    # Chain and signer errors surface insufficient funds only in their text
    if phase == Phase.SIGN and code in TEXT_CLASSIFIED_CODES and "insufficient" in str(exc).lower():
        return Disposition.CANCEL

    return Disposition.RETRY
