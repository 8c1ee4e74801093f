"""
Trade Pipeline - Risk Gate.

============================================================
PURPOSE
============================================================
Check run on a quoted trade before it is authorized, for
both venues.

DECISIONS:
- PROCEED: authorize the trade
- SKIP:    agent missing or not trading, leave the record
- BLOCK:   drawdown breached, pause the agent, cancel the trade

The breach check runs before the trading-enabled check so a
breached agent is paused even if it was already disabled.

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .config import RiskConfig
from .types import Agent, AgentStatus


logger = logging.getLogger(__name__)


class GateDecision(str, Enum):
    """Risk gate outcome."""

    PROCEED = "PROCEED"
    SKIP = "SKIP"
    BLOCK = "BLOCK"


@dataclass
class GateResult:
    """Outcome of one evaluation."""

    decision: GateDecision
    reason: str = ""
    limit_pct: Optional[Decimal] = None
    pnl_pct: Optional[Decimal] = None

    @property
    def proceed(self) -> bool:
        return self.decision == GateDecision.PROCEED


class RiskGate:
    """Drawdown and trading-enabled gate."""

    def __init__(self, config: Optional[RiskConfig] = None):
        self._config = config or RiskConfig()

    def limit_for(self, agent: Agent) -> Decimal:
        if agent.max_drawdown_pct is not None:
            return Decimal(agent.max_drawdown_pct)
        return self._config.default_max_drawdown_pct

    def is_breached(self, agent: Agent) -> bool:
        """|pnl| strictly beyond the limit."""
        return abs(Decimal(agent.pnl_pct)) > self.limit_for(agent)

    def evaluate(self, agent: Optional[Agent]) -> GateResult:
        if agent is None:
            return GateResult(GateDecision.SKIP, "agent not found")

        limit = self.limit_for(agent)
        if self.is_breached(agent):
            logger.warning(
                f"Agent {agent.id} drawdown breach: pnl {agent.pnl_pct}% beyond {limit}%"
            )
            return GateResult(
                GateDecision.BLOCK,
                f"Max drawdown exceeded ({agent.pnl_pct}% vs limit {limit}%)",
                limit_pct=limit,
                pnl_pct=agent.pnl_pct,
            )

        if agent.status != AgentStatus.ACTIVE or not agent.trading_enabled:
            return GateResult(GateDecision.SKIP, f"agent {agent.status.value}, trading disabled")

        return GateResult(GateDecision.PROCEED, limit_pct=limit, pnl_pct=agent.pnl_pct)
