"""
Venues - Base Interface.

============================================================
PURPOSE
============================================================
The capability every execution venue provides. The pipeline
dispatches on this interface only; venues differ in which
steps are no-ops, not in how the pipeline branches.

STEPS:
- quote:       price / resolve the instruction
- authorize:   signature or per-request auth
- submit:      send the order, get a venue id
- poll_status: current fill state

============================================================
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..types import (
    TradeRequest,
    Agent,
    Quote,
    Authorization,
    SubmittedOrder,
    FillReport,
    ExecutionVenue,
)


class Venue(ABC):
    """
    Abstract execution venue.

    Implementations:
    - OnChainVenue: batch-auction order book, one phase per tick
    - CentralizedVenue: CEX market orders, quote to submit in one tick
    """

    venue: ExecutionVenue

    inline_execution: bool = False
    """Quote, authorize and submit run back to back in one tick."""

    label: str = ""

    @abstractmethod
    async def quote(self, trade: TradeRequest, agent: Agent) -> Quote:
        """
        Price the trade.

        Raises:
            PipelineError
        """
        pass

    @abstractmethod
    async def authorize(self, trade: TradeRequest, agent: Agent) -> Authorization:
        """
        Authorize the order described by trade.quote_snapshot.

        Raises:
            PipelineError
        """
        pass

    @abstractmethod
    async def submit(
        self,
        trade: TradeRequest,
        agent: Agent,
        authorization: Authorization,
    ) -> SubmittedOrder:
        """
        Send the order.

        Raises:
            PipelineError
        """
        pass

    @abstractmethod
    async def poll_status(self, trade: TradeRequest) -> FillReport:
        """
        Current state of a submitted order.

        Raises:
            PipelineError
        """
        pass

    def describe(self, trade: TradeRequest) -> str:
        """Human label for alerts."""
        return self.label

    def signed_fields(self, authorization: Authorization) -> Dict[str, Any]:
        """Fields appended to signed_payload when authorized."""
        fields: Dict[str, Any] = {"signingScheme": authorization.scheme}
        if authorization.signature:
            fields["signature"] = authorization.signature
        if authorization.owner:
            fields["owner"] = authorization.owner
        return fields

    async def close(self) -> None:
        """Release network resources."""
        pass
