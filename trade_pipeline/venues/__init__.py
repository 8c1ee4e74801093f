"""
Venues Package.

Execution venues behind one quote / authorize / submit / poll interface.
"""

from .base import Venue
from .cow_client import CowClient
from .onchain import OnChainVenue
from .centralized import CentralizedVenue


__all__ = [
    "Venue",
    "CowClient",
    "OnChainVenue",
    "CentralizedVenue",
]
