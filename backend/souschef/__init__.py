"""
Sous Chef Core Module
Contains the conversation state machine and its collaborators
"""

from souschef.conversation import TurnDispatcher, TurnMode, Turn, classify_turn
from souschef.errors import SousChefError, GatewayError, RecipeSourceError, StoreError, TransportError
from souschef.session import Session, SessionManager

__all__ = [
    "TurnDispatcher",
    "TurnMode",
    "Turn",
    "classify_turn",
    "Session",
    "SessionManager",
    "SousChefError",
    "GatewayError",
    "RecipeSourceError",
    "StoreError",
    "TransportError",
]
