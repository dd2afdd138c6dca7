"""
Sessions: the coordinator that drives turns, and the tool façade over it.
"""

from .coordinator import SessionCoordinator, TurnEvent, TurnResult
from .models import SESSION_TRANSITIONS, Session, SessionStatus
from .store import SessionStore
from .tools import MemoryTools

__all__ = [
    "SessionCoordinator",
    "TurnEvent",
    "TurnResult",
    "SESSION_TRANSITIONS",
    "Session",
    "SessionStatus",
    "SessionStore",
    "MemoryTools",
]
