"""Session rows and their lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..util import parse_ts, utc_now


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionStatus.COMPLETED, SessionStatus.ABANDONED}


# Allowed status changes; anything else is a caller error
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.ABANDONED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.ABANDONED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.ABANDONED: frozenset(),
}


@dataclass(frozen=True)
class Session:
    """
    One orchestration session.

    Sessions are never physically deleted; ending one only changes status.
    snapshot_seq is the last_applied_seq of the most recent snapshot.
    """

    session_id: str
    user_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime | None = None
    updated_at: datetime | None = None
    intent: str = ""
    snapshot_seq: int = 0

    def with_status(self, status: SessionStatus) -> Session:
        if status not in SESSION_TRANSITIONS[self.status]:
            raise ValueError(f"Session {self.session_id} cannot go from {self.status.value} to {status.value}")
        return replace(self, status=status, updated_at=utc_now())

    def with_snapshot(self, seq: int) -> Session:
        return replace(self, snapshot_seq=seq, updated_at=utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "intent": self.intent,
            "snapshot_seq": self.snapshot_seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            status=SessionStatus(data.get("status", "active")),
            created_at=parse_ts(data.get("created_at")),
            updated_at=parse_ts(data.get("updated_at")),
            intent=data.get("intent", ""),
            snapshot_seq=int(data.get("snapshot_seq", 0)),
        )
