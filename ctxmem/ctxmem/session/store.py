"""Session rows, one JSON file per session, rewritten atomically."""

from __future__ import annotations

import json
from pathlib import Path

from ..errors import UnknownSession
from ..util import atomic_write_json, safe_segment
from .models import Session


class SessionStore:
    def __init__(self, data_dir: Path):
        self.sessions_dir = data_dir / "sessions"

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / safe_segment(session_id) / "session.json"

    def save(self, session: Session) -> None:
        atomic_write_json(self.session_path(session.session_id), session.to_dict())

    def get(self, session_id: str) -> Session | None:
        path = self.session_path(session_id)
        if not path.exists():
            return None
        return Session.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def list_sessions(self, *, user_id: str | None = None) -> list[Session]:
        """Sessions with a session.json, oldest first."""
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for path in sorted(self.sessions_dir.glob("*/session.json")):
            session = Session.from_dict(json.loads(path.read_text(encoding="utf-8")))
            if user_id is None or session.user_id == user_id:
                sessions.append(session)
        # session ids are ULIDs, so id order is creation order
        return sorted(sessions, key=lambda s: s.session_id)
