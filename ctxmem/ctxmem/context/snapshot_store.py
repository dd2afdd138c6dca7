"""
Snapshot store for working contexts.

Holds the last serialized working context per session for fast cold start.
A snapshot is only a shortcut: resume loads it and replays the ledger
entries written after its replay cursor. Without a snapshot the whole
ledger is replayed from sequence 0.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import SnapshotMissing
from ..ledger.store import LedgerStore
from ..util import atomic_write_json, safe_segment, utc_now
from .working import WorkingContext, replay

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1


@dataclass(frozen=True)
class SnapshotAck:
    session_id: str
    last_applied_seq: int
    saved_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "last_applied_seq": self.last_applied_seq,
            "saved_at": self.saved_at.isoformat(),
        }


class SnapshotStore:
    """One snapshot.json per session, replaced atomically on every save."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.sessions_dir = data_dir / "sessions"

    def snapshot_path(self, session_id: str) -> Path:
        return self.sessions_dir / safe_segment(session_id) / "snapshot.json"

    def save_snapshot(self, session_id: str, state: WorkingContext) -> SnapshotAck:
        if state.session_id != session_id:
            raise ValueError(f"state belongs to {state.session_id!r}, not {session_id!r}")
        saved_at = utc_now()
        atomic_write_json(
            self.snapshot_path(session_id),
            {
                "format": SNAPSHOT_FORMAT,
                "session_id": session_id,
                "saved_at": saved_at.isoformat(),
                "state": state.to_dict(),
            },
        )
        logger.debug("Snapshot saved for %s at seq %d", session_id, state.last_applied_seq)
        return SnapshotAck(session_id=session_id, last_applied_seq=state.last_applied_seq, saved_at=saved_at)

    def load_snapshot(self, session_id: str) -> WorkingContext | None:
        """
        Load the last snapshot.

        Returns None when there is no snapshot or it cannot be decoded; a
        corrupt snapshot is treated as absent because the ledger can always
        rebuild the state.
        """
        path = self.snapshot_path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if data.get("format") != SNAPSHOT_FORMAT:
                logger.warning("Snapshot for %s has unknown format %r; ignoring", session_id, data.get("format"))
                return None
            return WorkingContext.from_dict(data["state"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Snapshot for %s is unreadable (%s); ignoring", session_id, e)
            return None

    def require(self, session_id: str) -> WorkingContext:
        state = self.load_snapshot(session_id)
        if state is None:
            raise SnapshotMissing(session_id)
        return state

    def exists(self, session_id: str) -> bool:
        return self.snapshot_path(session_id).exists()


def rebuild_context(session_id: str, ledger: LedgerStore, snapshots: SnapshotStore) -> WorkingContext:
    """
    Bring a working context current from snapshot + ledger tail.

    Falls back to a full replay from sequence 0 when the snapshot is
    missing.
    """
    try:
        base = snapshots.require(session_id)
    except SnapshotMissing:
        logger.info("No snapshot for %s; replaying full ledger", session_id)
        return replay(session_id, ledger.query(session_id, since_sequence=0))

    tail = ledger.query(session_id, since_sequence=base.last_applied_seq)
    if tail:
        logger.info(
            "Resuming %s from snapshot at seq %d plus %d ledger entries",
            session_id,
            base.last_applied_seq,
            len(tail),
        )
    return replay(session_id, tail, base=base)
