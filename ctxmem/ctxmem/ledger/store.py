"""
Append-only, per-session ledger store.

The ledger is the source of truth for everything that happened in a session.
Each session has its own JSON Lines file keyed by a gap-free sequence number
starting at 1. Lines are written once and never modified.

The promoted flag is the only mutable attribute of an entry. It lives in a
separate append-only promotion log and is folded into entries on read, so
marking an entry promoted is a single-row write that never rewrites the
ledger.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Iterator

from ..errors import InvalidEntry, SequenceConflict
from ..util import (
    append_jsonl,
    iter_jsonl,
    keyword_relevance,
    new_ulid,
    repair_tail,
    safe_segment,
    utc_now,
)
from .entry_types import ENTRY_TYPES, LedgerEntry, shape_errors

logger = logging.getLogger(__name__)

# Resync attempts before giving up on a ledger that keeps moving
_MAX_ALLOCATION_ATTEMPTS = 5


@dataclass(frozen=True)
class AppendResult:
    entry_id: str
    sequence_num: int

    def to_dict(self) -> dict[str, object]:
        return {"entry_id": self.entry_id, "sequence_num": self.sequence_num}


@dataclass
class _SessionLog:
    """Allocator and read cache for one session's ledger file."""

    lock: threading.RLock = field(default_factory=threading.RLock)
    loaded: bool = False
    next_seq: int = 1
    known_size: int = 0
    entries: list[LedgerEntry] = field(default_factory=list)
    promotions: dict[int, str] = field(default_factory=dict)  # sequence_num -> external_id


class LedgerStore:
    """
    Append-only ledger for session events.

    INVARIANT: This class NEVER modifies existing ledger lines.
    The only write operations are append() and mark_promoted(), and both
    append to their files.
    """

    def __init__(self, data_dir: Path):
        """
        Initialize the store.

        Args:
            data_dir: Root data directory (sessions live under data_dir/sessions)
        """
        self.data_dir = data_dir
        self.sessions_dir = data_dir / "sessions"
        self._logs: dict[str, _SessionLog] = {}
        self._logs_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Paths and per-session state
    # -------------------------------------------------------------------------

    def ledger_path(self, session_id: str) -> Path:
        return self.sessions_dir / safe_segment(session_id) / "ledger.jsonl"

    def promotions_path(self, session_id: str) -> Path:
        return self.sessions_dir / safe_segment(session_id) / "promotions.jsonl"

    def _log(self, session_id: str) -> _SessionLog:
        with self._logs_lock:
            log = self._logs.get(session_id)
            if log is None:
                log = _SessionLog()
                self._logs[session_id] = log
            return log

    def _ensure_loaded(self, session_id: str, log: _SessionLog) -> None:
        """Load entries and promotion marks on first use (caller holds log.lock)."""
        if not log.loaded:
            self._resync(session_id, log)

    def _read_entries(self, session_id: str) -> list[LedgerEntry]:
        return [LedgerEntry.from_dict(row) for row in iter_jsonl(self.ledger_path(session_id))]

    def _resync(self, session_id: str, log: _SessionLog) -> None:
        """Rebuild the cache and allocator from disk."""
        path = self.ledger_path(session_id)
        repair_tail(path)
        entries = self._read_entries(session_id)

        expected = 1
        for entry in entries:
            if entry.sequence_num != expected:
                logger.warning(
                    "Ledger %s: sequence %d found where %d was expected",
                    session_id,
                    entry.sequence_num,
                    expected,
                )
            expected = entry.sequence_num + 1

        promotions: dict[int, str] = {}
        for row in iter_jsonl(self.promotions_path(session_id)):
            promotions.setdefault(int(row["sequence_num"]), str(row["external_id"]))

        log.entries = entries
        log.promotions = promotions
        log.next_seq = entries[-1].sequence_num + 1 if entries else 1
        log.known_size = path.stat().st_size if path.exists() else 0
        log.loaded = True

    def _allocate(self, session_id: str, log: _SessionLog) -> int:
        """
        Return the next sequence number (caller holds log.lock).

        Raises SequenceConflict if the file changed since the last sync,
        meaning another writer appended behind this allocator's back.
        """
        path = self.ledger_path(session_id)
        size = path.stat().st_size if path.exists() else 0
        if size != log.known_size:
            on_disk = self._read_entries(session_id)
            found_next = on_disk[-1].sequence_num + 1 if on_disk else 1
            raise SequenceConflict(session_id, log.next_seq, found_next)
        return log.next_seq

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def validate(self, entry: LedgerEntry) -> Path:
        """
        Check an entry before it is written.

        Returns:
            Path of the ledger file the entry belongs in

        Raises:
            InvalidEntry: required fields missing, entry_type unknown, or
                options/refs/details malformed
        """
        missing = entry.missing_fields()
        if missing:
            raise InvalidEntry(f"ledger entry missing required fields: {', '.join(missing)}", missing=missing)
        if entry.entry_type not in ENTRY_TYPES:
            raise InvalidEntry(f"unknown entry_type: {entry.entry_type!r}")
        problems = shape_errors(entry)
        if problems:
            raise InvalidEntry(f"malformed {entry.entry_type} entry: {'; '.join(problems)}")
        try:
            return self.ledger_path(entry.session_id)
        except ValueError as e:
            raise InvalidEntry(str(e), missing=["session_id"]) from e

    def append(self, session_id: str, entry: LedgerEntry) -> AppendResult:
        """
        Append an entry to a session ledger.

        This is the ONLY way entries are written. Sequence numbers are
        assigned here, serialized per session, and are never reused.

        Args:
            session_id: Session the entry belongs to
            entry: Unassigned entry (see create_entry)

        Returns:
            AppendResult with the assigned entry_id and sequence_num

        Raises:
            InvalidEntry: required fields missing, entry_type unknown, or
                options/refs/details malformed; nothing is written
        """
        if entry.session_id and session_id and entry.session_id != session_id:
            raise InvalidEntry(
                f"entry belongs to session {entry.session_id!r}, not {session_id!r}",
                missing=["session_id"],
            )
        # Copied so the stored entry shares no mutable state with the caller
        entry = replace(
            entry,
            session_id=session_id or entry.session_id,
            options=copy.deepcopy(entry.options),
            details=copy.deepcopy(entry.details),
        )
        path = self.validate(entry)

        log = self._log(entry.session_id)
        with log.lock:
            self._ensure_loaded(entry.session_id, log)

            for attempt in range(_MAX_ALLOCATION_ATTEMPTS):
                try:
                    seq = self._allocate(entry.session_id, log)
                    break
                except SequenceConflict as e:
                    logger.debug("%s (attempt %d); resyncing", e, attempt + 1)
                    self._resync(entry.session_id, log)
            else:
                seq = self._allocate(entry.session_id, log)

            stored = replace(
                entry,
                sequence_num=seq,
                entry_id=new_ulid(),
                timestamp=entry.timestamp or utc_now(),
                promoted=False,
                external_id=None,
            )
            append_jsonl(path, [stored.to_dict()])

            log.entries.append(stored)
            log.next_seq = seq + 1
            log.known_size = path.stat().st_size

        logger.debug("Ledger %s: appended #%d %s", stored.session_id, seq, stored.entry_type)
        return AppendResult(entry_id=stored.entry_id, sequence_num=seq)

    def mark_promoted(self, session_id: str, sequence_num: int, external_id: str) -> bool:
        """
        Record that an entry was promoted to long-term memory.

        Single-row transactional update: appends one mark to the promotion
        log. Marking an already promoted entry is a no-op.

        Returns:
            True if the mark was written, False if the entry was already promoted

        Raises:
            KeyError: if no entry with that sequence number exists
        """
        log = self._log(session_id)
        with log.lock:
            self._ensure_loaded(session_id, log)
            if not 1 <= sequence_num < log.next_seq:
                raise KeyError(f"no ledger entry #{sequence_num} in session {session_id}")
            if sequence_num in log.promotions:
                return False

            entry = self._entry_at(log, sequence_num)
            append_jsonl(
                self.promotions_path(session_id),
                [
                    {
                        "sequence_num": sequence_num,
                        "entry_id": entry.entry_id if entry else "",
                        "external_id": external_id,
                        "promoted_at": utc_now().isoformat(),
                    }
                ],
            )
            log.promotions[sequence_num] = external_id
            return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _entry_at(log: _SessionLog, sequence_num: int) -> LedgerEntry | None:
        idx = sequence_num - 1
        if 0 <= idx < len(log.entries) and log.entries[idx].sequence_num == sequence_num:
            return log.entries[idx]
        for entry in log.entries:
            if entry.sequence_num == sequence_num:
                return entry
        return None

    @staticmethod
    def _detached(entry: LedgerEntry, external_id: str | None) -> LedgerEntry:
        """Copy of a cached entry that callers may change freely."""
        entry = replace(entry, options=copy.deepcopy(entry.options), details=copy.deepcopy(entry.details))
        return entry.with_promotion(external_id) if external_id is not None else entry

    @classmethod
    def _project(cls, log: _SessionLog, entry: LedgerEntry) -> LedgerEntry:
        return cls._detached(entry, log.promotions.get(entry.sequence_num))

    def query(
        self,
        session_id: str,
        *,
        entry_types: Iterable[str] | None = None,
        scopes: Iterable[str] | None = None,
        since_sequence: int | None = None,
        promoted: bool | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """
        Query a session ledger with composable filters.

        Args:
            session_id: Session to read
            entry_types: Only these entry types
            scopes: Only these scopes
            since_sequence: Only entries with sequence_num > since_sequence
            promoted: Filter on the promoted flag
            limit: Maximum number of entries

        Returns:
            Matching entries ordered by sequence_num ascending
        """
        if limit is not None and limit <= 0:
            return []
        type_filter = set(entry_types) if entry_types else None
        scope_filter = set(scopes) if scopes else None

        log = self._log(session_id)
        with log.lock:
            self._ensure_loaded(session_id, log)
            snapshot = list(log.entries)
            promotions = dict(log.promotions)

        results: list[LedgerEntry] = []
        for entry in snapshot:
            if since_sequence is not None and entry.sequence_num <= since_sequence:
                continue
            if type_filter is not None and entry.entry_type not in type_filter:
                continue
            if scope_filter is not None and entry.scope not in scope_filter:
                continue
            is_promoted = entry.sequence_num in promotions
            if promoted is not None and is_promoted != promoted:
                continue
            results.append(self._detached(entry, promotions.get(entry.sequence_num)))
            if limit is not None and len(results) >= limit:
                break
        return results

    def iter_entries(self, session_id: str) -> Iterator[LedgerEntry]:
        """Iterate over all entries of a session in sequence order."""
        yield from self.query(session_id)

    def get(self, session_id: str, sequence_num: int) -> LedgerEntry | None:
        log = self._log(session_id)
        with log.lock:
            self._ensure_loaded(session_id, log)
            entry = self._entry_at(log, sequence_num)
            return self._project(log, entry) if entry else None

    def last_sequence(self, session_id: str) -> int:
        """Highest sequence number written (0 for an empty ledger)."""
        log = self._log(session_id)
        with log.lock:
            self._ensure_loaded(session_id, log)
            return log.next_seq - 1

    def count(self, session_id: str) -> int:
        log = self._log(session_id)
        with log.lock:
            self._ensure_loaded(session_id, log)
            return len(log.entries)

    def sessions(self) -> list[str]:
        """List session ids that have a ledger file."""
        if not self.sessions_dir.exists():
            return []
        return sorted(p.parent.name for p in self.sessions_dir.glob("*/ledger.jsonl"))

    def recall(
        self,
        session_id: str,
        text: str,
        *,
        entry_types: Iterable[str] | None = None,
        limit: int = 5,
    ) -> list[tuple[LedgerEntry, float]]:
        """
        Explicit recall: find entries that explain why something was decided.

        Scores summary, reasoning, options and scope against the words of
        text. Ties favour the most recent entry.

        Returns:
            (entry, score) pairs, best first, score > 0 only
        """
        scored: list[tuple[LedgerEntry, float]] = []
        for entry in self.query(session_id, entry_types=entry_types):
            considered = entry.options.get("considered") if isinstance(entry.options, dict) else None
            if isinstance(considered, str):
                considered = [considered]
            haystack = " ".join(
                part
                for part in (
                    entry.summary,
                    entry.reasoning or "",
                    " ".join(str(o) for o in considered or []),
                    entry.scope,
                )
                if part
            )
            score = keyword_relevance(text, haystack)
            if score > 0:
                scored.append((entry, score))

        scored.sort(key=lambda pair: (-pair[1], -pair[0].sequence_num))
        return scored[:limit]
