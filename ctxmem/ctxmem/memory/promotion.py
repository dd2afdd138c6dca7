"""
Promotion of durable ledger facts to long-term memory.

Promotion scans a session ledger for unpromoted entries of a promotable
type, formats each as a short text record, submits them in bounded batches
through the gateway, and marks only the successes as promoted. Failures stay
eligible, so rerunning promotion retries exactly what failed and nothing
that already succeeded.

Promotion works purely against the ledger's promoted flag. It never touches
a session's working context, so it can run in the background while turns
are processed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from ..errors import GatewayError, PromotionPartialFailure
from ..ledger.entry_types import EntryType, LedgerEntry
from ..ledger.store import LedgerStore
from .gateway import (
    ERROR_GATEWAY_UNAVAILABLE,
    PROJECT_FACTS,
    MemoryGateway,
    MemoryRecord,
    namespace_for,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

# Failure code for an entry that cannot be turned into a memory record
ERROR_INVALID_RECORD = "invalid_record"

# Always promoted. Research findings are promoted only when flagged durable.
PROMOTABLE_TYPES = frozenset({EntryType.DECISION.value, EntryType.CONSTRAINT.value})

# Session-scoped or re-derivable from the Artifact Store; never promoted
NEVER_PROMOTED = frozenset({
    EntryType.ARTIFACT_CREATED.value,
    EntryType.ARTIFACT_UPDATED.value,
    EntryType.PLAN_CREATED.value,
    EntryType.PLAN_UPDATED.value,
    EntryType.CHILD_AGENT_RESULT.value,
    EntryType.CHECKPOINT.value,
})


@dataclass
class PromotionResult:
    session_id: str
    promoted_count: int = 0
    failed_count: int = 0
    external_ids: list[str] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)  # sequence_num -> error code

    @property
    def partial(self) -> bool:
        return self.failed_count > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "promoted_count": self.promoted_count,
            "failed_count": self.failed_count,
            "external_ids": list(self.external_ids),
            "failures": {str(k): v for k, v in self.failures.items()},
        }


def format_record(entry: LedgerEntry, namespace: str) -> MemoryRecord:
    """Format an entry as a short text record: summary, reasoning, scope."""
    lines = [f"[{entry.entry_type}] {entry.summary}"]
    if entry.reasoning:
        lines.append(f"Why: {entry.reasoning}")
    chosen = entry.options.get("chosen") if isinstance(entry.options, dict) else None
    if chosen:
        lines.append(f"Chosen: {chosen}")
    lines.append(f"Scope: {entry.scope}")

    return MemoryRecord(
        namespace=namespace,
        text="\n".join(lines),
        source_key=f"{entry.session_id}#{entry.sequence_num}",
        metadata={
            "session_id": entry.session_id,
            "entry_id": entry.entry_id,
            "sequence_num": entry.sequence_num,
            "entry_type": entry.entry_type,
            "scope": entry.scope,
        },
    )


class PromotionEngine:
    def __init__(
        self,
        ledger: LedgerStore,
        gateway: MemoryGateway,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        promote_research_findings: bool = True,
        resolve_user: Callable[[str], str] | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.ledger = ledger
        self.gateway = gateway
        self.batch_size = batch_size
        self.promote_research_findings = promote_research_findings
        self.resolve_user = resolve_user or (lambda _session_id: "default")
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_lock:
            return self._locks.setdefault(session_id, threading.Lock())

    def is_promotable(self, entry: LedgerEntry) -> bool:
        if entry.entry_type in NEVER_PROMOTED:
            return False
        if entry.entry_type in PROMOTABLE_TYPES:
            return True
        if entry.entry_type == EntryType.RESEARCH_FINDING.value:
            return self.promote_research_findings and isinstance(entry.details, dict) and bool(entry.details.get("durable"))
        return False

    def eligible(self, session_id: str) -> list[LedgerEntry]:
        """Unpromoted, promotable entries in sequence order."""
        candidates = self.ledger.query(
            session_id,
            entry_types=PROMOTABLE_TYPES | {EntryType.RESEARCH_FINDING.value},
            promoted=False,
        )
        return [e for e in candidates if self.is_promotable(e)]

    def promote(self, session_id: str, *, strict: bool = False) -> PromotionResult:
        """
        Promote eligible entries of a session.

        Args:
            session_id: Session to scan
            strict: Raise PromotionPartialFailure when any record failed.
                Successes are committed either way.

        Returns:
            PromotionResult with counts, new external ids and per-entry failures
        """
        namespace = namespace_for(self.resolve_user(session_id), PROJECT_FACTS)
        result = PromotionResult(session_id=session_id)

        # Serialized per session so two runs never submit the same entry twice
        with self._session_lock(session_id):
            pending = self.eligible(session_id)
            for start in range(0, len(pending), self.batch_size):
                self._promote_batch(pending[start : start + self.batch_size], namespace, result)

        if result.promoted_count or result.failed_count:
            logger.info(
                "Promotion for %s: %d promoted, %d failed",
                session_id,
                result.promoted_count,
                result.failed_count,
            )
        if strict and result.partial:
            raise PromotionPartialFailure(result)
        return result

    def _promote_batch(self, batch: list[LedgerEntry], namespace: str, result: PromotionResult) -> None:
        records: list[MemoryRecord] = []
        formatted: list[LedgerEntry] = []
        for entry in batch:
            try:
                records.append(format_record(entry, namespace))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning("Entry #%d of %s cannot be promoted: %s", entry.sequence_num, entry.session_id, e)
                result.failed_count += 1
                result.failures[entry.sequence_num] = ERROR_INVALID_RECORD
                continue
            formatted.append(entry)
        if not records:
            return
        batch = formatted

        try:
            outcomes = self.gateway.store(records)
        except GatewayError as e:
            logger.warning("Promotion batch of %d failed: %s", len(batch), e)
            for entry in batch:
                result.failed_count += 1
                result.failures[entry.sequence_num] = ERROR_GATEWAY_UNAVAILABLE
            return

        if len(outcomes) != len(batch):
            logger.warning("Gateway returned %d outcomes for %d records", len(outcomes), len(batch))

        for idx, entry in enumerate(batch):
            outcome = outcomes[idx] if idx < len(outcomes) else None
            if outcome is None or not outcome.ok or not outcome.external_id:
                code = (outcome.error_code if outcome else None) or "missing_outcome"
                result.failed_count += 1
                result.failures[entry.sequence_num] = code
                logger.debug("Entry #%d of %s not promoted: %s", entry.sequence_num, entry.session_id, code)
                continue

            if self.ledger.mark_promoted(entry.session_id, entry.sequence_num, outcome.external_id):
                result.promoted_count += 1
                result.external_ids.append(outcome.external_id)
