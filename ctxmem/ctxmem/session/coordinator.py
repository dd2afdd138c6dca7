"""
Session coordinator.

Drives turns: every structural event becomes a ledger entry, which is then
folded into the resident working context. Every N turns (and at milestones,
pause and end) the context is checkpointed to the snapshot store. At
milestones and session end, eligible entries are promoted to long-term
memory. New sessions are seeded from long-term memory; resumed sessions are
rebuilt from snapshot + ledger tail.

Locks, per session:
    turn lock      one turn at a time; a second turn waits turn_wait_s
    context lock   ledger append + fold into the resident context

Promotion takes neither, so a slow gateway never blocks turns.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from ..artifact.events import ARTIFACT_CREATED, ArtifactEvent
from ..artifact.manager import ArtifactLifecycleManager
from ..artifact.models import Artifact
from ..artifact.store import ArtifactStore
from ..config import Config
from ..context.snapshot_store import SnapshotAck, SnapshotStore, rebuild_context
from ..context.working import WorkingContext, apply_entry
from ..errors import GatewayError, InvalidEntry, SessionNotActive, TurnInProgress, UnknownSession
from ..ledger.entry_types import EntryType, LedgerEntry, create_entry
from ..ledger.store import AppendResult, LedgerStore
from ..memory.gateway import PREFERENCES, PROJECT_FACTS, MemoryGateway, build_gateway, namespace_for
from ..memory.promotion import PromotionEngine, PromotionResult
from ..util import new_ulid, safe_segment, utc_now
from .models import Session, SessionStatus
from .store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SEED_TOP_K = 5


@dataclass(frozen=True)
class TurnEvent:
    """A structural event observed during a turn, to be written to the ledger."""

    entry_type: str
    scope: str
    summary: str
    source: str = "agent:orchestrator"
    reasoning: str | None = None
    options: dict[str, Any] | None = None
    refs: dict[str, Any] | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TurnEvent:
        return cls(
            entry_type=str(data.get("entry_type", "")),
            scope=str(data.get("scope", "")),
            summary=str(data.get("summary", "")),
            source=str(data.get("source", "agent:orchestrator")),
            reasoning=data.get("reasoning"),
            options=data.get("options"),
            refs=data.get("refs"),
            details=data.get("details"),
        )


@dataclass
class TurnResult:
    session_id: str
    turn: int
    appended: list[AppendResult] = field(default_factory=list)
    checkpointed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn": self.turn,
            "appended": [a.to_dict() for a in self.appended],
            "checkpointed": self.checkpointed,
        }


class SessionCoordinator:
    def __init__(
        self,
        config: Config,
        *,
        gateway: MemoryGateway | None = None,
        artifacts: ArtifactLifecycleManager | None = None,
        seed_top_k: int = DEFAULT_SEED_TOP_K,
    ):
        self.config = config
        data_dir = config.data_dir

        self.ledger = LedgerStore(data_dir)
        self.snapshots = SnapshotStore(data_dir)
        self.sessions = SessionStore(data_dir)
        self.gateway = gateway or build_gateway(config)
        self.promotion = PromotionEngine(
            self.ledger,
            self.gateway,
            batch_size=config.promotion.batch_size,
            promote_research_findings=config.promotion.promote_research_findings,
            resolve_user=self._user_for,
        )
        self.artifacts = artifacts or ArtifactLifecycleManager(
            ArtifactStore(data_dir),
            publish_timeout_s=config.artifacts.publish_timeout_s,
            revision_timeout_s=config.artifacts.revision_timeout_s,
        )
        self.artifacts.add_listener(self._on_artifact_event)
        self.seed_top_k = seed_top_k

        self._guard = threading.Lock()
        self._turn_locks: dict[str, threading.Lock] = {}
        self._ctx_locks: dict[str, threading.RLock] = {}
        self._contexts: dict[str, WorkingContext] = {}

    # -------------------------------------------------------------------------
    # Locks and resident state
    # -------------------------------------------------------------------------

    def _turn_lock(self, session_id: str) -> threading.Lock:
        with self._guard:
            return self._turn_locks.setdefault(session_id, threading.Lock())

    def _ctx_lock(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._ctx_locks.get(session_id)
            if lock is None:
                lock = self._ctx_locks[session_id] = threading.RLock()
            return lock

    def _user_for(self, session_id: str) -> str:
        return self.sessions.require(session_id).user_id

    def _resident(self, session_id: str) -> WorkingContext:
        """Resident context, rebuilt on first use and caught up with the ledger. Caller holds the context lock."""
        ctx = self._contexts.get(session_id)
        if ctx is None:
            ctx = rebuild_context(session_id, self.ledger, self.snapshots)
            self._contexts[session_id] = ctx
            return ctx
        for entry in self.ledger.query(session_id, since_sequence=ctx.last_applied_seq):
            apply_entry(ctx, entry)
        return ctx

    def _require_active(self, session_id: str) -> Session:
        session = self.sessions.require(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(session_id, session.status.value)
        return session

    def _set_status(self, session_id: str, status: SessionStatus) -> Session:
        with self._ctx_lock(session_id):
            session = self.sessions.require(session_id).with_status(status)
            self.sessions.save(session)
        logger.info("Session %s is now %s", session_id, status.value)
        return session

    # -------------------------------------------------------------------------
    # Ledger writes
    # -------------------------------------------------------------------------

    def write_entry(
        self,
        session_id: str,
        entry_type: str | EntryType,
        scope: str,
        summary: str,
        source: str,
        *,
        reasoning: str | None = None,
        options: dict[str, Any] | None = None,
        refs: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        turn: int | None = None,
    ) -> AppendResult:
        """
        Append a ledger entry and fold it into the resident context.

        Raises:
            InvalidEntry: required fields missing, unknown type, or an entry
                the working context cannot fold; nothing is written
            UnknownSession: no such session
        """
        self.sessions.require(session_id)
        with self._ctx_lock(session_id):
            ctx = self._resident(session_id)
            entry = create_entry(
                session_id, entry_type, scope, summary, source,
                reasoning=reasoning, options=options, refs=refs, details=details,
                turn=ctx.turn_count if turn is None else turn,
            )
            self.ledger.validate(entry)
            self._check_foldable(ctx, entry)
            result = self.ledger.append(session_id, entry)
            # Catch up: folds this entry and anything another writer appended
            self._resident(session_id)
        return result

    @staticmethod
    def _check_foldable(ctx: WorkingContext, entry: LedgerEntry) -> None:
        """Fold the entry into a scratch copy so a bad entry never reaches the ledger."""
        trial = replace(entry, sequence_num=ctx.last_applied_seq + 1)
        try:
            apply_entry(ctx.copy(), trial)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidEntry(f"{entry.entry_type} entry cannot be applied to the working context: {e}") from e

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def start_session(
        self,
        user_id: str,
        *,
        intent: str = "",
        seed_query: str | None = None,
    ) -> Session:
        """
        Create a session and seed its working context from long-term memory.

        Gateway failures are logged; the session then starts unseeded.
        """
        safe_segment(user_id)
        now = utc_now()
        session = Session(
            session_id=new_ulid(),
            user_id=user_id,
            status=SessionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            intent=intent,
        )
        self.sessions.save(session)
        with self._ctx_lock(session.session_id):
            self._contexts[session.session_id] = WorkingContext(session_id=session.session_id)

        facts = self._seed_facts(user_id, seed_query if seed_query is not None else intent)
        if facts or intent:
            self.write_entry(
                session.session_id,
                EntryType.CONTEXT_INJECTION,
                "session",
                f"Seeded {len(facts)} facts from long-term memory",
                "system",
                details={"facts": facts, "intent": intent},
                turn=0,
            )
        logger.info("Started session %s for %s (%d seeded facts)", session.session_id, user_id, len(facts))
        return session

    def _seed_facts(self, user_id: str, query: str) -> list[str]:
        facts: list[str] = []
        for concern in (PREFERENCES, PROJECT_FACTS):
            namespace = namespace_for(user_id, concern)
            try:
                hits = self.gateway.retrieve(namespace, query, self.seed_top_k)
            except GatewayError as e:
                logger.warning("Could not seed from %s: %s", namespace, e)
                continue
            for hit in hits:
                if hit.text not in facts:
                    facts.append(hit.text)
        return facts

    def resume_session(self, session_id: str) -> WorkingContext:
        """
        Rebuild the working context from snapshot + ledger tail.

        A paused session becomes active again.
        """
        session = self.sessions.require(session_id)
        if session.status.is_terminal:
            raise SessionNotActive(session_id, session.status.value)

        with self._ctx_lock(session_id):
            ctx = rebuild_context(session_id, self.ledger, self.snapshots)
            self._contexts[session_id] = ctx
        if session.status == SessionStatus.PAUSED:
            self._set_status(session_id, SessionStatus.ACTIVE)
        logger.info("Resumed %s at seq %d, turn %d", session_id, ctx.last_applied_seq, ctx.turn_count)
        return ctx.copy()

    def pause_session(self, session_id: str) -> Session:
        self._require_active(session_id)
        self.checkpoint(session_id, reason="pause")
        return self._set_status(session_id, SessionStatus.PAUSED)

    def end_session(self, session_id: str, *, strict: bool = False) -> PromotionResult:
        """Checkpoint, promote, and mark the session completed."""
        session = self.sessions.require(session_id)
        if session.status.is_terminal:
            raise SessionNotActive(session_id, session.status.value)
        self.checkpoint(session_id, reason="end")
        result = self.promotion.promote(session_id, strict=strict)
        self._set_status(session_id, SessionStatus.COMPLETED)
        self._evict(session_id)
        return result

    def abandon_session(self, session_id: str) -> Session:
        """Mark abandoned without promotion. The ledger is kept."""
        session = self.sessions.require(session_id)
        if session.status.is_terminal:
            raise SessionNotActive(session_id, session.status.value)
        self.checkpoint(session_id, reason="abandon")
        session = self._set_status(session_id, SessionStatus.ABANDONED)
        self._evict(session_id)
        return session

    def _evict(self, session_id: str) -> None:
        with self._ctx_lock(session_id):
            self._contexts.pop(session_id, None)

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    def process_turn(
        self,
        session_id: str,
        events: Iterable[TurnEvent | Mapping[str, Any]] = (),
    ) -> TurnResult:
        """
        Process one turn: bump the turn counter, write one entry per event,
        checkpoint every checkpoint_interval turns.

        Raises:
            TurnInProgress: another turn held the session past turn_wait_s
            SessionNotActive: session is paused or finished
            InvalidEntry: an event is malformed; entries for earlier events
                of the turn stay written
        """
        self._require_active(session_id)
        wait_s = self.config.turn_wait_s
        lock = self._turn_lock(session_id)
        if not lock.acquire(timeout=wait_s):
            raise TurnInProgress(session_id, wait_s)
        try:
            with self._ctx_lock(session_id):
                ctx = self._resident(session_id)
                ctx.turn_count += 1
                turn = ctx.turn_count

            result = TurnResult(session_id=session_id, turn=turn)
            for raw in events:
                event = raw if isinstance(raw, TurnEvent) else TurnEvent.from_dict(raw)
                result.appended.append(
                    self.write_entry(
                        session_id, event.entry_type, event.scope, event.summary, event.source,
                        reasoning=event.reasoning, options=event.options, refs=event.refs,
                        details=event.details, turn=turn,
                    )
                )

            if turn % self.config.checkpoint_interval == 0:
                self.checkpoint(session_id, reason="interval")
                result.checkpointed = True
            return result
        finally:
            lock.release()

    def checkpoint(self, session_id: str, *, reason: str = "manual", label: str | None = None) -> SnapshotAck:
        """Write a checkpoint entry and persist the snapshot that includes it."""
        details: dict[str, Any] = {"reason": reason}
        if label:
            details["label"] = label
        with self._ctx_lock(session_id):
            ctx = self._resident(session_id)
            summary = f"Checkpoint ({reason}) at turn {ctx.turn_count}"
            if label:
                summary = f"{summary}: {label}"
            self.write_entry(session_id, EntryType.CHECKPOINT, "session", summary, "system", details=details)
            ack = self.snapshots.save_snapshot(session_id, ctx)
            session = self.sessions.require(session_id)
            self.sessions.save(session.with_snapshot(ack.last_applied_seq))
        logger.debug("Checkpointed %s (%s) at seq %d", session_id, reason, ack.last_applied_seq)
        return ack

    def milestone(self, session_id: str, label: str) -> PromotionResult:
        """Checkpoint, then promote eligible entries."""
        self._require_active(session_id)
        self.checkpoint(session_id, reason="milestone", label=label)
        return self.promotion.promote(session_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def context(self, session_id: str) -> WorkingContext:
        """A copy of the resident working context (rebuilt if absent)."""
        self.sessions.require(session_id)
        with self._ctx_lock(session_id):
            return self._resident(session_id).copy()

    def save_snapshot(self, session_id: str, state: WorkingContext) -> SnapshotAck:
        self.sessions.require(session_id)
        with self._ctx_lock(session_id):
            ack = self.snapshots.save_snapshot(session_id, state)
            self.sessions.save(self.sessions.require(session_id).with_snapshot(ack.last_applied_seq))
        return ack

    def recall(self, session_id: str, text: str, *, limit: int = 5) -> list[tuple[LedgerEntry, float]]:
        """Explicit "why" lookup over the session ledger."""
        self.sessions.require(session_id)
        return self.ledger.recall(session_id, text, limit=limit)

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def create_artifact(
        self,
        session_id: str,
        artifact_type: str,
        title: str,
        content: str,
        *,
        publish_target: str = "none",
        author: str = "agent:orchestrator",
        submit: bool = True,
    ) -> Artifact:
        """Create an artifact for an active session and, by default, submit it for review."""
        self._require_active(session_id)
        artifact = self.artifacts.create_artifact(
            session_id, artifact_type, title, content, publish_target=publish_target, author=author,
        )
        if submit:
            artifact = self.artifacts.submit(artifact.artifact_id, actor=author)
        return artifact

    def record_artifact(self, session_id: str, artifact_id: str, *, note: str | None = None) -> AppendResult:
        """Write an artifact-updated entry reflecting the artifact's current state."""
        artifact = self.artifacts.get_artifact(artifact_id)
        if artifact.session_id != session_id:
            raise ValueError(f"Artifact {artifact_id} belongs to session {artifact.session_id}")
        return self.write_entry(
            session_id,
            EntryType.ARTIFACT_UPDATED,
            f"artifact:{artifact.artifact_type}",
            note or f"{artifact.title} is {artifact.status.value} (v{artifact.version})",
            "system",
            refs={"artifact_ids": [artifact_id]},
            details={"artifact_id": artifact_id, "status": artifact.status.value, "version": artifact.version},
        )

    def _on_artifact_event(self, artifact: Artifact, event: ArtifactEvent) -> None:
        """Mirror artifact lifecycle events into the owning session's ledger."""
        try:
            self.sessions.require(artifact.session_id)
        except UnknownSession:
            logger.warning("Artifact %s belongs to unknown session %s", artifact.artifact_id, artifact.session_id)
            return

        scope = f"artifact:{artifact.artifact_type}"
        refs = {"artifact_ids": [artifact.artifact_id]}
        if event.event_type == ARTIFACT_CREATED:
            self.write_entry(
                artifact.session_id, EntryType.ARTIFACT_CREATED, scope,
                f"Created {artifact.artifact_type} '{artifact.title}'",
                event.actor,
                refs=refs,
                details={
                    "artifact_id": artifact.artifact_id,
                    "title": artifact.title,
                    "status": artifact.status.value,
                    "target": artifact.publish_target,
                },
            )
            return

        payload = event.payload
        summary = f"'{artifact.title}' {payload.get('from')} -> {payload.get('to')} ({payload.get('action')})"
        if payload.get("error"):
            summary = f"{summary}: {payload['error']}"
        details: dict[str, Any] = {
            "artifact_id": artifact.artifact_id,
            "status": artifact.status.value,
            "version": artifact.version,
        }
        if artifact.external_url:
            details["external_url"] = artifact.external_url
        self.write_entry(artifact.session_id, EntryType.ARTIFACT_UPDATED, scope, summary, event.actor,
                         refs=refs, details=details)
