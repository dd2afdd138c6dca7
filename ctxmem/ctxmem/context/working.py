"""
Working context projection from the ledger.

The working context is computed state: the compressed record the
orchestrator consults every turn. It is derived by folding ledger entries
through a fixed update table and can always be recomputed from the ledger,
so it is never the source of truth.

Decisions and constraints hold conclusions only. Reasoning stays in the
ledger and is reached through explicit recall.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from ..ledger.entry_types import EntryType, LedgerEntry

# Plan step states
STEP_PENDING = "pending"
STEP_IN_PROGRESS = "in_progress"
STEP_DONE = "done"
STEP_BLOCKED = "blocked"


@dataclass
class PlanStep:
    step_id: str
    description: str = ""
    status: str = STEP_PENDING
    outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "description": self.description,
            "status": self.status,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanStep:
        return cls(
            step_id=str(data["step_id"]),
            description=str(data.get("description", "")),
            status=str(data.get("status", STEP_PENDING)),
            outcome=data.get("outcome"),
        )


@dataclass
class ArtifactRef:
    artifact_id: str
    title: str = ""
    status: str = "draft"
    target: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "title": self.title,
            "status": self.status,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactRef:
        return cls(
            artifact_id=str(data["artifact_id"]),
            title=str(data.get("title", "")),
            status=str(data.get("status", "draft")),
            target=str(data.get("target", "none")),
        )


@dataclass
class WorkingContext:
    """
    Compressed per-session state carried turn to turn.

    last_applied_seq is the replay cursor: every ledger entry up to and
    including it has been folded in.
    """

    session_id: str
    intent_summary: str = ""
    plan: list[PlanStep] = field(default_factory=list)
    active_decisions: list[str] = field(default_factory=list)
    active_constraints: list[str] = field(default_factory=list)
    artifact_refs: list[ArtifactRef] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    prior_knowledge: list[str] = field(default_factory=list)
    turn_count: int = 0
    last_checkpoint_seq: int = 0
    last_applied_seq: int = 0

    def step(self, step_id: str) -> PlanStep | None:
        for s in self.plan:
            if s.step_id == step_id:
                return s
        return None

    def artifact_ref(self, artifact_id: str) -> ArtifactRef | None:
        for ref in self.artifact_refs:
            if ref.artifact_id == artifact_id:
                return ref
        return None

    def copy(self) -> WorkingContext:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "session_id": self.session_id,
            "intent_summary": self.intent_summary,
            "plan": [s.to_dict() for s in self.plan],
            "active_decisions": list(self.active_decisions),
            "active_constraints": list(self.active_constraints),
            "artifact_refs": [r.to_dict() for r in self.artifact_refs],
            "open_questions": list(self.open_questions),
            "prior_knowledge": list(self.prior_knowledge),
            "turn_count": self.turn_count,
            "last_checkpoint_seq": self.last_checkpoint_seq,
            "last_applied_seq": self.last_applied_seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkingContext:
        """Reconstruct from JSON dict."""
        return cls(
            session_id=str(data["session_id"]),
            intent_summary=str(data.get("intent_summary", "")),
            plan=[PlanStep.from_dict(s) for s in data.get("plan", [])],
            active_decisions=list(data.get("active_decisions", [])),
            active_constraints=list(data.get("active_constraints", [])),
            artifact_refs=[ArtifactRef.from_dict(r) for r in data.get("artifact_refs", [])],
            open_questions=list(data.get("open_questions", [])),
            prior_knowledge=list(data.get("prior_knowledge", [])),
            turn_count=int(data.get("turn_count", 0)),
            last_checkpoint_seq=int(data.get("last_checkpoint_seq", 0)),
            last_applied_seq=int(data.get("last_applied_seq", 0)),
        )


# -----------------------------------------------------------------------------
# Update table
# -----------------------------------------------------------------------------


def _append_unique(items: list[str], value: str) -> None:
    if value and value not in items:
        items.append(value)


def _remove(items: list[str], values: Iterable[str]) -> None:
    drop = set(values)
    items[:] = [v for v in items if v not in drop]


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _on_decision(ctx: WorkingContext, entry: LedgerEntry) -> None:
    _remove(ctx.active_decisions, _as_list(entry.details.get("replaces")))
    _append_unique(ctx.active_decisions, entry.summary)


def _on_constraint(ctx: WorkingContext, entry: LedgerEntry) -> None:
    _remove(ctx.active_constraints, _as_list(entry.details.get("replaces")))
    _append_unique(ctx.active_constraints, entry.summary)


def _on_plan_created(ctx: WorkingContext, entry: LedgerEntry) -> None:
    ctx.plan = [PlanStep.from_dict(s) for s in entry.details.get("steps", [])]


def _on_plan_updated(ctx: WorkingContext, entry: LedgerEntry) -> None:
    for patch in entry.details.get("steps", []):
        step_id = str(patch["step_id"])
        existing = ctx.step(step_id)
        if existing is None:
            ctx.plan.append(PlanStep.from_dict(patch))
            continue
        if "description" in patch:
            existing.description = str(patch["description"])
        if "status" in patch:
            existing.status = str(patch["status"])
        if "outcome" in patch:
            existing.outcome = patch["outcome"]


def _on_child_agent_result(ctx: WorkingContext, entry: LedgerEntry) -> None:
    step_id = entry.details.get("step_id")
    if step_id is None:
        return
    step = ctx.step(str(step_id))
    if step is None:
        return
    step.outcome = entry.summary
    if "status" in entry.details:
        step.status = str(entry.details["status"])


def _on_artifact_event(ctx: WorkingContext, entry: LedgerEntry) -> None:
    artifact_id = entry.details.get("artifact_id")
    if artifact_id is None and entry.refs.artifact_ids:
        artifact_id = entry.refs.artifact_ids[0]
    if artifact_id is None:
        return

    ref = ctx.artifact_ref(str(artifact_id))
    if ref is None:
        ref = ArtifactRef(artifact_id=str(artifact_id))
        ctx.artifact_refs.append(ref)
    if "title" in entry.details:
        ref.title = str(entry.details["title"])
    if "status" in entry.details:
        ref.status = str(entry.details["status"])
    if "target" in entry.details:
        ref.target = str(entry.details["target"])


def _on_user_clarification(ctx: WorkingContext, entry: LedgerEntry) -> None:
    if entry.details.get("intent"):
        ctx.intent_summary = str(entry.details["intent"])
    _remove(ctx.open_questions, _as_list(entry.details.get("answers")))
    for question in _as_list(entry.details.get("asks")):
        _append_unique(ctx.open_questions, question)


def _on_context_injection(ctx: WorkingContext, entry: LedgerEntry) -> None:
    if entry.details.get("intent"):
        ctx.intent_summary = str(entry.details["intent"])
    for fact in _as_list(entry.details.get("facts")):
        _append_unique(ctx.prior_knowledge, fact)


def _on_checkpoint(ctx: WorkingContext, entry: LedgerEntry) -> None:
    ctx.last_checkpoint_seq = entry.sequence_num


def _no_effect(ctx: WorkingContext, entry: LedgerEntry) -> None:
    pass


UPDATE_RULES: dict[str, Callable[[WorkingContext, LedgerEntry], None]] = {
    EntryType.DECISION.value: _on_decision,
    EntryType.CONSTRAINT.value: _on_constraint,
    EntryType.PLAN_CREATED.value: _on_plan_created,
    EntryType.PLAN_UPDATED.value: _on_plan_updated,
    EntryType.CHILD_AGENT_RESULT.value: _on_child_agent_result,
    EntryType.ARTIFACT_CREATED.value: _on_artifact_event,
    EntryType.ARTIFACT_UPDATED.value: _on_artifact_event,
    EntryType.USER_CLARIFICATION.value: _on_user_clarification,
    EntryType.CONTEXT_INJECTION.value: _on_context_injection,
    EntryType.RESEARCH_FINDING.value: _no_effect,
    EntryType.CHECKPOINT.value: _on_checkpoint,
}


def apply_entry(ctx: WorkingContext, entry: LedgerEntry) -> bool:
    """
    Apply a single ledger entry to the working context in place.

    Entries at or below the replay cursor are skipped, which makes replay
    over an overlapping range safe.

    Returns:
        True if the entry was applied
    """
    if entry.sequence_num <= ctx.last_applied_seq:
        return False
    if entry.session_id != ctx.session_id:
        raise ValueError(f"entry from session {entry.session_id!r} applied to {ctx.session_id!r}")

    rule = UPDATE_RULES.get(entry.entry_type)
    if rule is None:
        raise ValueError(f"no update rule for entry_type {entry.entry_type!r}")
    rule(ctx, entry)

    ctx.turn_count = max(ctx.turn_count, entry.turn)
    ctx.last_applied_seq = entry.sequence_num
    return True


def replay(
    session_id: str,
    entries: Iterable[LedgerEntry],
    *,
    base: WorkingContext | None = None,
) -> WorkingContext:
    """
    Compute the working context by folding entries over a base state.

    Entries must be in sequence order. The base is copied, never mutated.
    """
    ctx = base.copy() if base is not None else WorkingContext(session_id=session_id)
    for entry in entries:
        apply_entry(ctx, entry)
    return ctx
