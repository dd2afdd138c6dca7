"""
Ledger entry types.

Each line in a session's ledger.jsonl is one LedgerEntry. Entries are written
once and never modified; the promoted flag is folded in from a separate
promotion log at read time.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import InvalidEntry


class EntryType(str, Enum):
    """Structural events recorded in the ledger."""

    DECISION = "decision"
    CONSTRAINT = "constraint"
    ARTIFACT_CREATED = "artifact-created"
    ARTIFACT_UPDATED = "artifact-updated"
    RESEARCH_FINDING = "research-finding"
    CHILD_AGENT_RESULT = "child-agent-result"
    PLAN_CREATED = "plan-created"
    PLAN_UPDATED = "plan-updated"
    USER_CLARIFICATION = "user-clarification"
    CONTEXT_INJECTION = "context-injection"
    CHECKPOINT = "checkpoint"


ENTRY_TYPES = frozenset(t.value for t in EntryType)

# Fields that must be non-empty on every write
REQUIRED_FIELDS = ("session_id", "entry_type", "scope", "summary", "source")


@dataclass(frozen=True)
class EntryRefs:
    """References from an entry to artifacts, external issues, or other entries."""

    artifact_ids: tuple[str, ...] = ()
    issue_keys: tuple[str, ...] = ()
    entry_ids: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.artifact_ids or self.issue_keys or self.entry_ids)

    def to_dict(self) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {}
        if self.artifact_ids:
            result["artifact_ids"] = list(self.artifact_ids)
        if self.issue_keys:
            result["issue_keys"] = list(self.issue_keys)
        if self.entry_ids:
            result["entry_ids"] = list(self.entry_ids)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EntryRefs:
        data = data or {}
        return cls(
            artifact_ids=tuple(data.get("artifact_ids", ())),
            issue_keys=tuple(data.get("issue_keys", ())),
            entry_ids=tuple(data.get("entry_ids", ())),
        )


@dataclass(frozen=True)
class LedgerEntry:
    """
    Immutable structural event in a session ledger.

    entry_id and sequence_num are empty until the Ledger Store assigns them
    at append time.
    """

    session_id: str
    entry_type: str  # One of ENTRY_TYPES
    scope: str
    summary: str
    source: str  # "agent:orchestrator", "human:alice", "system"

    sequence_num: int = 0
    entry_id: str = ""
    timestamp: datetime | None = None

    reasoning: str | None = None
    options: dict[str, Any] | None = None  # {"considered": [...], "chosen": ...}
    refs: EntryRefs = field(default_factory=EntryRefs)
    details: dict[str, Any] = field(default_factory=dict)
    turn: int = 0

    # Projection of the promotion log
    promoted: bool = False
    external_id: str | None = None

    def missing_fields(self) -> list[str]:
        """Return required fields that are empty."""
        missing = []
        for name in REQUIRED_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                missing.append(name)
        return missing

    def with_promotion(self, external_id: str) -> LedgerEntry:
        return replace(self, promoted=True, external_id=external_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the stored row (promotion state is not part of it)."""
        result: dict[str, Any] = {
            "session_id": self.session_id,
            "sequence_num": self.sequence_num,
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "entry_type": self.entry_type,
            "scope": self.scope,
            "summary": self.summary,
            "source": self.source,
            "turn": self.turn,
        }
        if self.reasoning is not None:
            result["reasoning"] = self.reasoning
        if self.options is not None:
            result["options"] = copy.deepcopy(self.options)
        if self.refs:
            result["refs"] = self.refs.to_dict()
        if self.details:
            result["details"] = copy.deepcopy(self.details)
        return result

    def to_view(self) -> dict[str, Any]:
        """Serialize including the promotion projection (for callers, not storage)."""
        result = self.to_dict()
        result["promoted"] = self.promoted
        if self.external_id is not None:
            result["external_id"] = self.external_id
        return result

    def to_json(self) -> str:
        """Serialize to JSON string (single line)."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        """Reconstruct from a stored row or a view dict."""
        ts = data.get("timestamp")
        return cls(
            session_id=data["session_id"],
            entry_type=data["entry_type"],
            scope=data["scope"],
            summary=data["summary"],
            source=data["source"],
            sequence_num=int(data.get("sequence_num", 0)),
            entry_id=data.get("entry_id", ""),
            timestamp=datetime.fromisoformat(ts) if ts else None,
            reasoning=data.get("reasoning"),
            options=data.get("options"),
            refs=EntryRefs.from_dict(data.get("refs")),
            details=data.get("details", {}),
            turn=int(data.get("turn", 0)),
            promoted=bool(data.get("promoted", False)),
            external_id=data.get("external_id"),
        )

    @classmethod
    def from_json(cls, line: str) -> LedgerEntry:
        return cls.from_dict(json.loads(line))


def create_entry(
    session_id: str,
    entry_type: str | EntryType,
    scope: str,
    summary: str,
    source: str,
    *,
    reasoning: str | None = None,
    options: dict[str, Any] | None = None,
    refs: EntryRefs | dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
    turn: int = 0,
) -> LedgerEntry:
    """
    Factory for unassigned entries.

    The Ledger Store fills in entry_id, sequence_num and timestamp on append.
    Options and details are copied, so later changes by the caller never
    reach the entry.

    Raises:
        InvalidEntry: refs is not a mapping of string lists
    """
    if isinstance(refs, dict):
        for key, value in refs.items():
            if key not in _REF_KEYS or not _is_str_list(value):
                raise InvalidEntry(f"refs.{key} must be a list of strings", missing=["refs"])
        refs = EntryRefs.from_dict(refs)
    elif refs is not None and not isinstance(refs, EntryRefs):
        raise InvalidEntry("refs must be a JSON object", missing=["refs"])
    return LedgerEntry(
        session_id=session_id,
        entry_type=entry_type.value if isinstance(entry_type, EntryType) else entry_type,
        scope=scope,
        summary=summary,
        source=source,
        reasoning=reasoning,
        options=copy.deepcopy(options),
        refs=refs or EntryRefs(),
        details=copy.deepcopy(details) if details is not None else {},
        turn=turn,
    )


# -----------------------------------------------------------------------------
# Shape checks
# -----------------------------------------------------------------------------

_REF_KEYS = frozenset({"artifact_ids", "issue_keys", "entry_ids"})


def _is_str_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


def _is_text_or_list(value: Any) -> bool:
    return value is None or isinstance(value, str) or _is_str_list(value)


def _is_step_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip() != ""


def _check_steps(details: dict[str, Any]) -> list[str]:
    steps = details.get("steps", [])
    if not isinstance(steps, list):
        return ["details.steps must be a list"]
    problems = []
    for idx, step in enumerate(steps):
        if not isinstance(step, dict):
            problems.append(f"details.steps[{idx}] must be an object")
        elif not _is_step_id(step.get("step_id")):
            problems.append(f"details.steps[{idx}] has no step_id")
    return problems


def _check_text_fields(*names: str):
    def check(details: dict[str, Any]) -> list[str]:
        return [f"details.{n} must be a string or a list of strings" for n in names if not _is_text_or_list(details.get(n))]
    return check


def _check_step_ref(details: dict[str, Any]) -> list[str]:
    if "step_id" in details and not _is_step_id(details["step_id"]):
        return ["details.step_id must be a string or integer"]
    return []


def _check_artifact_ref(details: dict[str, Any]) -> list[str]:
    if "artifact_id" in details and not isinstance(details["artifact_id"], str):
        return ["details.artifact_id must be a string"]
    return []


_DETAIL_CHECKS = {
    EntryType.DECISION.value: _check_text_fields("replaces"),
    EntryType.CONSTRAINT.value: _check_text_fields("replaces"),
    EntryType.PLAN_CREATED.value: _check_steps,
    EntryType.PLAN_UPDATED.value: _check_steps,
    EntryType.CHILD_AGENT_RESULT.value: _check_step_ref,
    EntryType.ARTIFACT_CREATED.value: _check_artifact_ref,
    EntryType.ARTIFACT_UPDATED.value: _check_artifact_ref,
    EntryType.USER_CLARIFICATION.value: _check_text_fields("asks", "answers"),
    EntryType.CONTEXT_INJECTION.value: _check_text_fields("facts"),
}


def shape_errors(entry: LedgerEntry) -> list[str]:
    """
    Return problems with the structure of options, refs and details.

    An entry with problems would fail later when it is folded into a working
    context or formatted for promotion, so it must not be written.
    """
    problems: list[str] = []
    if entry.options is not None:
        if not isinstance(entry.options, dict):
            problems.append("options must be a JSON object")
        elif not _is_text_or_list(entry.options.get("considered")):
            problems.append("options.considered must be a list of strings")
    if not isinstance(entry.refs, EntryRefs) or not all(
        _is_str_list(ids) for ids in (entry.refs.artifact_ids, entry.refs.issue_keys, entry.refs.entry_ids)
    ):
        problems.append("refs must hold lists of strings")
    if not isinstance(entry.details, dict):
        problems.append("details must be a JSON object")
        return problems

    check = _DETAIL_CHECKS.get(entry.entry_type)
    if check is not None:
        problems.extend(check(entry.details))
    return problems


# Payload field documentation for the `details` of each entry type
ENTRY_DETAIL_FIELDS = {
    EntryType.PLAN_CREATED: {
        "steps": "List of {step_id, description, status?, outcome?}",
    },
    EntryType.PLAN_UPDATED: {
        "steps": "List of partial steps keyed by step_id; unknown ids are appended",
    },
    EntryType.CHILD_AGENT_RESULT: {
        "step_id": "Plan step the result belongs to",
        "status": "Optional new step status",
    },
    EntryType.ARTIFACT_CREATED: {
        "artifact_id": "Artifact identifier",
        "title": "Artifact title",
        "status": "Lifecycle status at write time",
        "target": "Publish target",
    },
    EntryType.ARTIFACT_UPDATED: {
        "artifact_id": "Artifact identifier",
        "status": "Lifecycle status at write time",
    },
    EntryType.USER_CLARIFICATION: {
        "intent": "Optional new intent summary",
        "asks": "Questions newly opened",
        "answers": "Questions answered (removed from open questions)",
    },
    EntryType.CONTEXT_INJECTION: {
        "facts": "Prior knowledge seeded from long-term memory",
        "intent": "Optional intent summary",
    },
    EntryType.RESEARCH_FINDING: {
        "durable": "True when the finding should be promoted to long-term memory",
    },
    EntryType.CHECKPOINT: {
        "reason": "interval | milestone | pause | end | abandon | manual",
    },
}
