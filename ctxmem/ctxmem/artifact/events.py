"""
Immutable event types for the artifact log.

Events are the atomic unit of artifact state - each line in
artifacts/events.jsonl is one event. The current Artifact is computed by
folding events, never by mutating prior entries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Event type constants
ARTIFACT_CREATED = "artifact.created"
ARTIFACT_TRANSITIONED = "artifact.transitioned"

# All valid event types
EVENT_TYPES = frozenset({
    ARTIFACT_CREATED,
    ARTIFACT_TRANSITIONED,
})

# Publish targets
TARGET_DOCUMENT_REPOSITORY = "document-repository"
TARGET_ISSUE_TRACKER = "issue-tracker"
TARGET_NONE = "none"

PUBLISH_TARGETS = frozenset({
    TARGET_DOCUMENT_REPOSITORY,
    TARGET_ISSUE_TRACKER,
    TARGET_NONE,
})


@dataclass(frozen=True)
class ArtifactEvent:
    """
    Immutable event in the artifact log.

    Events are append-only - once written, they are never modified.
    Each transitioned event moves an artifact one step through its lifecycle.
    """

    event_type: str  # One of EVENT_TYPES
    artifact_id: str  # Stable lifecycle ID (ULID)
    timestamp: datetime
    actor: str  # "human:alice", "agent:writer", "system"

    # Event-specific payload (see EVENT_PAYLOAD_FIELDS)
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate event structure."""
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Invalid event_type: {self.event_type}")

    @property
    def session_id(self) -> str | None:
        return self.payload.get("session_id")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "event_type": self.event_type,
            "artifact_id": self.artifact_id,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
        }
        if self.payload:
            result["payload"] = self.payload
        return result

    def to_json(self) -> str:
        """Serialize to JSON string (single line)."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArtifactEvent:
        """Reconstruct from JSON dict."""
        return cls(
            event_type=data["event_type"],
            artifact_id=data["artifact_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data["actor"],
            payload=data.get("payload", {}),
        )


# Payload field documentation for each event type
EVENT_PAYLOAD_FIELDS = {
    ARTIFACT_CREATED: {
        "session_id": "Owning session",
        "artifact_type": "Kind of document (prd, spec, ticket, report, ...)",
        "publish_target": "document-repository | issue-tracker | none",
        "title": "Human-readable title",
        "content_id": "sha256 of the version 1 content",
        "version": "Always 1",
    },
    ARTIFACT_TRANSITIONED: {
        "action": "Lifecycle action (see lifecycle.Action)",
        "from": "Status before the transition",
        "to": "Status after the transition",
        "version": "New version (complete_revision only)",
        "content_id": "sha256 of the new version content (complete_revision only)",
        "feedback": "Reviewer feedback (request_revision only)",
        "target_config": "Publish target configuration (publish only)",
        "external_url": "Published location (publish_succeeded only)",
        "external_id": "Identifier in the target system (publish_succeeded only)",
        "error": "Failure reason (publish_failed, cancel_publish, revision_failed)",
        "review_id": "ArtifactReview that authorized the transition, if any",
    },
}


def create_event(
    event_type: str,
    artifact_id: str,
    actor: str,
    *,
    payload: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> ArtifactEvent:
    """
    Factory function for creating events.

    Ensures consistent timestamp handling and validation.
    """
    return ArtifactEvent(
        event_type=event_type,
        artifact_id=artifact_id,
        timestamp=timestamp or datetime.now(timezone.utc),
        actor=actor,
        payload=payload or {},
    )
