"""
Artifact projection from the event stream.

Artifacts are computed state - they are derived by folding events, never
stored as the source of truth. A transition whose recorded "from" state
does not match the folded state means the log was written out of order and
is reported as an error rather than silently applied.
"""

from __future__ import annotations

from typing import Sequence

from .events import ARTIFACT_CREATED, ARTIFACT_TRANSITIONED, ArtifactEvent
from .lifecycle import Action, ArtifactStatus
from .models import Artifact


def fold_events(events: Sequence[ArtifactEvent]) -> Artifact | None:
    """
    Compute current artifact state by folding event history.

    Events must be for the same artifact_id and in append order.
    Returns None if no events provided.
    """
    if not events:
        return None

    artifact_id = events[0].artifact_id
    if not all(e.artifact_id == artifact_id for e in events):
        raise ValueError("All events must be for the same artifact_id")

    first = events[0]
    if first.event_type != ARTIFACT_CREATED:
        raise ValueError(f"First event must be {ARTIFACT_CREATED}, got {first.event_type}")

    payload = first.payload
    artifact = Artifact(
        artifact_id=artifact_id,
        session_id=str(payload.get("session_id", "")),
        artifact_type=str(payload.get("artifact_type", "")),
        title=str(payload.get("title", "")),
        publish_target=str(payload.get("publish_target", "none")),
        version=int(payload.get("version", 1)),
        content_id=str(payload.get("content_id", "")),
        created_by=first.actor,
        created_at=first.timestamp,
        updated_at=first.timestamp,
    )

    for event in events[1:]:
        _apply_event(artifact, event)

    return artifact


def _apply_event(artifact: Artifact, event: ArtifactEvent) -> None:
    """Apply a single transition event to update artifact state."""
    if event.event_type != ARTIFACT_TRANSITIONED:
        raise ValueError(f"Unexpected {event.event_type} after creation of {artifact.artifact_id}")

    payload = event.payload
    recorded_from = payload.get("from")
    if recorded_from != artifact.status.value:
        raise ValueError(
            f"{artifact.artifact_id}: transition recorded from {recorded_from!r} "
            f"but artifact is {artifact.status.value!r}"
        )

    action = Action(payload["action"])
    artifact.status = ArtifactStatus(payload["to"])
    artifact.updated_at = event.timestamp

    if action == Action.REQUEST_REVISION:
        artifact.feedback = payload.get("feedback")

    elif action == Action.COMPLETE_REVISION:
        artifact.version = int(payload["version"])
        artifact.content_id = str(payload["content_id"])
        artifact.last_error = None

    elif action in {Action.PUBLISH, Action.RETRY_PUBLISH}:
        if payload.get("target_config") is not None:
            artifact.target_config = dict(payload["target_config"])
        artifact.last_error = None

    elif action == Action.PUBLISH_SUCCEEDED:
        artifact.external_url = payload.get("external_url")
        artifact.external_id = payload.get("external_id")
        artifact.published_at = event.timestamp

    elif action in {Action.PUBLISH_FAILED, Action.CANCEL_PUBLISH, Action.REVISION_FAILED}:
        artifact.last_error = payload.get("error")
