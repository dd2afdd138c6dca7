"""
Artifact lifecycle state machine.

States are an enum; transitions are a table keyed by (current state, action).
Any pair not listed is rejected. Actions that open a path to an external
system (approve, publish, retry) or close the artifact (reject) require a
human actor; no agent or collaborator can take them.
"""

from __future__ import annotations

from enum import Enum

from ..errors import InvalidTransition


class ArtifactStatus(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    REVISION_REQUESTED = "revision_requested"
    REVISING = "revising"
    APPROVED = "approved"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"
    REJECTED = "rejected"


class Action(str, Enum):
    SUBMIT = "submit"  # content generation completes
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    REJECT = "reject"
    DISPATCH_REVISION = "dispatch_revision"
    COMPLETE_REVISION = "complete_revision"
    REVISION_FAILED = "revision_failed"  # revision timed out or was cancelled
    PUBLISH = "publish"
    PUBLISH_SUCCEEDED = "publish_succeeded"
    PUBLISH_FAILED = "publish_failed"
    RETRY_PUBLISH = "retry_publish"
    CANCEL_PUBLISH = "cancel_publish"


S = ArtifactStatus
A = Action

TRANSITIONS: dict[tuple[ArtifactStatus, Action], ArtifactStatus] = {
    (S.DRAFT, A.SUBMIT): S.REVIEW,
    (S.REVIEW, A.APPROVE): S.APPROVED,
    (S.REVIEW, A.REQUEST_REVISION): S.REVISION_REQUESTED,
    (S.REVIEW, A.REJECT): S.REJECTED,
    (S.REVISION_REQUESTED, A.DISPATCH_REVISION): S.REVISING,
    (S.REVISING, A.COMPLETE_REVISION): S.REVIEW,
    (S.REVISING, A.REVISION_FAILED): S.REVISION_REQUESTED,
    (S.APPROVED, A.PUBLISH): S.PUBLISHING,
    (S.PUBLISHING, A.PUBLISH_SUCCEEDED): S.PUBLISHED,
    (S.PUBLISHING, A.PUBLISH_FAILED): S.PUBLISH_FAILED,
    (S.PUBLISHING, A.CANCEL_PUBLISH): S.PUBLISH_FAILED,
    (S.PUBLISH_FAILED, A.RETRY_PUBLISH): S.PUBLISHING,
}

INITIAL_STATUS = S.DRAFT
TERMINAL_STATUSES = frozenset({S.PUBLISHED, S.REJECTED})

# States an external dispatch can leave an artifact in
TRANSIENT_STATUSES = frozenset({S.PUBLISHING, S.REVISING})

HUMAN_ACTIONS = frozenset({
    A.APPROVE,
    A.REQUEST_REVISION,
    A.REJECT,
    A.PUBLISH,
    A.RETRY_PUBLISH,
    A.CANCEL_PUBLISH,
})


def is_human(actor: str) -> bool:
    """Actors are "kind:name"; only "human:<name>" passes a human gate."""
    kind, _, name = actor.partition(":")
    return kind == "human" and bool(name.strip())


def allowed_actions(status: ArtifactStatus | str) -> list[str]:
    current = ArtifactStatus(status)
    return sorted(action.value for (state, action) in TRANSITIONS if state == current)


def next_status(
    status: ArtifactStatus | str,
    action: Action | str,
    *,
    actor: str = "system",
    artifact_id: str = "",
) -> ArtifactStatus:
    """
    Resolve a transition or raise InvalidTransition.

    Raises:
        InvalidTransition: the pair is not in the table, the action is
            unknown, or a human-gated action was attempted by a non-human
    """
    current = ArtifactStatus(status)
    try:
        act = Action(action)
    except ValueError:
        raise InvalidTransition(
            artifact_id, current.value, str(action), allowed_actions(current),
            reason=f"unknown action {action!r}",
        ) from None

    target = TRANSITIONS.get((current, act))
    if target is None:
        raise InvalidTransition(artifact_id, current.value, act.value, allowed_actions(current))
    if act in HUMAN_ACTIONS and not is_human(actor):
        raise InvalidTransition(
            artifact_id, current.value, act.value, allowed_actions(current),
            reason=f"action {act.value!r} requires a human actor (got {actor!r})",
        )
    return target
