"""
Error kinds for the context-memory core.

Semantic errors (invalid entry, invalid transition) are raised to the caller
immediately. Transient errors (gateway unavailable, sequence conflict) are
retried locally and only surface once retries are exhausted.
"""

from __future__ import annotations

from typing import Any, Sequence


class CtxMemError(Exception):
    """Base class for every error raised by ctxmem."""


class ConfigError(CtxMemError):
    """Configuration file is malformed or holds an invalid value."""


class InvalidEntry(CtxMemError):
    """A ledger write is missing required fields. Nothing was written."""

    def __init__(self, message: str, *, missing: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class SequenceConflict(CtxMemError):
    """The on-disk ledger moved under the allocator. Retried, never surfaced."""

    def __init__(self, session_id: str, expected: int, found: int) -> None:
        super().__init__(f"sequence conflict in {session_id}: expected next={expected}, found next={found}")
        self.session_id = session_id
        self.expected = expected
        self.found = found


class SnapshotMissing(CtxMemError):
    """No usable snapshot exists for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"no snapshot for session {session_id}")
        self.session_id = session_id


class UnknownSession(CtxMemError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class SessionNotActive(CtxMemError):
    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session {session_id} is {status}, not active")
        self.session_id = session_id
        self.status = status


class TurnInProgress(CtxMemError):
    """Another turn for the same session is still being processed."""

    def __init__(self, session_id: str, waited_s: float) -> None:
        super().__init__(f"turn already in progress for {session_id} (waited {waited_s:.1f}s)")
        self.session_id = session_id
        self.waited_s = waited_s


class UnknownArtifact(CtxMemError):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(f"Artifact not found: {artifact_id}")
        self.artifact_id = artifact_id


class InvalidTransition(CtxMemError):
    """
    A lifecycle action is not permitted from the artifact's current state.

    Carries the current state and the actions that are allowed from it so
    the caller can report them.
    """

    def __init__(
        self,
        artifact_id: str,
        current: str,
        action: str,
        allowed: Sequence[str],
        *,
        reason: str | None = None,
    ) -> None:
        allowed_list = sorted(allowed)
        detail = reason or f"action {action!r} not permitted from {current!r}"
        super().__init__(
            f"{artifact_id}: {detail} (allowed: {', '.join(allowed_list) or 'none'})"
        )
        self.artifact_id = artifact_id
        self.current = current
        self.action = action
        self.allowed = allowed_list


class PublishFailure(CtxMemError):
    """External target rejected the publish or timed out. Artifact is publish_failed."""

    def __init__(self, artifact_id: str, reason: str) -> None:
        super().__init__(f"publish failed for {artifact_id}: {reason}")
        self.artifact_id = artifact_id
        self.reason = reason


class RevisionFailure(CtxMemError):
    """Revision collaborator failed or timed out. Artifact is back in revision_requested."""

    def __init__(self, artifact_id: str, reason: str) -> None:
        super().__init__(f"revision failed for {artifact_id}: {reason}")
        self.artifact_id = artifact_id
        self.reason = reason


class PromotionPartialFailure(CtxMemError):
    """Some records in a promotion run failed; successes were committed."""

    def __init__(self, result: Any) -> None:
        super().__init__(
            f"promotion partially failed: {result.promoted_count} promoted, {result.failed_count} failed"
        )
        self.result = result


class GatewayError(CtxMemError):
    """Long-term memory service rejected a request. Not retried."""


class GatewayUnavailable(GatewayError):
    """Long-term memory service could not be reached. Transient, retried."""
