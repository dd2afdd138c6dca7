"""
Artifact lifecycle management.

Every state change is validated against the transition table, written as an
append-only event, and announced to listeners. External dispatches (publish,
revision) run on a worker pool with a bounded wait; a timeout or a human
cancellation moves the artifact to its failure state, and a result that
arrives after the artifact has left the transient state is discarded.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from ..errors import InvalidTransition, PublishFailure, RevisionFailure
from ..util import new_ulid, utc_now
from .events import ARTIFACT_CREATED, ARTIFACT_TRANSITIONED, PUBLISH_TARGETS, ArtifactEvent, create_event
from .lifecycle import Action, ArtifactStatus, allowed_actions, next_status
from .models import Artifact, ArtifactReview, ArtifactVersion, ReviewAction, RevisedContent
from .publishers import Publisher, get_publisher
from .store import ArtifactStore

logger = logging.getLogger(__name__)

Listener = Callable[[Artifact, ArtifactEvent], None]
Reviser = Callable[[Artifact], "RevisedContent | str"]

_REVIEW_ACTIONS = {
    ReviewAction.APPROVE: Action.APPROVE,
    ReviewAction.REQUEST_REVISION: Action.REQUEST_REVISION,
    ReviewAction.REJECT: Action.REJECT,
}

_POLL_S = 0.05


@dataclass
class _Outcome:
    kind: str  # "ok" | "error" | "timeout" | "cancelled"
    value: Any = None
    error: BaseException | None = None


class ArtifactLifecycleManager:
    def __init__(
        self,
        store: ArtifactStore,
        *,
        publish_timeout_s: float = 30.0,
        revision_timeout_s: float = 120.0,
        publisher_lookup: Callable[[str], Publisher | None] = get_publisher,
        max_workers: int = 4,
    ):
        self.store = store
        self.publish_timeout_s = publish_timeout_s
        self.revision_timeout_s = revision_timeout_s
        self._publisher_lookup = publisher_lookup
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ctxmem-dispatch")
        # Runs whole publish attempts for wait=False callers; separate from _executor so
        # an attempt never waits on a worker slot held by another attempt
        self._background = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ctxmem-publish")

        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._inflight: dict[str, threading.Event] = {}
        self._listeners: list[Listener] = []

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        """Called with (artifact, event) after every committed event."""
        self._listeners.append(listener)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop the worker pools. With wait=True, in-flight publishes finish first."""
        self._background.shutdown(wait=wait)
        self._executor.shutdown(wait=wait)

    def _lock_for(self, artifact_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(artifact_id)
            if lock is None:
                lock = self._locks[artifact_id] = threading.RLock()
            return lock

    def _notify(self, artifact: Artifact, event: ArtifactEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(artifact, event)
            except Exception:
                # The event is already committed; a listener cannot undo it.
                logger.exception("Artifact listener failed for %s (%s)", artifact.artifact_id, event.event_type)

    def _commit(
        self,
        artifact: Artifact,
        action: Action,
        actor: str,
        payload: dict[str, Any] | None = None,
    ) -> tuple[Artifact, ArtifactEvent]:
        """Validate and append one transition. Caller holds the artifact lock."""
        target = next_status(artifact.status, action, actor=actor, artifact_id=artifact.artifact_id)
        event_payload: dict[str, Any] = {
            "action": action.value,
            "from": artifact.status.value,
            "to": target.value,
        }
        if payload:
            event_payload.update({k: v for k, v in payload.items() if v is not None})

        event = create_event(ARTIFACT_TRANSITIONED, artifact.artifact_id, actor, payload=event_payload)
        self.store.append_event(event)
        updated = self.store.require(artifact.artifact_id)
        logger.info(
            "Artifact %s: %s -> %s (%s by %s)",
            artifact.artifact_id, artifact.status.value, target.value, action.value, actor,
        )
        return updated, event

    def _transition(
        self,
        artifact_id: str,
        action: Action,
        actor: str,
        payload: dict[str, Any] | None = None,
    ) -> Artifact:
        with self._lock_for(artifact_id):
            artifact = self.store.require(artifact_id)
            updated, event = self._commit(artifact, action, actor, payload)
        self._notify(updated, event)
        return updated

    def _await(self, future: Future, cancel: threading.Event, timeout_s: float) -> _Outcome:
        deadline = time.monotonic() + timeout_s
        while True:
            remaining = deadline - time.monotonic()
            done, _ = wait_futures([future], timeout=max(0.0, min(_POLL_S, remaining)))
            if done:
                error = future.exception()
                if error is not None:
                    return _Outcome("error", error=error)
                return _Outcome("ok", value=future.result())
            if cancel.is_set():
                return _Outcome("cancelled")
            if remaining <= 0:
                return _Outcome("timeout")

    def _discard_late(self, artifact_id: str, what: str) -> Callable[[Future], None]:
        def _log(future: Future) -> None:
            logger.warning("Discarding late %s result for %s", what, artifact_id)

        return _log

    # -------------------------------------------------------------------------
    # Creation
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
        change_summary: str = "initial draft",
    ) -> Artifact:
        """Create an artifact in draft with version 1."""
        if publish_target not in PUBLISH_TARGETS:
            raise ValueError(
                f"Unknown publish_target {publish_target!r} (expected one of {sorted(PUBLISH_TARGETS)})"
            )
        if not title.strip():
            raise ValueError("Artifact title must not be empty")

        artifact_id = new_ulid()
        content_id = self.store.store_content(content)
        now = utc_now()

        with self._lock_for(artifact_id):
            self.store.append_version(
                ArtifactVersion(
                    artifact_id=artifact_id,
                    version=1,
                    content_id=content_id,
                    change_summary=change_summary,
                    author=author,
                    created_at=now,
                )
            )
            event = create_event(
                ARTIFACT_CREATED,
                artifact_id,
                author,
                timestamp=now,
                payload={
                    "session_id": session_id,
                    "artifact_type": artifact_type,
                    "publish_target": publish_target,
                    "title": title,
                    "content_id": content_id,
                    "version": 1,
                },
            )
            self.store.append_event(event)
            artifact = self.store.require(artifact_id)

        logger.info("Created artifact %s (%s) in session %s", artifact_id, artifact_type, session_id)
        self._notify(artifact, event)
        return artifact

    def submit(self, artifact_id: str, *, actor: str = "agent:orchestrator") -> Artifact:
        """Content generation finished: draft -> review."""
        return self._transition(artifact_id, Action.SUBMIT, actor)

    # -------------------------------------------------------------------------
    # Reviews
    # -------------------------------------------------------------------------

    def submit_review(
        self,
        artifact_id: str,
        version_reviewed: int,
        action: ReviewAction | str,
        reviewer: str,
        *,
        feedback: str | None = None,
        inline_comments: list[dict[str, Any]] | None = None,
        target_config: dict[str, Any] | None = None,
    ) -> ArtifactReview:
        """
        Record a human decision against a specific version.

        The review row is written before the transition it authorizes. Two
        conflicting reviews of the same version are serialized by the
        artifact lock: the first wins and the second fails InvalidTransition
        because the artifact is no longer in the state it expects.

        Raises:
            InvalidTransition: action not allowed from the current state,
                non-human reviewer, or the reviewed version is not current
            ValueError: request_revision without feedback
        """
        review_action = ReviewAction(action)
        if review_action == ReviewAction.PUBLISH:
            review, _ = self._begin_publish(
                artifact_id, reviewer, target_config or {},
                version_reviewed=version_reviewed, feedback=feedback, inline_comments=inline_comments,
            )
            self._run_publish(artifact_id, raise_on_failure=True)
            return review

        if review_action == ReviewAction.REQUEST_REVISION and not (feedback or "").strip():
            raise ValueError("request_revision requires feedback")

        lifecycle_action = _REVIEW_ACTIONS[review_action]
        with self._lock_for(artifact_id):
            artifact = self.store.require(artifact_id)
            # Validate before writing anything
            next_status(artifact.status, lifecycle_action, actor=reviewer, artifact_id=artifact_id)
            self._check_version(artifact, version_reviewed, lifecycle_action)

            review = self._record_review(
                artifact, review_action, reviewer, feedback=feedback, inline_comments=inline_comments,
            )
            updated, event = self._commit(
                artifact, lifecycle_action, reviewer,
                {"review_id": review.review_id, "feedback": feedback},
            )
        self._notify(updated, event)
        return review

    def _check_version(self, artifact: Artifact, version_reviewed: int, action: Action) -> None:
        if version_reviewed != artifact.version:
            raise InvalidTransition(
                artifact.artifact_id, artifact.status.value, action.value, allowed_actions(artifact.status),
                reason=f"review is for version {version_reviewed} but current version is {artifact.version}",
            )

    def _record_review(
        self,
        artifact: Artifact,
        action: ReviewAction,
        reviewer: str,
        *,
        feedback: str | None,
        inline_comments: list[dict[str, Any]] | None,
    ) -> ArtifactReview:
        review = ArtifactReview(
            review_id=new_ulid(),
            artifact_id=artifact.artifact_id,
            version_reviewed=artifact.version,
            action=action,
            reviewer=reviewer,
            created_at=utc_now(),
            feedback=feedback,
            inline_comments=tuple(dict(c) for c in (inline_comments or [])),
        )
        self.store.append_review(review)
        return review

    # -------------------------------------------------------------------------
    # Revision
    # -------------------------------------------------------------------------

    def dispatch_revision(self, artifact_id: str, *, actor: str = "system") -> Artifact:
        return self._transition(artifact_id, Action.DISPATCH_REVISION, actor)

    def complete_revision(
        self,
        artifact_id: str,
        revised: RevisedContent | str,
        *,
        actor: str | None = None,
    ) -> Artifact:
        """
        Record revised content as a new immutable version: revising -> review.

        The version row is written before the transition, so a crash between
        the two leaves an orphan row that the next revision skips past.
        """
        if isinstance(revised, str):
            revised = RevisedContent(content=revised)

        with self._lock_for(artifact_id):
            artifact = self.store.require(artifact_id)
            next_status(artifact.status, Action.COMPLETE_REVISION, actor=actor or revised.author, artifact_id=artifact_id)

            new_version = max(artifact.version, self.store.max_version(artifact_id)) + 1
            content_id = self.store.store_content(revised.content)
            self.store.append_version(
                ArtifactVersion(
                    artifact_id=artifact_id,
                    version=new_version,
                    content_id=content_id,
                    change_summary=revised.change_summary,
                    author=revised.author,
                    created_at=utc_now(),
                )
            )
            updated, event = self._commit(
                artifact, Action.COMPLETE_REVISION, actor or revised.author,
                {"version": new_version, "content_id": content_id},
            )
        self._notify(updated, event)
        return updated

    def fail_revision(self, artifact_id: str, reason: str, *, actor: str = "system") -> Artifact:
        """revising -> revision_requested, keeping the reviewer's feedback."""
        return self._transition(artifact_id, Action.REVISION_FAILED, actor, {"error": reason})

    def cancel_revision(self, artifact_id: str, *, actor: str, reason: str = "cancelled") -> Artifact:
        with self._lock_for(artifact_id):
            cancel = self._inflight.get(artifact_id)
            updated = self.fail_revision(artifact_id, reason, actor=actor)
            if cancel is not None:
                cancel.set()
        return updated

    def run_revision(
        self,
        artifact_id: str,
        reviser: Reviser,
        *,
        timeout_s: float | None = None,
        actor: str = "system",
    ) -> Artifact:
        """
        Dispatch a revision to a collaborator and wait for it, bounded.

        The reviser receives the artifact (with content and feedback) and
        returns RevisedContent or plain text.

        Raises:
            RevisionFailure: reviser raised, timed out, or was cancelled;
                the artifact is back in revision_requested
        """
        artifact = self.store.require(artifact_id)
        if artifact.status == ArtifactStatus.REVISION_REQUESTED:
            self.dispatch_revision(artifact_id, actor=actor)
        artifact = self.store.require(artifact_id, with_content=True)
        if artifact.status != ArtifactStatus.REVISING:
            raise InvalidTransition(
                artifact_id, artifact.status.value, Action.COMPLETE_REVISION.value,
                allowed_actions(artifact.status),
            )

        cancel = threading.Event()
        with self._guard:
            self._inflight[artifact_id] = cancel
        try:
            future = self._executor.submit(reviser, artifact)
            outcome = self._await(future, cancel, timeout_s or self.revision_timeout_s)
        finally:
            with self._guard:
                self._inflight.pop(artifact_id, None)

        with self._lock_for(artifact_id):
            current = self.store.require(artifact_id)
            if current.status != ArtifactStatus.REVISING:
                logger.warning(
                    "Revision of %s finished after artifact moved to %s; result discarded",
                    artifact_id, current.status.value,
                )
                if outcome.kind == "cancelled":
                    raise RevisionFailure(artifact_id, current.last_error or "cancelled")
                return current

            if outcome.kind == "ok":
                return self.complete_revision(artifact_id, outcome.value)

            if outcome.kind == "timeout":
                future.add_done_callback(self._discard_late(artifact_id, "revision"))
                reason = f"revision timed out after {timeout_s or self.revision_timeout_s:.1f}s"
            else:
                reason = f"reviser failed: {outcome.error}"
            self.fail_revision(artifact_id, reason, actor="system")
        raise RevisionFailure(artifact_id, reason)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def request_publish(
        self,
        artifact_id: str,
        target_config: dict[str, Any] | None = None,
        *,
        reviewer: str,
        feedback: str | None = None,
        wait: bool = True,
    ) -> Artifact:
        """
        Human-triggered publish: approved -> publishing, then dispatch.

        A publish review is recorded before the transition. With wait=True
        the call returns the artifact in published state or raises.

        Raises:
            InvalidTransition: not approved, or reviewer is not human
            PublishFailure: the publisher failed, timed out or was cancelled
                (artifact is publish_failed)
        """
        _, artifact = self._begin_publish(artifact_id, reviewer, target_config or {}, feedback=feedback)
        if not wait:
            self._publish_in_background(artifact_id)
            return artifact
        return self._run_publish(artifact_id, raise_on_failure=True)

    def _publish_in_background(self, artifact_id: str) -> Future:
        future = self._background.submit(self._run_publish, artifact_id, raise_on_failure=False)
        future.add_done_callback(self._log_background_error(artifact_id))
        return future

    @staticmethod
    def _log_background_error(artifact_id: str) -> Callable[[Future], None]:
        def callback(future: Future) -> None:
            error = future.exception()
            if error is not None:
                logger.error("Background publish of %s failed: %s", artifact_id, error)
        return callback

    def _begin_publish(
        self,
        artifact_id: str,
        reviewer: str,
        target_config: dict[str, Any],
        *,
        version_reviewed: int | None = None,
        feedback: str | None = None,
        inline_comments: list[dict[str, Any]] | None = None,
    ) -> tuple[ArtifactReview, Artifact]:
        with self._lock_for(artifact_id):
            artifact = self.store.require(artifact_id)
            next_status(artifact.status, Action.PUBLISH, actor=reviewer, artifact_id=artifact_id)
            if version_reviewed is not None:
                self._check_version(artifact, version_reviewed, Action.PUBLISH)

            review = self._record_review(
                artifact, ReviewAction.PUBLISH, reviewer, feedback=feedback, inline_comments=inline_comments,
            )
            updated, event = self._commit(
                artifact, Action.PUBLISH, reviewer,
                {"review_id": review.review_id, "target_config": dict(target_config)},
            )
        self._notify(updated, event)
        return review, updated

    def retry_publish(self, artifact_id: str, *, actor: str, wait: bool = True) -> Artifact:
        """Human retry after a failure: publish_failed -> publishing, then dispatch."""
        artifact = self._transition(artifact_id, Action.RETRY_PUBLISH, actor)
        if not wait:
            self._publish_in_background(artifact_id)
            return artifact
        return self._run_publish(artifact_id, raise_on_failure=True)

    def cancel_publish(self, artifact_id: str, *, actor: str, reason: str = "cancelled by reviewer") -> Artifact:
        """Human cancellation of an in-flight publish: publishing -> publish_failed."""
        with self._lock_for(artifact_id):
            cancel = self._inflight.get(artifact_id)
            updated = self._transition(artifact_id, Action.CANCEL_PUBLISH, actor, {"error": reason})
            if cancel is not None:
                cancel.set()
        return updated

    def _run_publish(self, artifact_id: str, *, raise_on_failure: bool) -> Artifact:
        artifact = self.store.require(artifact_id, with_content=True)
        # Results only apply to the publishing transition that started this dispatch
        attempt = artifact.updated_at
        if artifact.status != ArtifactStatus.PUBLISHING:
            return self._finish_publish(artifact_id, _Outcome("cancelled"), attempt, raise_on_failure=raise_on_failure)

        publisher = self._publisher_lookup(artifact.publish_target)
        if publisher is None:
            reason = f"no publisher registered for target {artifact.publish_target!r}"
            return self._finish_publish(
                artifact_id, _Outcome("error", error=PublishFailure(artifact_id, reason)), attempt,
                raise_on_failure=raise_on_failure,
            )

        cancel = threading.Event()
        with self._guard:
            self._inflight[artifact_id] = cancel
        try:
            future = self._executor.submit(publisher.publish, artifact, dict(artifact.target_config))
            outcome = self._await(future, cancel, self.publish_timeout_s)
        finally:
            with self._guard:
                self._inflight.pop(artifact_id, None)

        if outcome.kind == "timeout":
            future.add_done_callback(self._discard_late(artifact_id, "publish"))
        return self._finish_publish(artifact_id, outcome, attempt, raise_on_failure=raise_on_failure)

    def _finish_publish(
        self,
        artifact_id: str,
        outcome: _Outcome,
        attempt: datetime | None,
        *,
        raise_on_failure: bool,
    ) -> Artifact:
        with self._lock_for(artifact_id):
            current = self.store.require(artifact_id)
            if current.status != ArtifactStatus.PUBLISHING or current.updated_at != attempt:
                if outcome.kind != "cancelled":
                    logger.warning(
                        "Publish of %s finished after artifact moved to %s; result discarded",
                        artifact_id, current.status.value,
                    )
                if raise_on_failure and current.status != ArtifactStatus.PUBLISHED:
                    raise PublishFailure(artifact_id, current.last_error or "cancelled")
                return current

            if outcome.kind == "ok":
                receipt = outcome.value
                return self._transition(
                    artifact_id, Action.PUBLISH_SUCCEEDED, "system",
                    {"external_url": receipt.url, "external_id": receipt.external_id},
                )

            if outcome.kind == "timeout":
                reason = f"publish timed out after {self.publish_timeout_s:.1f}s"
            elif isinstance(outcome.error, PublishFailure):
                reason = outcome.error.reason
            else:
                reason = f"publisher failed: {outcome.error}"
            failed = self._transition(artifact_id, Action.PUBLISH_FAILED, "system", {"error": reason})

        if raise_on_failure:
            raise PublishFailure(artifact_id, reason)
        logger.warning("Publish of %s failed: %s", artifact_id, reason)
        return failed

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def recover_stale(self, *, older_than_s: float = 0.0) -> list[Artifact]:
        """
        Move artifacts stuck in a transient state to their failure state.

        Used after a crash: nothing in this process is dispatching them, so
        any publishing/revising artifact older than the threshold is failed.
        """
        cutoff = utc_now() - timedelta(seconds=older_than_s)
        recovered: list[Artifact] = []
        for artifact in self.store.list_artifacts():
            with self._guard:
                if artifact.artifact_id in self._inflight:
                    continue
            if artifact.updated_at is not None and artifact.updated_at > cutoff:
                continue
            if artifact.status == ArtifactStatus.PUBLISHING:
                recovered.append(self._transition(
                    artifact.artifact_id, Action.PUBLISH_FAILED, "system", {"error": "interrupted"},
                ))
            elif artifact.status == ArtifactStatus.REVISING:
                recovered.append(self._transition(
                    artifact.artifact_id, Action.REVISION_FAILED, "system", {"error": "interrupted"},
                ))
        for artifact in recovered:
            logger.info("Recovered stale artifact %s -> %s", artifact.artifact_id, artifact.status.value)
        return recovered

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_artifacts(self, session_id: str | None = None, *, status: str | None = None) -> list[Artifact]:
        return self.store.list_artifacts(session_id, status=status)

    def get_artifact(self, artifact_id: str) -> Artifact:
        return self.store.require(artifact_id, with_content=True)

    def get_versions(self, artifact_id: str) -> list[ArtifactVersion]:
        self.store.require(artifact_id)
        return self.store.versions(artifact_id)

    def get_reviews(self, artifact_id: str) -> list[ArtifactReview]:
        self.store.require(artifact_id)
        return self.store.reviews(artifact_id)

    def history(self, artifact_id: str) -> list[ArtifactEvent]:
        """Audit trail: every event for the artifact in append order."""
        self.store.require(artifact_id)
        return self.store.events_for(artifact_id)
