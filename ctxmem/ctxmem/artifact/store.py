"""
Append-only artifact store.

Three JSONL tables under artifacts/:

    events.jsonl    lifecycle events; the source of truth for Artifact state
    versions.jsonl  immutable ArtifactVersion rows
    reviews.jsonl   write-once ArtifactReview rows

Content bodies live in the content-addressed store. Nothing here ever
rewrites an existing line; the current Artifact is computed by folding its
events.
"""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Literal

from ..errors import UnknownArtifact
from ..util import append_jsonl, iter_jsonl, repair_tail
from .content_store import ContentStore
from .events import ArtifactEvent
from .models import Artifact, ArtifactReview, ArtifactVersion
from .snapshot import fold_events


class ArtifactStore:
    """
    Event log plus version and review tables for artifacts.

    INVARIANT: This class NEVER modifies existing lines.
    The only write operations are the append_* methods.
    """

    def __init__(self, data_dir: Path):
        """
        Initialize the store.

        Args:
            data_dir: ctxmem data directory (artifacts/ and content/ live under it)
        """
        self.data_dir = data_dir
        self.artifacts_dir = data_dir / "artifacts"
        self.events_path = self.artifacts_dir / "events.jsonl"
        self.versions_path = self.artifacts_dir / "versions.jsonl"
        self.reviews_path = self.artifacts_dir / "reviews.jsonl"
        self.content = ContentStore(data_dir / "content")

        self._lock = threading.RLock()

        # Query indexes (lazy-loaded)
        self._events: list[ArtifactEvent] = []
        self._by_artifact_id: dict[str, list[int]] = {}  # artifact_id -> event indices
        self._by_session_id: dict[str, list[str]] = {}  # session_id -> artifact_ids (creation order)
        self._versions: dict[str, list[ArtifactVersion]] = {}
        self._reviews: dict[str, list[ArtifactReview]] = {}
        self._indexed: bool = False

    def _ensure_indexed(self) -> None:
        """
        Build indexes on first use (lazy loading).

        This method is idempotent - calling it multiple times is safe.
        """
        with self._lock:
            if self._indexed:
                return

            for path in (self.events_path, self.versions_path, self.reviews_path):
                repair_tail(path)

            self._events = list(self.iter_events())
            for idx, event in enumerate(self._events):
                self._update_indexes(event, idx)

            for row in iter_jsonl(self.versions_path):
                version = ArtifactVersion.from_row(row)
                self._versions.setdefault(version.artifact_id, []).append(version)

            for row in iter_jsonl(self.reviews_path):
                review = ArtifactReview.from_dict(row)
                self._reviews.setdefault(review.artifact_id, []).append(review)

            self._indexed = True

    def _update_indexes(self, event: ArtifactEvent, idx: int) -> None:
        self._by_artifact_id.setdefault(event.artifact_id, []).append(idx)
        session_id = event.session_id
        if session_id:
            self._by_session_id.setdefault(session_id, []).append(event.artifact_id)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append_event(self, event: ArtifactEvent) -> None:
        """
        Append a lifecycle event.

        Events are never modified or deleted once written.
        """
        with self._lock:
            self._ensure_indexed()
            append_jsonl(self.events_path, [event.to_dict()])
            idx = len(self._events)
            self._events.append(event)
            self._update_indexes(event, idx)

    def append_version(self, version: ArtifactVersion) -> None:
        """Append a version row. (artifact_id, version) is write-once."""
        with self._lock:
            self._ensure_indexed()
            existing = self._versions.get(version.artifact_id, [])
            if any(v.version == version.version for v in existing):
                raise ValueError(
                    f"Version {version.version} of {version.artifact_id} already exists"
                )
            append_jsonl(self.versions_path, [version.to_row()])
            self._versions.setdefault(version.artifact_id, []).append(version)

    def append_review(self, review: ArtifactReview) -> None:
        with self._lock:
            self._ensure_indexed()
            append_jsonl(self.reviews_path, [review.to_dict()])
            self._reviews.setdefault(review.artifact_id, []).append(review)

    def store_content(self, content: str) -> str:
        return self.content.store(content)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def iter_events(self) -> Iterator[ArtifactEvent]:
        """
        Iterate over all events in the log.

        Events are returned in append order.
        """
        for row in iter_jsonl(self.events_path):
            yield ArtifactEvent.from_dict(row)

    def query(
        self,
        *,
        artifact_id: str | None = None,
        event_type: str | None = None,
        since: datetime | None = None,
        actor: str | None = None,
        where: Callable[[ArtifactEvent], bool] | None = None,
        limit: int | None = None,
        order: Literal["asc", "desc"] = "asc",
    ) -> list[ArtifactEvent]:
        """
        Query events with composable filters.

        Args:
            artifact_id: Filter by artifact ID
            event_type: Filter by event type
            since: Filter events on or after this timestamp
            actor: Filter by actor
            where: Custom filter predicate
            limit: Maximum number of events to return
            order: "asc" = append order, "desc" = reverse

        Returns:
            List of matching events in specified order
        """
        if limit is not None and limit <= 0:
            return []
        with self._lock:
            self._ensure_indexed()
            if artifact_id is not None:
                indices = list(self._by_artifact_id.get(artifact_id, []))
            else:
                indices = list(range(len(self._events)))
            events = [self._events[i] for i in indices]

        if order == "desc":
            events.reverse()

        results: list[ArtifactEvent] = []
        for event in events:
            if event_type is not None and event.event_type != event_type:
                continue
            if since is not None and event.timestamp < since:
                continue
            if actor is not None and event.actor != actor:
                continue
            if where is not None and not where(event):
                continue
            results.append(event)
            if limit is not None and len(results) >= limit:
                break
        return results

    def events_for(self, artifact_id: str) -> list[ArtifactEvent]:
        """All events for one artifact, in append order."""
        return self.query(artifact_id=artifact_id)

    def exists(self, artifact_id: str) -> bool:
        with self._lock:
            self._ensure_indexed()
            return artifact_id in self._by_artifact_id

    def snapshot(self, artifact_id: str) -> Artifact | None:
        """
        Compute current state of an artifact by folding its events.

        Returns:
            Artifact or None if the artifact is not found
        """
        return fold_events(self.events_for(artifact_id))

    def require(self, artifact_id: str, *, with_content: bool = False) -> Artifact:
        artifact = self.snapshot(artifact_id)
        if artifact is None:
            raise UnknownArtifact(artifact_id)
        if with_content:
            artifact.content = self.content.get(artifact.content_id)
        return artifact

    def artifact_ids(self, session_id: str | None = None) -> list[str]:
        """Artifact ids in creation order, optionally for one session."""
        with self._lock:
            self._ensure_indexed()
            if session_id is not None:
                return list(self._by_session_id.get(session_id, []))
            seen: dict[str, None] = {}
            for event in self._events:
                seen.setdefault(event.artifact_id, None)
            return list(seen)

    def list_artifacts(
        self,
        session_id: str | None = None,
        *,
        status: str | None = None,
    ) -> list[Artifact]:
        artifacts = [self.require(aid) for aid in self.artifact_ids(session_id)]
        if status is not None:
            artifacts = [a for a in artifacts if a.status.value == status]
        return artifacts

    def versions(self, artifact_id: str, *, with_content: bool = True) -> list[ArtifactVersion]:
        """Version rows ordered by version, content attached from the CAS."""
        with self._lock:
            self._ensure_indexed()
            rows = sorted(self._versions.get(artifact_id, []), key=lambda v: v.version)
        if not with_content:
            return rows
        return [
            ArtifactVersion(
                artifact_id=v.artifact_id,
                version=v.version,
                content_id=v.content_id,
                change_summary=v.change_summary,
                author=v.author,
                created_at=v.created_at,
                content=self.content.get(v.content_id),
            )
            for v in rows
        ]

    def max_version(self, artifact_id: str) -> int:
        with self._lock:
            self._ensure_indexed()
            return max((v.version for v in self._versions.get(artifact_id, [])), default=0)

    def reviews(self, artifact_id: str) -> list[ArtifactReview]:
        """Reviews in the order they were recorded."""
        with self._lock:
            self._ensure_indexed()
            return list(self._reviews.get(artifact_id, []))

    def history(self, artifact_id: str) -> list[dict[str, Any]]:
        """Audit trail: events for an artifact as plain dicts."""
        return [e.to_dict() for e in self.events_for(artifact_id)]

    def count(self) -> int:
        """Count total events in the log."""
        with self._lock:
            self._ensure_indexed()
            return len(self._events)

    def verify_versions(self, artifact_id: str) -> list[int]:
        """Versions whose stored content no longer matches its content_id."""
        return [v.version for v in self.versions(artifact_id, with_content=False)
                if not self.content.verify(v.content_id)]
