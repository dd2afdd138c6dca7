"""Tests for artifact event storage, versions and the content store."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ctxmem.artifact.content_store import ContentStore
from ctxmem.artifact.events import ARTIFACT_CREATED, ARTIFACT_TRANSITIONED, ArtifactEvent, create_event
from ctxmem.artifact.lifecycle import ArtifactStatus
from ctxmem.artifact.models import ArtifactVersion
from ctxmem.artifact.snapshot import fold_events
from ctxmem.artifact.store import ArtifactStore
from ctxmem.errors import UnknownArtifact


def _created(artifact_id: str = "a1", session_id: str = "s1") -> ArtifactEvent:
    return create_event(
        ARTIFACT_CREATED,
        artifact_id,
        "agent:writer",
        payload={
            "session_id": session_id,
            "artifact_type": "prd",
            "publish_target": "document-repository",
            "title": "PRD",
            "content_id": "c1",
            "version": 1,
        },
    )


def _moved(action: str, from_: str, to: str, artifact_id: str = "a1", **extra) -> ArtifactEvent:
    payload = {"action": action, "from": from_, "to": to, **extra}
    return create_event(ARTIFACT_TRANSITIONED, artifact_id, "human:alice", payload=payload)


def test_fold_events_computes_state() -> None:
    artifact = fold_events([
        _created(),
        _moved("submit", "draft", "review"),
        _moved("request_revision", "review", "revision_requested", feedback="Shorter please"),
        _moved("dispatch_revision", "revision_requested", "revising"),
        _moved("complete_revision", "revising", "review", version=2, content_id="c2"),
    ])

    assert artifact.status == ArtifactStatus.REVIEW
    assert artifact.version == 2
    assert artifact.content_id == "c2"
    assert artifact.feedback == "Shorter please"
    assert artifact.created_by == "agent:writer"
    assert fold_events([]) is None


def test_fold_events_rejects_out_of_order_log() -> None:
    with pytest.raises(ValueError, match="recorded from"):
        fold_events([_created(), _moved("approve", "review", "approved")])
    with pytest.raises(ValueError, match="First event"):
        fold_events([_moved("submit", "draft", "review")])
    with pytest.raises(ValueError, match="same artifact_id"):
        fold_events([_created("a1"), _moved("submit", "draft", "review", artifact_id="a2")])
    with pytest.raises(ValueError):
        fold_events([_created(), _created()])


def test_event_type_is_validated() -> None:
    with pytest.raises(ValueError):
        ArtifactEvent(event_type="artifact.deleted", artifact_id="a1", timestamp=datetime.now(timezone.utc), actor="x")


def test_store_indexes_survive_reopen(data_dir: Path) -> None:
    store = ArtifactStore(data_dir)
    store.append_event(_created("a1", "s1"))
    store.append_event(_created("a2", "s2"))
    store.append_event(_moved("submit", "draft", "review", artifact_id="a1"))

    reopened = ArtifactStore(data_dir)
    assert reopened.count() == 3
    assert reopened.artifact_ids() == ["a1", "a2"]
    assert reopened.artifact_ids("s2") == ["a2"]
    assert reopened.require("a1").status == ArtifactStatus.REVIEW
    assert [a.artifact_id for a in reopened.list_artifacts(status="draft")] == ["a2"]
    assert [e["event_type"] for e in reopened.history("a1")] == [ARTIFACT_CREATED, ARTIFACT_TRANSITIONED]

    with pytest.raises(UnknownArtifact):
        reopened.require("missing")
    assert reopened.snapshot("missing") is None


def test_query_limit_zero_returns_nothing(artifact_store: ArtifactStore) -> None:
    artifact_store.append_event(_created("a1"))
    artifact_store.append_event(_moved("submit", "draft", "review"))

    assert artifact_store.query(limit=0) == []
    assert artifact_store.query(artifact_id="a1", order="desc", limit=0) == []
    assert len(artifact_store.query(limit=1)) == 1


def test_versions_are_write_once(artifact_store: ArtifactStore) -> None:
    content_id = artifact_store.store_content("Body v1")
    version = ArtifactVersion(
        artifact_id="a1", version=1, content_id=content_id, change_summary="initial",
        author="agent:writer", created_at=datetime.now(timezone.utc),
    )
    artifact_store.append_version(version)
    with pytest.raises(ValueError):
        artifact_store.append_version(version)

    [loaded] = artifact_store.versions("a1")
    assert loaded.content == "Body v1"
    assert artifact_store.max_version("a1") == 1
    assert artifact_store.max_version("other") == 0


def test_content_store_is_content_addressed(tmp_path: Path) -> None:
    store = ContentStore(tmp_path / "content")
    first = store.store("same body")
    second = store.store("same body")

    assert first == second == ContentStore.compute_hash("same body")
    assert store.get(first) == "same body"
    assert store.exists(first)
    assert store.get("") is None
    assert store.get("ff" * 32) is None
    assert store._content_path(first).parent.name == first[:2]


def test_verify_versions_detects_tampering(artifact_store: ArtifactStore) -> None:
    content_id = artifact_store.store_content("original")
    artifact_store.append_version(ArtifactVersion(
        artifact_id="a1", version=1, content_id=content_id, change_summary="initial",
        author="agent:writer", created_at=datetime.now(timezone.utc),
    ))
    assert artifact_store.verify_versions("a1") == []

    path = artifact_store.content._content_path(content_id)
    path.write_text(json.dumps({"_type": "text", "data": "edited behind our back"}), encoding="utf-8")
    assert artifact_store.verify_versions("a1") == [1]
