"""Pytest configuration and fixtures."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from ctxmem.artifact.manager import ArtifactLifecycleManager
from ctxmem.artifact.models import Artifact
from ctxmem.artifact.publishers import PublishReceipt, Publisher, clear_publishers
from ctxmem.artifact.store import ArtifactStore
from ctxmem.config import Config
from ctxmem.errors import GatewayUnavailable, PublishFailure
from ctxmem.ledger.entry_types import create_entry
from ctxmem.ledger.store import LedgerStore
from ctxmem.memory.gateway import LocalMemoryGateway, MemoryGateway, MemoryRecord, RecordOutcome, RetrievedRecord
from ctxmem.session.coordinator import SessionCoordinator


@pytest.fixture(autouse=True)
def _clean_publisher_registry():
    """Publishers live in a module-level registry; keep tests isolated."""
    clear_publishers()
    yield
    clear_publishers()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".ctxmem"
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir: Path) -> Config:
    return Config(data_dir=data_dir, turn_wait_s=0.5)


@pytest.fixture
def ledger(data_dir: Path) -> LedgerStore:
    return LedgerStore(data_dir)


@pytest.fixture
def local_gateway(data_dir: Path) -> LocalMemoryGateway:
    return LocalMemoryGateway(data_dir / "memory")


@pytest.fixture
def artifact_store(data_dir: Path) -> ArtifactStore:
    return ArtifactStore(data_dir)


@pytest.fixture
def manager(artifact_store: ArtifactStore):
    mgr = ArtifactLifecycleManager(artifact_store, publish_timeout_s=2.0, revision_timeout_s=2.0)
    yield mgr
    mgr.shutdown(wait=False)


@pytest.fixture
def coordinator(config: Config, local_gateway: LocalMemoryGateway):
    coord = SessionCoordinator(config, gateway=local_gateway)
    yield coord
    coord.artifacts.shutdown(wait=False)


@pytest.fixture
def make_coordinator(config: Config, local_gateway: LocalMemoryGateway):
    """Build extra coordinators over the same data dir (simulates a restart)."""
    built: list[SessionCoordinator] = []

    def _make(**overrides: Any) -> SessionCoordinator:
        cfg = replace(config, **overrides) if overrides else config
        coord = SessionCoordinator(cfg, gateway=local_gateway)
        built.append(coord)
        return coord

    yield _make
    for coord in built:
        coord.artifacts.shutdown(wait=False)


def write(ledger: LedgerStore, session_id: str, entry_type: str, summary: str, **kwargs: Any):
    """Append an entry with sensible defaults for scope and source."""
    scope = kwargs.pop("scope", "product")
    source = kwargs.pop("source", "agent:orchestrator")
    return ledger.append(session_id, create_entry(session_id, entry_type, scope, summary, source, **kwargs))


def wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> bool:
    """Poll predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------


class RecordingGateway(MemoryGateway):
    """In-memory gateway that can reject chosen records or fail whole batches."""

    def __init__(self) -> None:
        self.records: list[MemoryRecord] = []
        self.calls = 0
        self.reject: Callable[[MemoryRecord], str | None] = lambda record: None
        self.unavailable = False

    def store(self, records: Sequence[MemoryRecord]) -> list[RecordOutcome]:
        self.calls += 1
        if self.unavailable:
            raise GatewayUnavailable("memory service down")
        outcomes = []
        for record in records:
            code = self.reject(record)
            if code:
                outcomes.append(RecordOutcome.failure(code))
                continue
            self.records.append(record)
            outcomes.append(RecordOutcome.success(f"mem-{len(self.records)}"))
        return outcomes

    def retrieve(self, namespace: str, query: str, top_k: int = 5) -> list[RetrievedRecord]:
        if self.unavailable:
            raise GatewayUnavailable("memory service down")
        hits = [
            RetrievedRecord(record_id=f"mem-{i + 1}", namespace=namespace, text=r.text, relevance_score=1.0)
            for i, r in enumerate(self.records)
            if r.namespace == namespace
        ]
        return hits[:top_k]


class FakePublisher(Publisher):
    """Publisher whose behaviour is scripted by the test."""

    def __init__(self, target: str = "document-repository") -> None:
        self.target = target
        self.published: list[tuple[str, int, dict[str, Any]]] = []
        self.fail_with: str | None = None
        self.block = threading.Event()
        self.blocking = False

    def publish(self, artifact: Artifact, target_config: dict[str, Any]) -> PublishReceipt:
        if self.blocking:
            self.block.wait(5.0)
        if self.fail_with:
            raise PublishFailure(artifact.artifact_id, self.fail_with)
        self.published.append((artifact.artifact_id, artifact.version, dict(target_config)))
        return PublishReceipt(
            url=f"https://docs.example.test/{artifact.artifact_id}",
            external_id=f"DOC-{len(self.published)}",
        )


@pytest.fixture
def recording_gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()
