"""
Long-term memory gateway boundary.

The rest of the core sees long-term memory only through two operations:
store(records) and retrieve(namespace, query, top_k). Namespaces partition
memory per owning user and per concern, written as "<user>/<concern>".

The gateway does no extraction or consolidation. Everything stored in the
project-facts namespace has already been curated by the Promotion Engine.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

from ..util import append_jsonl, iter_jsonl, keyword_relevance, new_ulid, safe_segment, utc_now

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# Concerns
PROJECT_FACTS = "project-facts"  # written only by the Promotion Engine
PREFERENCES = "preferences"  # written by an external extraction process

# Per-record error codes
ERROR_EMPTY_TEXT = "empty_text"
ERROR_INVALID_NAMESPACE = "invalid_namespace"
ERROR_GATEWAY_UNAVAILABLE = "gateway_unavailable"
ERROR_REJECTED = "rejected"


def namespace_for(user_id: str, concern: str) -> str:
    return f"{user_id}/{concern}"


def split_namespace(namespace: str) -> tuple[str, str]:
    """Split "<user>/<concern>", raising ValueError on any other shape."""
    parts = namespace.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"namespace must look like '<user>/<concern>': {namespace!r}")
    return safe_segment(parts[0]), safe_segment(parts[1])


@dataclass(frozen=True)
class MemoryRecord:
    """A curated record submitted to long-term memory."""

    namespace: str
    text: str
    source_key: str = ""  # Stable key for deduplication, e.g. "<session>#<seq>"
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "text": self.text,
            "source_key": self.source_key,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RecordOutcome:
    """Result of storing one record: an external id on success, an error code otherwise."""

    ok: bool
    external_id: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, external_id: str) -> RecordOutcome:
        return cls(ok=True, external_id=external_id)

    @classmethod
    def failure(cls, error_code: str) -> RecordOutcome:
        return cls(ok=False, error_code=error_code)


@dataclass(frozen=True)
class RetrievedRecord:
    record_id: str
    namespace: str
    text: str
    relevance_score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": {
                "record_id": self.record_id,
                "namespace": self.namespace,
                "text": self.text,
                "metadata": dict(self.metadata),
            },
            "relevance_score": self.relevance_score,
        }


class MemoryGateway(ABC):
    """Narrow interface to a cross-session memory service."""

    @abstractmethod
    def store(self, records: Sequence[MemoryRecord]) -> list[RecordOutcome]:
        """
        Store records.

        Returns one outcome per input record, in input order. Raises
        GatewayUnavailable/GatewayError only when the whole call failed.
        """

    @abstractmethod
    def retrieve(self, namespace: str, query: str, top_k: int = 5) -> list[RetrievedRecord]:
        """Return up to top_k records ranked by descending relevance."""


class LocalMemoryGateway(MemoryGateway):
    """
    Durable local backend: one JSON Lines file per namespace.

        memory/<user>/<concern>.jsonl

    Records with a source_key are deduplicated, so a retried record gets its
    existing id back instead of a second copy.
    """

    def __init__(self, root: Path):
        self.root = root
        self._lock = threading.Lock()

    def _namespace_path(self, namespace: str) -> Path:
        user, concern = split_namespace(namespace)
        return self.root / user / f"{concern}.jsonl"

    def _rows(self, namespace: str) -> list[dict[str, Any]]:
        return list(iter_jsonl(self._namespace_path(namespace)))

    def store(self, records: Sequence[MemoryRecord]) -> list[RecordOutcome]:
        outcomes: list[RecordOutcome] = []
        with self._lock:
            known: dict[str, dict[str, str]] = {}
            for record in records:
                if not record.text.strip():
                    outcomes.append(RecordOutcome.failure(ERROR_EMPTY_TEXT))
                    continue
                try:
                    path = self._namespace_path(record.namespace)
                except ValueError:
                    outcomes.append(RecordOutcome.failure(ERROR_INVALID_NAMESPACE))
                    continue

                if record.namespace not in known:
                    known[record.namespace] = {
                        row["source_key"]: row["record_id"]
                        for row in self._rows(record.namespace)
                        if row.get("source_key")
                    }
                existing = known[record.namespace].get(record.source_key) if record.source_key else None
                if existing is not None:
                    outcomes.append(RecordOutcome.success(existing))
                    continue

                record_id = new_ulid()
                append_jsonl(
                    path,
                    [
                        {
                            "record_id": record_id,
                            "text": record.text,
                            "source_key": record.source_key,
                            "metadata": dict(record.metadata),
                            "stored_at": utc_now().isoformat(),
                        }
                    ],
                )
                if record.source_key:
                    known[record.namespace][record.source_key] = record_id
                outcomes.append(RecordOutcome.success(record_id))
        return outcomes

    def retrieve(self, namespace: str, query: str, top_k: int = 5) -> list[RetrievedRecord]:
        if top_k <= 0:
            return []
        with self._lock:
            rows = self._rows(namespace)

        scored: list[RetrievedRecord] = []
        for row in rows:
            score = keyword_relevance(query, row["text"]) if query.strip() else 0.0
            if query.strip() and score <= 0:
                continue
            scored.append(
                RetrievedRecord(
                    record_id=row["record_id"],
                    namespace=namespace,
                    text=row["text"],
                    relevance_score=round(score, 4),
                    metadata=row.get("metadata", {}),
                )
            )

        # Stable: best score first, newest first among equals
        indexed = list(enumerate(scored))
        indexed.sort(key=lambda pair: (-pair[1].relevance_score, -pair[0]))
        return [record for _, record in indexed[:top_k]]

    def count(self, namespace: str) -> int:
        return len(self._rows(namespace))


def build_gateway(config: Config) -> MemoryGateway:
    """Pick the gateway backend named by configuration."""
    if config.gateway.kind == "http":
        from .http import HttpGatewayConfig, HttpMemoryGateway

        return HttpMemoryGateway(
            HttpGatewayConfig.from_config(config),
        )
    return LocalMemoryGateway(config.data_dir / "memory")
