"""
Tool-style façade over the coordinator.

These are the calls an orchestrating agent (or a tool server wrapping it)
makes. Inputs and results are plain JSON-compatible values.
"""

from __future__ import annotations

from typing import Any, Iterable

from ..artifact.models import ReviewAction
from ..context.working import WorkingContext
from ..memory.promotion import PromotionResult
from .coordinator import SessionCoordinator


class MemoryTools:
    def __init__(self, coordinator: SessionCoordinator, *, reviewer: str | None = None):
        """
        Args:
            coordinator: Coordinator that owns the stores
            reviewer: Actor used for review/publish calls that do not name one
                (e.g. "human:alice" for a front end acting for that user)
        """
        self.coordinator = coordinator
        self.reviewer = reviewer

    def _reviewer(self, reviewer: str | None) -> str:
        return reviewer or self.reviewer or ""

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def write_ledger(
        self,
        session_id: str,
        entry_type: str,
        scope: str,
        summary: str,
        reasoning: str | None = None,
        options: dict[str, Any] | None = None,
        refs: dict[str, Any] | None = None,
        source: str = "agent:orchestrator",
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = self.coordinator.write_entry(
            session_id, entry_type, scope, summary, source,
            reasoning=reasoning, options=options, refs=refs, details=details,
        )
        return result.to_dict()

    def query_ledger(
        self,
        session_id: str,
        entry_types: Iterable[str] | None = None,
        scopes: Iterable[str] | None = None,
        since_sequence: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        entries = self.coordinator.ledger.query(
            session_id,
            entry_types=entry_types,
            scopes=scopes,
            since_sequence=since_sequence,
            limit=limit,
        )
        return [e.to_view() for e in entries]

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def save_snapshot(self, session_id: str, state: dict[str, Any] | WorkingContext) -> dict[str, Any]:
        if isinstance(state, dict):
            state = WorkingContext.from_dict(state)
        return self.coordinator.save_snapshot(session_id, state).to_dict()

    def load_snapshot(self, session_id: str) -> dict[str, Any] | None:
        state = self.coordinator.snapshots.load_snapshot(session_id)
        return state.to_dict() if state is not None else None

    # -------------------------------------------------------------------------
    # Long-term memory
    # -------------------------------------------------------------------------

    def promote(self, session_id: str) -> dict[str, Any]:
        result: PromotionResult = self.coordinator.promotion.promote(session_id)
        return result.to_dict()

    def retrieve_memory(self, namespace: str, query: str, top_k: int = 5) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.coordinator.gateway.retrieve(namespace, query, top_k)]

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def list_artifacts(self, session_id: str) -> list[dict[str, Any]]:
        return [a.to_dict(include_content=False) for a in self.coordinator.artifacts.list_artifacts(session_id)]

    def get_artifact(self, artifact_id: str) -> dict[str, Any]:
        return self.coordinator.artifacts.get_artifact(artifact_id).to_dict(include_content=True)

    def get_versions(self, artifact_id: str) -> list[dict[str, Any]]:
        return [v.to_dict() for v in self.coordinator.artifacts.get_versions(artifact_id)]

    def submit_review(
        self,
        artifact_id: str,
        version_reviewed: int,
        action: str,
        feedback: str | None = None,
        inline_comments: list[dict[str, Any]] | None = None,
        *,
        reviewer: str | None = None,
        target_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        review = self.coordinator.artifacts.submit_review(
            artifact_id,
            version_reviewed,
            ReviewAction(action),
            self._reviewer(reviewer),
            feedback=feedback,
            inline_comments=inline_comments,
            target_config=target_config,
        )
        return review.to_dict()

    def request_publish(
        self,
        artifact_id: str,
        target_config: dict[str, Any] | None = None,
        *,
        reviewer: str | None = None,
        wait: bool = False,
    ) -> dict[str, Any]:
        """Returns the artifact after the publishing transition; dispatch continues in the background unless wait."""
        artifact = self.coordinator.artifacts.request_publish(
            artifact_id, target_config or {}, reviewer=self._reviewer(reviewer), wait=wait,
        )
        return artifact.to_dict(include_content=False)

    def retry_publish(self, artifact_id: str, *, reviewer: str | None = None, wait: bool = False) -> dict[str, Any]:
        artifact = self.coordinator.artifacts.retry_publish(
            artifact_id, actor=self._reviewer(reviewer), wait=wait,
        )
        return artifact.to_dict(include_content=False)
