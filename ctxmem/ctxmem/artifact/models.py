"""Artifact records: the folded Artifact, its immutable versions, and human reviews."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..util import parse_ts
from .events import TARGET_NONE
from .lifecycle import INITIAL_STATUS, TERMINAL_STATUSES, ArtifactStatus, allowed_actions


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    PUBLISH = "publish"
    REJECT = "reject"


@dataclass
class Artifact:
    """
    Computed state of an artifact by folding its event history.

    This is a projection, not stored data. It can always be recomputed
    from the event log.
    """

    artifact_id: str
    session_id: str
    artifact_type: str
    title: str
    publish_target: str = TARGET_NONE
    status: ArtifactStatus = INITIAL_STATUS
    version: int = 1
    content_id: str = ""
    content: str | None = None  # loaded from the content store on demand

    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    feedback: str | None = None
    last_error: str | None = None
    target_config: dict[str, Any] = field(default_factory=dict)

    external_url: str | None = None
    external_id: str | None = None
    published_at: datetime | None = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def next_actions(self) -> list[str]:
        return allowed_actions(self.status)

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        result: dict[str, Any] = {
            "artifact_id": self.artifact_id,
            "session_id": self.session_id,
            "artifact_type": self.artifact_type,
            "title": self.title,
            "publish_target": self.publish_target,
            "status": self.status.value,
            "version": self.version,
            "content_id": self.content_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "feedback": self.feedback,
            "last_error": self.last_error,
            "target_config": dict(self.target_config),
            "external_url": self.external_url,
            "external_id": self.external_id,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }
        if include_content:
            result["content"] = self.content
        return result


@dataclass(frozen=True)
class ArtifactVersion:
    """Immutable content snapshot at a given version. Write-once."""

    artifact_id: str
    version: int
    content_id: str
    change_summary: str
    author: str
    created_at: datetime
    content: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "version": self.version,
            "content_id": self.content_id,
            "change_summary": self.change_summary,
            "author": self.author,
            "created_at": self.created_at.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        result = self.to_row()
        result["content"] = self.content
        return result

    @classmethod
    def from_row(cls, row: dict[str, Any], *, content: str | None = None) -> ArtifactVersion:
        return cls(
            artifact_id=row["artifact_id"],
            version=int(row["version"]),
            content_id=row["content_id"],
            change_summary=row.get("change_summary", ""),
            author=row.get("author", ""),
            created_at=parse_ts(row["created_at"]),  # type: ignore[arg-type]
            content=content,
        )


@dataclass(frozen=True)
class ArtifactReview:
    """A single human decision against a specific artifact version. Write-once."""

    review_id: str
    artifact_id: str
    version_reviewed: int
    action: ReviewAction
    reviewer: str
    created_at: datetime
    feedback: str | None = None
    inline_comments: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_id": self.review_id,
            "artifact_id": self.artifact_id,
            "version_reviewed": self.version_reviewed,
            "action": self.action.value,
            "reviewer": self.reviewer,
            "created_at": self.created_at.isoformat(),
            "feedback": self.feedback,
            "inline_comments": [dict(c) for c in self.inline_comments],
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> ArtifactReview:
        return cls(
            review_id=row["review_id"],
            artifact_id=row["artifact_id"],
            version_reviewed=int(row["version_reviewed"]),
            action=ReviewAction(row["action"]),
            reviewer=row["reviewer"],
            created_at=parse_ts(row["created_at"]),  # type: ignore[arg-type]
            feedback=row.get("feedback"),
            inline_comments=tuple(row.get("inline_comments") or ()),
        )


@dataclass(frozen=True)
class RevisedContent:
    """What a revision collaborator hands back."""

    content: str
    change_summary: str = "revision"
    author: str = "agent:reviser"
