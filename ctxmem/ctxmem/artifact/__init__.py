"""
Approval-gated artifact lifecycle (event-sourced).

Generated documents move draft → review → approved → publishing → published,
with revision loops in between. This package provides:

- Content-addressed storage (CAS) for artifact bodies
- Append-only event log folded into the current Artifact
- Write-once version and review tables
- A transition table that rejects any unlisted (state, action) pair
- Human gates on approve, request_revision, reject, publish, retry and cancel
- Publishers for a document repository and an issue tracker
"""

from .content_store import ContentStore
from .events import (
    ARTIFACT_CREATED,
    ARTIFACT_TRANSITIONED,
    PUBLISH_TARGETS,
    TARGET_DOCUMENT_REPOSITORY,
    TARGET_ISSUE_TRACKER,
    TARGET_NONE,
    ArtifactEvent,
)
from .lifecycle import Action, ArtifactStatus, allowed_actions, is_human, next_status
from .manager import ArtifactLifecycleManager
from .models import Artifact, ArtifactReview, ArtifactVersion, ReviewAction, RevisedContent
from .publishers import (
    DocumentRepositoryPublisher,
    IssueTrackerConfig,
    IssueTrackerPublisher,
    Publisher,
    PublishReceipt,
    clear_publishers,
    get_publisher,
    list_publishers,
    register_default_publishers,
    register_publisher,
)
from .snapshot import fold_events
from .store import ArtifactStore

__all__ = [
    # Events
    "ArtifactEvent",
    "ARTIFACT_CREATED",
    "ARTIFACT_TRANSITIONED",
    "PUBLISH_TARGETS",
    "TARGET_DOCUMENT_REPOSITORY",
    "TARGET_ISSUE_TRACKER",
    "TARGET_NONE",
    # Lifecycle
    "Action",
    "ArtifactStatus",
    "allowed_actions",
    "is_human",
    "next_status",
    # Records
    "Artifact",
    "ArtifactReview",
    "ArtifactVersion",
    "ReviewAction",
    "RevisedContent",
    "fold_events",
    # Storage
    "ArtifactStore",
    "ContentStore",
    # Manager
    "ArtifactLifecycleManager",
    # Publishers
    "Publisher",
    "PublishReceipt",
    "DocumentRepositoryPublisher",
    "IssueTrackerConfig",
    "IssueTrackerPublisher",
    "register_publisher",
    "get_publisher",
    "list_publishers",
    "clear_publishers",
    "register_default_publishers",
]
