"""
Working context cache and snapshots.

The working context is a derived, rebuildable cache over the ledger:
snapshot + replay of later entries always reproduces it.
"""

from .snapshot_store import SnapshotAck, SnapshotStore, rebuild_context
from .working import (
    ArtifactRef,
    PlanStep,
    UPDATE_RULES,
    WorkingContext,
    apply_entry,
    replay,
)

__all__ = [
    "ArtifactRef",
    "PlanStep",
    "UPDATE_RULES",
    "WorkingContext",
    "apply_entry",
    "replay",
    "SnapshotAck",
    "SnapshotStore",
    "rebuild_context",
]
