"""Tests for working-context snapshots and rebuild."""

from __future__ import annotations

import pytest

from conftest import write
from ctxmem.context.snapshot_store import SnapshotStore, rebuild_context
from ctxmem.context.working import WorkingContext, replay
from ctxmem.errors import SnapshotMissing
from ctxmem.ledger.store import LedgerStore


@pytest.fixture
def snapshots(data_dir) -> SnapshotStore:
    return SnapshotStore(data_dir)


def test_resume_from_snapshot_replays_only_the_tail(ledger: LedgerStore, snapshots: SnapshotStore) -> None:
    for i in range(1, 11):
        write(ledger, "s1", "decision", f"decision {i}", turn=i)
    at_ten = replay("s1", ledger.query("s1"))
    ack = snapshots.save_snapshot("s1", at_ten)
    assert ack.last_applied_seq == 10

    for i in range(11, 15):
        write(ledger, "s1", "decision", f"decision {i}", turn=i)

    resumed = rebuild_context("s1", ledger, snapshots)
    assert resumed.last_applied_seq == 14
    assert resumed.active_decisions == [f"decision {i}" for i in range(1, 15)]
    assert resumed.to_dict() == replay("s1", ledger.query("s1")).to_dict()


def test_snapshot_is_a_shortcut_not_the_source(ledger: LedgerStore, snapshots: SnapshotStore) -> None:
    write(ledger, "s1", "decision", "from the ledger")
    # A snapshot whose cursor is already past entry 1 keeps its own view of it.
    stale = WorkingContext(session_id="s1", active_decisions=["from the snapshot"], last_applied_seq=1)
    snapshots.save_snapshot("s1", stale)

    ctx = rebuild_context("s1", ledger, snapshots)
    assert ctx.active_decisions == ["from the snapshot"]


def test_missing_snapshot_falls_back_to_full_replay(ledger: LedgerStore, snapshots: SnapshotStore) -> None:
    write(ledger, "s1", "decision", "a")
    write(ledger, "s1", "decision", "b")

    with pytest.raises(SnapshotMissing):
        snapshots.require("s1")
    assert snapshots.load_snapshot("s1") is None

    ctx = rebuild_context("s1", ledger, snapshots)
    assert ctx.active_decisions == ["a", "b"]
    assert ctx.last_applied_seq == 2


def test_corrupt_snapshot_is_treated_as_absent(ledger: LedgerStore, snapshots: SnapshotStore) -> None:
    write(ledger, "s1", "constraint", "No PII")
    path = snapshots.snapshot_path("s1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    assert snapshots.exists("s1")
    assert snapshots.load_snapshot("s1") is None
    assert rebuild_context("s1", ledger, snapshots).active_constraints == ["No PII"]


def test_unknown_format_is_ignored(snapshots: SnapshotStore) -> None:
    path = snapshots.snapshot_path("s1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('{"format": 99, "state": {"session_id": "s1"}}', encoding="utf-8")
    assert snapshots.load_snapshot("s1") is None


def test_save_rejects_state_of_another_session(snapshots: SnapshotStore) -> None:
    with pytest.raises(ValueError):
        snapshots.save_snapshot("s1", WorkingContext(session_id="s2"))


def test_save_replaces_previous_snapshot(snapshots: SnapshotStore) -> None:
    snapshots.save_snapshot("s1", WorkingContext(session_id="s1", intent_summary="old", last_applied_seq=1))
    snapshots.save_snapshot("s1", WorkingContext(session_id="s1", intent_summary="new", last_applied_seq=2))

    loaded = snapshots.require("s1")
    assert loaded.intent_summary == "new"
    assert loaded.last_applied_seq == 2
    assert not snapshots.snapshot_path("s1").with_suffix(".json.tmp").exists()
