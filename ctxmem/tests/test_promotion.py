"""Tests for promotion of durable ledger facts to long-term memory."""

from __future__ import annotations

import json

import pytest

from conftest import RecordingGateway, write
from ctxmem.errors import PromotionPartialFailure
from ctxmem.ledger.store import LedgerStore
from ctxmem.memory import promotion as promotion_mod
from ctxmem.memory.gateway import LocalMemoryGateway
from ctxmem.memory.promotion import PromotionEngine, format_record


def _session_with_facts(ledger: LedgerStore) -> None:
    write(ledger, "s1", "decision", "Mobile-first", reasoning="Users are on phones",
          options={"considered": ["mobile", "web"], "chosen": "mobile"})
    write(ledger, "s1", "constraint", "No PII in logs", scope="legal")
    write(ledger, "s1", "decision", "Launch in March")
    write(ledger, "s1", "plan-created", "Plan", details={"steps": [{"step_id": "a"}]})
    write(ledger, "s1", "artifact-created", "PRD", details={"artifact_id": "x"})
    write(ledger, "s1", "research-finding", "Competitor pricing seen once")
    write(ledger, "s1", "research-finding", "Market grows 10%/yr", details={"durable": True})
    write(ledger, "s1", "checkpoint", "Checkpoint", source="system")


def test_partial_failure_marks_only_successes(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    _session_with_facts(ledger)
    recording_gateway.reject = lambda record: "rejected" if "No PII" in record.text else None
    engine = PromotionEngine(ledger, recording_gateway, resolve_user=lambda sid: "alice")

    result = engine.promote("s1")

    assert result.promoted_count == 3
    assert result.failed_count == 1
    assert result.failures == {2: "rejected"}
    assert result.partial
    assert len(result.external_ids) == 3
    assert {r.namespace for r in recording_gateway.records} == {"alice/project-facts"}

    promoted = [e.sequence_num for e in ledger.query("s1", promoted=True)]
    assert promoted == [1, 3, 7]
    assert ledger.get("s1", 2).promoted is False

    # Retrying resubmits only what failed.
    recording_gateway.reject = lambda record: None
    again = engine.promote("s1")
    assert again.promoted_count == 1
    assert again.failed_count == 0
    assert [e.sequence_num for e in ledger.query("s1", promoted=True)] == [1, 2, 3, 7]


def test_rerun_after_full_success_submits_nothing(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    _session_with_facts(ledger)
    engine = PromotionEngine(ledger, recording_gateway)

    first = engine.promote("s1")
    calls = recording_gateway.calls
    second = engine.promote("s1")

    assert first.promoted_count == 4
    assert second.promoted_count == 0
    assert recording_gateway.calls == calls
    assert len(recording_gateway.records) == 4


def test_session_scoped_types_are_never_promoted(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    _session_with_facts(ledger)
    engine = PromotionEngine(ledger, recording_gateway)
    engine.promote("s1")

    for seq in (4, 5, 6, 8):
        assert ledger.get("s1", seq).promoted is False


def test_research_findings_can_be_disabled(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    _session_with_facts(ledger)
    engine = PromotionEngine(ledger, recording_gateway, promote_research_findings=False)
    assert [e.sequence_num for e in engine.eligible("s1")] == [1, 2, 3]


def test_gateway_outage_fails_batch_and_keeps_entries_eligible(
    ledger: LedgerStore, recording_gateway: RecordingGateway
) -> None:
    _session_with_facts(ledger)
    recording_gateway.unavailable = True
    engine = PromotionEngine(ledger, recording_gateway, batch_size=2)

    result = engine.promote("s1")
    assert result.promoted_count == 0
    assert result.failed_count == 4
    assert set(result.failures.values()) == {"gateway_unavailable"}
    assert recording_gateway.calls == 2
    assert len(engine.eligible("s1")) == 4


def test_batches_are_bounded(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    for i in range(7):
        write(ledger, "s1", "decision", f"d{i}")
    engine = PromotionEngine(ledger, recording_gateway, batch_size=3)

    assert engine.promote("s1").promoted_count == 7
    assert recording_gateway.calls == 3


def test_strict_mode_raises_after_committing_successes(
    ledger: LedgerStore, recording_gateway: RecordingGateway
) -> None:
    _session_with_facts(ledger)
    recording_gateway.reject = lambda record: "rejected" if "March" in record.text else None
    engine = PromotionEngine(ledger, recording_gateway)

    with pytest.raises(PromotionPartialFailure) as exc:
        engine.promote("s1", strict=True)

    assert exc.value.result.promoted_count == 3
    assert len(ledger.query("s1", promoted=True)) == 3


def test_format_record_carries_summary_reasoning_and_scope(ledger: LedgerStore) -> None:
    write(ledger, "s1", "decision", "Mobile-first", reasoning="Users are on phones",
          options={"considered": ["mobile", "web"], "chosen": "mobile"})
    record = format_record(ledger.get("s1", 1), "alice/project-facts")

    assert record.text == "[decision] Mobile-first\nWhy: Users are on phones\nChosen: mobile\nScope: product"
    assert record.source_key == "s1#1"
    assert record.metadata["sequence_num"] == 1


def test_promotion_against_local_gateway_is_retrievable(ledger: LedgerStore, local_gateway: LocalMemoryGateway) -> None:
    write(ledger, "s1", "decision", "Use Postgres for storage", reasoning="Team knows it")
    engine = PromotionEngine(ledger, local_gateway)
    engine.promote("s1")

    hits = local_gateway.retrieve("default/project-facts", "postgres storage")
    assert len(hits) == 1
    assert hits[0].record_id == ledger.get("s1", 1).external_id


def test_batch_size_must_be_positive(ledger: LedgerStore, recording_gateway: RecordingGateway) -> None:
    with pytest.raises(ValueError):
        PromotionEngine(ledger, recording_gateway, batch_size=0)


def test_record_that_cannot_be_formatted_fails_alone(
    ledger: LedgerStore, recording_gateway: RecordingGateway, monkeypatch: pytest.MonkeyPatch
) -> None:
    _session_with_facts(ledger)
    real_format = promotion_mod.format_record

    def format_or_fail(entry, namespace):
        if entry.sequence_num == 3:
            raise TypeError("unformattable options")
        return real_format(entry, namespace)

    monkeypatch.setattr(promotion_mod, "format_record", format_or_fail)
    result = PromotionEngine(ledger, recording_gateway).promote("s1")

    assert result.failures == {3: promotion_mod.ERROR_INVALID_RECORD}
    assert result.promoted_count == 3
    assert [e.sequence_num for e in ledger.query("s1", promoted=True)] == [1, 2, 7]
    assert ledger.get("s1", 3).promoted is False


def test_rows_with_list_options_still_promote_and_recall(
    ledger: LedgerStore, recording_gateway: RecordingGateway
) -> None:
    row = {
        "session_id": "s1", "sequence_num": 1, "entry_id": "01LEGACY", "timestamp": None,
        "entry_type": "decision", "scope": "architecture", "summary": "Use Postgres",
        "source": "agent:orchestrator", "turn": 1, "options": ["postgres", "mysql"],
    }
    path = ledger.ledger_path("s1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(row) + "\n", encoding="utf-8")
    reopened = LedgerStore(ledger.data_dir)

    result = PromotionEngine(reopened, recording_gateway).promote("s1")

    assert result.promoted_count == 1
    assert recording_gateway.records[0].text == "[decision] Use Postgres\nScope: architecture"
    [(entry, _)] = reopened.recall("s1", "postgres")
    assert entry.sequence_num == 1
