"""
Tests for the ctxmem CLI commands.

The run_* functions are called directly with a Config and their output is
read from capsys, like the click commands do through sys.exit.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from ctxmem.cli import cli
from ctxmem.commands import build_coordinator
from ctxmem.commands.artifact_cmd import (
    run_artifact_cancel,
    run_artifact_list,
    run_artifact_publish,
    run_artifact_recover,
    run_artifact_review,
    run_artifact_show,
    run_artifact_versions,
)
from ctxmem.commands.ledger_cmd import run_ledger_query, run_ledger_why, run_ledger_write
from ctxmem.commands.memory_cmd import run_memory_search, run_promote
from ctxmem.commands.session_cmd import (
    run_session_abandon,
    run_session_end,
    run_session_pause,
    run_session_resume,
    run_session_show,
    run_session_start,
)
from ctxmem.config import Config


@pytest.fixture(autouse=True)
def _wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep rich from wrapping long error lines in captured output
    monkeypatch.setenv("COLUMNS", "400")


@pytest.fixture
def session_id(config: Config) -> str:
    coord = build_coordinator(config)
    try:
        return coord.start_session("alice", intent="Checkout redesign").session_id
    finally:
        coord.artifacts.shutdown(wait=False)


@pytest.fixture
def artifact_id(config: Config, session_id: str) -> str:
    coord = build_coordinator(config)
    try:
        artifact = coord.create_artifact(
            session_id, "prd", "Checkout PRD", "# Checkout\n\nSMS confirmation.",
            publish_target="document-repository",
        )
        return artifact.artifact_id
    finally:
        coord.artifacts.shutdown(wait=False)


# -----------------------------------------------------------------------------
# session
# -----------------------------------------------------------------------------


def test_session_start_and_show(config: Config, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_session_start(config, "alice", intent="Plan launch") == 0
    out = capsys.readouterr().out
    assert "Started session" in out

    assert run_session_show(config, output_json=True) == 0
    [session] = json.loads(capsys.readouterr().out)
    assert session["user_id"] == "alice"
    assert session["status"] == "active"

    assert run_session_show(config, session["session_id"], output_json=True) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["context"]["intent_summary"] == "Plan launch"


def test_session_start_rejects_bad_user(config: Config, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_session_start(config, "../alice") == 1
    assert "invalid identifier" in capsys.readouterr().err


def test_session_pause_resume_end(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_ledger_write(config, session_id, "decision", "product", "SMS confirmation") == 0
    capsys.readouterr()

    assert run_session_pause(config, session_id) == 0
    assert "paused" in capsys.readouterr().out

    assert run_session_resume(config, session_id) == 0
    assert "SMS confirmation" in capsys.readouterr().out

    assert run_session_end(config, session_id) == 0
    assert "promoted 1, failed 0" in capsys.readouterr().out

    assert run_session_end(config, session_id) == 1
    assert "completed, not active" in capsys.readouterr().err


def test_session_abandon(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_session_abandon(config, session_id) == 0
    assert "abandoned" in capsys.readouterr().out
    assert run_session_resume(config, session_id) == 1


def test_unknown_session(config: Config, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_session_show(config, "nope") == 1
    assert "Unknown session" in capsys.readouterr().err


# -----------------------------------------------------------------------------
# ledger
# -----------------------------------------------------------------------------


def test_ledger_write_and_query(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_ledger_write(
        config, session_id, "decision", "product", "Mobile-first, no email in v1",
        reasoning="Users are on phones",
        options_json='{"considered": ["email", "sms"], "chosen": "sms"}',
    )
    assert code == 0
    assert capsys.readouterr().out.startswith("#2 ")  # after the context-injection entry

    assert run_ledger_query(config, session_id, entry_types=["decision"], output_json=True) == 0
    [entry] = json.loads(capsys.readouterr().out)
    assert entry["summary"] == "Mobile-first, no email in v1"
    assert entry["sequence_num"] == 2
    assert entry["source"] == "human:cli"
    assert entry["promoted"] is False

    assert run_ledger_query(config, session_id) == 0
    assert "Entries: 2" in capsys.readouterr().out


def test_ledger_write_rejects_bad_input(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_ledger_write(config, session_id, "decision", "product", "x", options_json="{nope") == 2
    assert "Invalid JSON" in capsys.readouterr().err

    assert run_ledger_write(config, session_id, "decision", "product", "x", details_json="[1, 2]") == 2
    assert run_ledger_write(config, session_id, "decision", "", "x") == 2
    assert "Invalid entry" in capsys.readouterr().err

    assert run_ledger_write(config, "nope", "decision", "product", "x") == 1


def test_ledger_why(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    run_ledger_write(
        config, session_id, "decision", "product", "No email in v1",
        reasoning="SMS converts better",
        options_json='{"considered": ["email", "sms"], "chosen": "sms"}',
    )
    capsys.readouterr()

    assert run_ledger_why(config, session_id, "why no email") == 0
    out = capsys.readouterr().out
    assert "why: SMS converts better" in out
    assert "chosen: sms" in out

    assert run_ledger_why(config, session_id, "kubernetes") == 1
    assert "Nothing in the ledger explains" in capsys.readouterr().out


# -----------------------------------------------------------------------------
# memory
# -----------------------------------------------------------------------------


def test_promote_and_search(config: Config, session_id: str, capsys: pytest.CaptureFixture[str]) -> None:
    run_ledger_write(config, session_id, "decision", "product", "Checkout confirms by SMS")
    run_ledger_write(config, session_id, "plan-created", "session", "Plan")
    capsys.readouterr()

    assert run_promote(config, session_id, output_json=True) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["promoted_count"] == 1
    assert result["failed_count"] == 0

    assert run_promote(config, session_id) == 0
    assert "Promoted 0, failed 0" in capsys.readouterr().out

    assert run_memory_search(config, "alice/project-facts", "checkout sms", output_json=True) == 0
    [hit] = json.loads(capsys.readouterr().out)
    assert hit["record"]["text"].startswith("[decision] Checkout confirms by SMS")

    assert run_memory_search(config, "not-a-namespace", "x") == 2


def test_promote_unknown_session(config: Config, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_promote(config, "nope") == 1
    assert "Unknown session" in capsys.readouterr().err


# -----------------------------------------------------------------------------
# artifact
# -----------------------------------------------------------------------------


def test_artifact_list_and_show(
    config: Config, session_id: str, artifact_id: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_artifact_list(config, session_id=session_id, output_json=True) == 0
    [item] = json.loads(capsys.readouterr().out)
    assert item["artifact_id"] == artifact_id
    assert item["status"] == "review"
    assert "content" not in item

    assert run_artifact_show(config, artifact_id, output_json=True, history=True) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["artifact"]["content"].startswith("# Checkout")
    assert [e["event_type"] for e in data["history"]][0] == "artifact.created"

    assert run_artifact_versions(config, artifact_id, output_json=True) == 0
    assert [v["version"] for v in json.loads(capsys.readouterr().out)] == [1]

    assert run_artifact_show(config, "missing") == 1
    assert "Artifact not found" in capsys.readouterr().err


def test_artifact_review_and_publish_to_document_repository(
    config: Config, artifact_id: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_artifact_review(config, artifact_id, "approve", "human:alice") == 0
    assert "artifact is approved" in capsys.readouterr().out

    assert run_artifact_publish(
        config, artifact_id, "human:alice", target_config_json='{"folder": "prds"}',
    ) == 0
    assert "Published" in capsys.readouterr().out

    published = config.document_root_path() / "prds" / "checkout-prd.md"
    assert published.exists()
    assert "SMS confirmation." in published.read_text(encoding="utf-8")


def test_artifact_review_reports_allowed_actions(
    config: Config, artifact_id: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_artifact_review(config, artifact_id, "approve", "agent:orchestrator") == 1
    err = capsys.readouterr().err
    assert "requires a human actor" in err
    assert "current: review" in err

    assert run_artifact_review(config, artifact_id, "request_revision", "human:alice") == 1
    assert "requires feedback" in capsys.readouterr().err

    assert run_artifact_review(config, artifact_id, "approve", "human:alice", version=7) == 1
    assert "version 7" in capsys.readouterr().err


def test_artifact_publish_rejects_bad_json(
    config: Config, artifact_id: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_artifact_publish(config, artifact_id, "human:alice", target_config_json="{") == 2
    assert "Invalid JSON" in capsys.readouterr().err


def test_artifact_cancel_and_recover(
    config: Config, artifact_id: str, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_artifact_cancel(config, artifact_id, "human:alice") == 1
    assert "allowed: approve, reject, request_revision" in capsys.readouterr().err

    assert run_artifact_recover(config) == 0
    assert "Recovered 0 artifacts" in capsys.readouterr().out


# -----------------------------------------------------------------------------
# click wiring
# -----------------------------------------------------------------------------


def test_click_group_wires_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    data_dir = tmp_path / "state"

    result = runner.invoke(cli, ["--data-dir", str(data_dir), "session", "start", "alice"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["--data-dir", str(data_dir), "session", "show", "--json"])
    assert result.exit_code == 0
    [session] = json.loads(result.stdout)
    assert (data_dir / "sessions" / session["session_id"] / "session.json").exists()


def test_click_reports_bad_config(tmp_path: Path) -> None:
    bad = tmp_path / "ctxmem.toml"
    bad.write_text("checkpoint_interval = 0\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(bad), "session", "show"])
    assert result.exit_code != 0
    assert "checkpoint_interval" in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "ctxmem" in result.output
