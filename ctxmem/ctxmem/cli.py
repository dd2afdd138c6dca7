"""CLI entrypoint for ctxmem."""

import logging
import sys
from pathlib import Path

import click

from . import __version__


def _setup_logging(verbose: bool) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(__version__, prog_name="ctxmem")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to ctxmem.toml (defaults to ./ctxmem.toml if present)",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Override the data directory from the config",
)
@click.option("--verbose", "-V", is_flag=True, help="Debug logging to stderr")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, data_dir: Path | None, verbose: bool) -> None:
    """ctxmem - tiered context memory for long-running agent sessions.

    Ledger, working-context snapshots, long-term memory promotion and
    approval-gated artifacts.
    """
    from dataclasses import replace

    from .config import load_config
    from .errors import ConfigError

    _setup_logging(verbose)
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    if data_dir is not None:
        config = replace(config, data_dir=data_dir)
    ctx.obj["config"] = config


# -----------------------------------------------------------------------------
# session
# -----------------------------------------------------------------------------


@cli.group()
def session() -> None:
    """Session lifecycle commands."""
    pass


@session.command("start")
@click.argument("user_id")
@click.option("--intent", default="", help="What the session is for")
@click.option("--seed-query", default=None, help="Query for seeding from long-term memory (defaults to intent)")
@click.pass_context
def session_start(ctx: click.Context, user_id: str, intent: str, seed_query: str | None) -> None:
    """Start a session for USER_ID, seeded from long-term memory."""
    from .commands.session_cmd import run_session_start

    sys.exit(run_session_start(ctx.obj["config"], user_id, intent=intent, seed_query=seed_query))


@session.command("resume")
@click.argument("session_id")
@click.pass_context
def session_resume(ctx: click.Context, session_id: str) -> None:
    """Rebuild a session's working context from snapshot + ledger."""
    from .commands.session_cmd import run_session_resume

    sys.exit(run_session_resume(ctx.obj["config"], session_id))


@session.command("pause")
@click.argument("session_id")
@click.pass_context
def session_pause(ctx: click.Context, session_id: str) -> None:
    """Checkpoint and pause a session."""
    from .commands.session_cmd import run_session_pause

    sys.exit(run_session_pause(ctx.obj["config"], session_id))


@session.command("end")
@click.argument("session_id")
@click.option("--strict", is_flag=True, help="Exit non-zero if any promotion failed")
@click.pass_context
def session_end(ctx: click.Context, session_id: str, strict: bool) -> None:
    """Checkpoint, promote durable facts, and complete a session."""
    from .commands.session_cmd import run_session_end

    sys.exit(run_session_end(ctx.obj["config"], session_id, strict=strict))


@session.command("abandon")
@click.argument("session_id")
@click.pass_context
def session_abandon(ctx: click.Context, session_id: str) -> None:
    """Abandon a session without promotion."""
    from .commands.session_cmd import run_session_abandon

    sys.exit(run_session_abandon(ctx.obj["config"], session_id))


@session.command("show")
@click.argument("session_id", required=False)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def session_show(ctx: click.Context, session_id: str | None, output_json: bool) -> None:
    """List sessions, or show one session's working context."""
    from .commands.session_cmd import run_session_show

    sys.exit(run_session_show(ctx.obj["config"], session_id, output_json=output_json))


# -----------------------------------------------------------------------------
# ledger
# -----------------------------------------------------------------------------


@cli.group()
def ledger() -> None:
    """Session ledger commands."""
    pass


@ledger.command("write")
@click.argument("session_id")
@click.argument("entry_type")
@click.argument("summary")
@click.option("--scope", required=True, help="Topical scope tag")
@click.option("--source", default="human:cli", show_default=True, help="Actor (kind:name)")
@click.option("--reasoning", default=None, help="Why (kept only in the ledger)")
@click.option("--options", "options_json", default=None, help='JSON: {"considered": [...], "chosen": ...}')
@click.option("--details", "details_json", default=None, help="JSON object for the entry details")
@click.pass_context
def ledger_write(
    ctx: click.Context,
    session_id: str,
    entry_type: str,
    summary: str,
    scope: str,
    source: str,
    reasoning: str | None,
    options_json: str | None,
    details_json: str | None,
) -> None:
    """Append an entry to a session ledger.

    Examples:

        ctxmem ledger write 01J... decision "Mobile-first, no email in v1" --scope product
    """
    from .commands.ledger_cmd import run_ledger_write

    sys.exit(
        run_ledger_write(
            ctx.obj["config"], session_id, entry_type, scope, summary,
            source=source, reasoning=reasoning, options_json=options_json, details_json=details_json,
        )
    )


@ledger.command("query")
@click.argument("session_id")
@click.option("--type", "entry_types", multiple=True, help="Entry type (repeatable)")
@click.option("--scope", "scopes", multiple=True, help="Scope (repeatable)")
@click.option("--since", "since_sequence", type=int, default=None, help="Only entries after this sequence number")
@click.option("--limit", type=int, default=None)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def ledger_query(
    ctx: click.Context,
    session_id: str,
    entry_types: tuple[str, ...],
    scopes: tuple[str, ...],
    since_sequence: int | None,
    limit: int | None,
    output_json: bool,
) -> None:
    """Query a session ledger."""
    from .commands.ledger_cmd import run_ledger_query

    sys.exit(
        run_ledger_query(
            ctx.obj["config"], session_id,
            entry_types=list(entry_types), scopes=list(scopes),
            since_sequence=since_sequence, limit=limit, output_json=output_json,
        )
    )


@ledger.command("why")
@click.argument("session_id")
@click.argument("text")
@click.option("--limit", type=int, default=5, show_default=True)
@click.pass_context
def ledger_why(ctx: click.Context, session_id: str, text: str, limit: int) -> None:
    """Explain a decision: find ledger entries with their reasoning."""
    from .commands.ledger_cmd import run_ledger_why

    sys.exit(run_ledger_why(ctx.obj["config"], session_id, text, limit=limit))


# -----------------------------------------------------------------------------
# long-term memory
# -----------------------------------------------------------------------------


@cli.command("promote")
@click.argument("session_id")
@click.option("--strict", is_flag=True, help="Exit non-zero if any record failed")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def promote(ctx: click.Context, session_id: str, strict: bool, output_json: bool) -> None:
    """Promote durable facts from a session to long-term memory."""
    from .commands.memory_cmd import run_promote

    sys.exit(run_promote(ctx.obj["config"], session_id, strict=strict, output_json=output_json))


@cli.group()
def memory() -> None:
    """Long-term memory commands."""
    pass


@memory.command("search")
@click.argument("namespace")
@click.argument("query")
@click.option("--top-k", type=int, default=5, show_default=True)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def memory_search(ctx: click.Context, namespace: str, query: str, top_k: int, output_json: bool) -> None:
    """Search NAMESPACE (e.g. alice/project-facts) for QUERY."""
    from .commands.memory_cmd import run_memory_search

    sys.exit(run_memory_search(ctx.obj["config"], namespace, query, top_k=top_k, output_json=output_json))


# -----------------------------------------------------------------------------
# artifacts
# -----------------------------------------------------------------------------


@cli.group()
def artifact() -> None:
    """Artifact review and publishing commands."""
    pass


@artifact.command("list")
@click.option("--session", "session_id", default=None, help="Only this session's artifacts")
@click.option("--status", default=None, help="Only artifacts in this status")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def artifact_list(ctx: click.Context, session_id: str | None, status: str | None, output_json: bool) -> None:
    """List artifacts."""
    from .commands.artifact_cmd import run_artifact_list

    sys.exit(run_artifact_list(ctx.obj["config"], session_id=session_id, status=status, output_json=output_json))


@artifact.command("show")
@click.argument("artifact_id")
@click.option("--history", is_flag=True, help="Include the event audit trail")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def artifact_show(ctx: click.Context, artifact_id: str, history: bool, output_json: bool) -> None:
    """Show an artifact with its content and reviews."""
    from .commands.artifact_cmd import run_artifact_show

    sys.exit(run_artifact_show(ctx.obj["config"], artifact_id, output_json=output_json, history=history))


@artifact.command("versions")
@click.argument("artifact_id")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def artifact_versions(ctx: click.Context, artifact_id: str, output_json: bool) -> None:
    """List an artifact's immutable versions."""
    from .commands.artifact_cmd import run_artifact_versions

    sys.exit(run_artifact_versions(ctx.obj["config"], artifact_id, output_json=output_json))


@artifact.command("review")
@click.argument("artifact_id")
@click.argument("action", type=click.Choice(["approve", "request_revision", "reject", "publish"]))
@click.option("--reviewer", required=True, help="Human reviewer, e.g. human:alice")
@click.option("--version", type=int, default=None, help="Version reviewed (defaults to current)")
@click.option("--feedback", default=None, help="Feedback (required for request_revision)")
@click.pass_context
def artifact_review(
    ctx: click.Context,
    artifact_id: str,
    action: str,
    reviewer: str,
    version: int | None,
    feedback: str | None,
) -> None:
    """Record a human review decision."""
    from .commands.artifact_cmd import run_artifact_review

    sys.exit(
        run_artifact_review(ctx.obj["config"], artifact_id, action, reviewer, version=version, feedback=feedback)
    )


@artifact.command("publish")
@click.argument("artifact_id")
@click.option("--reviewer", required=True, help="Human reviewer, e.g. human:alice")
@click.option("--target-config", "target_config_json", default=None, help="JSON object passed to the publisher")
@click.pass_context
def artifact_publish(ctx: click.Context, artifact_id: str, reviewer: str, target_config_json: str | None) -> None:
    """Publish an approved artifact."""
    from .commands.artifact_cmd import run_artifact_publish

    sys.exit(run_artifact_publish(ctx.obj["config"], artifact_id, reviewer, target_config_json=target_config_json))


@artifact.command("retry")
@click.argument("artifact_id")
@click.option("--reviewer", required=True, help="Human reviewer, e.g. human:alice")
@click.pass_context
def artifact_retry(ctx: click.Context, artifact_id: str, reviewer: str) -> None:
    """Retry a failed publish."""
    from .commands.artifact_cmd import run_artifact_retry

    sys.exit(run_artifact_retry(ctx.obj["config"], artifact_id, reviewer))


@artifact.command("cancel")
@click.argument("artifact_id")
@click.option("--reviewer", required=True, help="Human reviewer, e.g. human:alice")
@click.option("--reason", default=None)
@click.pass_context
def artifact_cancel(ctx: click.Context, artifact_id: str, reviewer: str, reason: str | None) -> None:
    """Cancel an in-flight publish."""
    from .commands.artifact_cmd import run_artifact_cancel

    sys.exit(run_artifact_cancel(ctx.obj["config"], artifact_id, reviewer, reason=reason))


@artifact.command("recover")
@click.option("--older-than", "older_than_s", type=float, default=0.0, show_default=True,
              help="Only artifacts untouched for this many seconds")
@click.pass_context
def artifact_recover(ctx: click.Context, older_than_s: float) -> None:
    """Fail artifacts left publishing or revising by a crash."""
    from .commands.artifact_cmd import run_artifact_recover

    sys.exit(run_artifact_recover(ctx.obj["config"], older_than_s=older_than_s))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
