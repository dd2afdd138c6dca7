"""Session CLI commands."""

from __future__ import annotations

import json

from rich.console import Console
from rich.table import Table

from ..config import Config
from ..context.working import WorkingContext
from ..errors import CtxMemError
from . import build_coordinator


def _print_context(console: Console, ctx: WorkingContext) -> None:
    console.print(f"[bold]{ctx.session_id}[/] turn {ctx.turn_count}, seq {ctx.last_applied_seq}")
    if ctx.intent_summary:
        console.print(f"  intent: {ctx.intent_summary}")

    if ctx.plan:
        table = Table(title="Plan")
        table.add_column("step", style="cyan")
        table.add_column("description")
        table.add_column("status")
        table.add_column("outcome", style="dim")
        for step in ctx.plan:
            table.add_row(step.step_id, step.description, step.status, step.outcome or "")
        console.print(table)

    for label, items in (
        ("decisions", ctx.active_decisions),
        ("constraints", ctx.active_constraints),
        ("open questions", ctx.open_questions),
        ("prior knowledge", ctx.prior_knowledge),
    ):
        if items:
            console.print(f"  {label}:")
            for item in items:
                console.print(f"    - {item}")

    for ref in ctx.artifact_refs:
        console.print(f"  artifact {ref.artifact_id} '{ref.title}' [{ref.status}] -> {ref.target}", style="dim")


def run_session_start(
    config: Config,
    user_id: str,
    *,
    intent: str = "",
    seed_query: str | None = None,
) -> int:
    console = Console()
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        session = coord.start_session(user_id, intent=intent, seed_query=seed_query)
    except (CtxMemError, ValueError) as e:
        err.print(str(e), style="bold red")
        return 1

    console.print(f"Started session [cyan]{session.session_id}[/] for {user_id}")
    ctx = coord.context(session.session_id)
    if ctx.prior_knowledge:
        console.print(f"  seeded {len(ctx.prior_knowledge)} facts from long-term memory", style="dim")
    return 0


def run_session_resume(config: Config, session_id: str) -> int:
    console = Console()
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        ctx = coord.resume_session(session_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1
    _print_context(console, ctx)
    return 0


def run_session_pause(config: Config, session_id: str) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        session = coord.pause_session(session_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1
    Console().print(f"{session.session_id}: {session.status.value} (snapshot at seq {session.snapshot_seq})")
    return 0


def run_session_end(config: Config, session_id: str, *, strict: bool = False) -> int:
    console = Console()
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        result = coord.end_session(session_id, strict=strict)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1
    console.print(
        f"{session_id}: completed; promoted {result.promoted_count}, failed {result.failed_count}"
    )
    return 0


def run_session_abandon(config: Config, session_id: str) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        session = coord.abandon_session(session_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1
    Console().print(f"{session.session_id}: {session.status.value}")
    return 0


def run_session_show(config: Config, session_id: str | None = None, *, output_json: bool = False) -> int:
    console = Console()
    err = Console(stderr=True)
    coord = build_coordinator(config)

    if session_id is None:
        sessions = coord.sessions.list_sessions()
        if output_json:
            print(json.dumps([s.to_dict() for s in sessions], indent=2, sort_keys=True))
            return 0
        table = Table(title="Sessions")
        table.add_column("session_id", style="cyan", no_wrap=True)
        table.add_column("user")
        table.add_column("status")
        table.add_column("entries", justify="right")
        table.add_column("snapshot_seq", justify="right", style="dim")
        table.add_column("intent", style="dim")
        for s in sessions:
            table.add_row(
                s.session_id, s.user_id, s.status.value,
                str(coord.ledger.count(s.session_id)), str(s.snapshot_seq), s.intent,
            )
        console.print(table)
        return 0

    try:
        session = coord.sessions.require(session_id)
        ctx = coord.context(session_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    if output_json:
        print(json.dumps({"session": session.to_dict(), "context": ctx.to_dict()}, indent=2, sort_keys=True))
        return 0
    console.print(f"status: {session.status.value}, user: {session.user_id}")
    _print_context(console, ctx)
    return 0
