"""Ledger CLI commands."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.table import Table

from ..config import Config
from ..errors import CtxMemError, InvalidEntry
from . import build_coordinator


def _parse_json_object(raw: str | None, what: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def run_ledger_write(
    config: Config,
    session_id: str,
    entry_type: str,
    scope: str,
    summary: str,
    *,
    source: str = "human:cli",
    reasoning: str | None = None,
    options_json: str | None = None,
    details_json: str | None = None,
) -> int:
    err = Console(stderr=True)
    try:
        options = _parse_json_object(options_json, "--options")
        details = _parse_json_object(details_json, "--details")
    except ValueError as e:
        err.print(f"Invalid JSON: {e}", style="bold red")
        return 2

    coord = build_coordinator(config)
    try:
        result = coord.write_entry(
            session_id, entry_type, scope, summary, source,
            reasoning=reasoning, options=options, details=details,
        )
    except InvalidEntry as e:
        err.print(f"Invalid entry: {e}", style="bold red")
        return 2
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    Console().print(f"#{result.sequence_num} {result.entry_id}")
    return 0


def run_ledger_query(
    config: Config,
    session_id: str,
    *,
    entry_types: list[str] | None = None,
    scopes: list[str] | None = None,
    since_sequence: int | None = None,
    limit: int | None = None,
    output_json: bool = False,
) -> int:
    coord = build_coordinator(config)
    entries = coord.ledger.query(
        session_id,
        entry_types=entry_types or None,
        scopes=scopes or None,
        since_sequence=since_sequence,
        limit=limit,
    )

    if output_json:
        print(json.dumps([e.to_view() for e in entries], indent=2, sort_keys=True))
        return 0

    table = Table(title=f"Ledger: {session_id}")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("type", style="magenta")
    table.add_column("scope")
    table.add_column("summary")
    table.add_column("source", style="dim")
    table.add_column("promoted", style="dim")
    for e in entries:
        table.add_row(
            str(e.sequence_num), e.entry_type, e.scope, e.summary, e.source,
            "yes" if e.promoted else "",
        )
    Console().print(table)
    Console().print(f"Entries: {len(entries)}", style="dim")
    return 0


def run_ledger_why(config: Config, session_id: str, text: str, *, limit: int = 5) -> int:
    console = Console()
    coord = build_coordinator(config)
    try:
        hits = coord.recall(session_id, text, limit=limit)
    except CtxMemError as e:
        Console(stderr=True).print(str(e), style="bold red")
        return 1

    if not hits:
        console.print(f"Nothing in the ledger explains: {text}")
        return 1

    for entry, score in hits:
        console.print(f"[cyan]#{entry.sequence_num}[/] [{entry.entry_type}] {entry.summary}  [dim]({score:.2f})[/]")
        if entry.reasoning:
            console.print(f"    why: {entry.reasoning}")
        if isinstance(entry.options, dict):
            considered = entry.options.get("considered") or []
            if isinstance(considered, str):
                considered = [considered]
            if considered:
                console.print(f"    considered: {', '.join(str(c) for c in considered)}")
            if entry.options.get("chosen") is not None:
                console.print(f"    chosen: {entry.options['chosen']}")
    return 0
