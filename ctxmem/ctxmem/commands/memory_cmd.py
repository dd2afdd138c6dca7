"""Long-term memory CLI commands: promotion and search."""

from __future__ import annotations

import json

from rich.console import Console
from rich.table import Table

from ..config import Config
from ..errors import CtxMemError, GatewayError, PromotionPartialFailure
from . import build_coordinator


def run_promote(config: Config, session_id: str, *, strict: bool = False, output_json: bool = False) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        coord.sessions.require(session_id)
        result = coord.promotion.promote(session_id, strict=strict)
    except PromotionPartialFailure as e:
        result = e.result
        err.print(str(e), style="bold red")
        if output_json:
            print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return 1
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    if output_json:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return 0

    console = Console()
    console.print(f"Promoted {result.promoted_count}, failed {result.failed_count}")
    for seq, code in sorted(result.failures.items()):
        console.print(f"  #{seq}: {code}", style="yellow")
    return 0


def run_memory_search(
    config: Config,
    namespace: str,
    query: str,
    *,
    top_k: int = 5,
    output_json: bool = False,
) -> int:
    coord = build_coordinator(config)
    try:
        hits = coord.gateway.retrieve(namespace, query, top_k)
    except GatewayError as e:
        Console(stderr=True).print(f"Memory service error: {e}", style="bold red")
        return 1
    except ValueError as e:
        Console(stderr=True).print(str(e), style="bold red")
        return 2

    if output_json:
        print(json.dumps([h.to_dict() for h in hits], indent=2, sort_keys=True))
        return 0

    table = Table(title=f"Memory: {namespace}")
    table.add_column("score", justify="right", style="cyan")
    table.add_column("text")
    table.add_column("record_id", style="dim", no_wrap=True)
    for h in hits:
        table.add_row(f"{h.relevance_score:.2f}", h.text, h.record_id)
    Console().print(table)
    return 0
