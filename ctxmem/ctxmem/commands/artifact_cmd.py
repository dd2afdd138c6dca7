"""Artifact CLI commands."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.table import Table

from ..config import Config
from ..errors import CtxMemError, InvalidTransition, PublishFailure
from . import build_coordinator


def _print_transition_error(err: Console, e: InvalidTransition) -> None:
    err.print(str(e), style="bold red")
    err.print(f"  current: {e.current}; allowed: {', '.join(e.allowed) or 'none'}", style="dim")


def run_artifact_list(
    config: Config,
    *,
    session_id: str | None = None,
    status: str | None = None,
    output_json: bool = False,
) -> int:
    coord = build_coordinator(config)
    artifacts = coord.artifacts.list_artifacts(session_id, status=status)

    if output_json:
        print(json.dumps([a.to_dict(include_content=False) for a in artifacts], indent=2, sort_keys=True))
        return 0

    table = Table(title="Artifacts")
    table.add_column("artifact_id", style="cyan", no_wrap=True)
    table.add_column("type", style="magenta")
    table.add_column("title")
    table.add_column("status")
    table.add_column("v", justify="right")
    table.add_column("target", style="dim")
    table.add_column("next", style="dim")
    for a in artifacts:
        table.add_row(
            a.artifact_id, a.artifact_type, a.title, a.status.value, str(a.version),
            a.publish_target, ", ".join(a.next_actions()),
        )
    Console().print(table)
    return 0


def run_artifact_show(
    config: Config,
    artifact_id: str,
    *,
    output_json: bool = False,
    history: bool = False,
) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        artifact = coord.artifacts.get_artifact(artifact_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    data: dict[str, Any] = {"artifact": artifact.to_dict(include_content=True)}
    data["reviews"] = [r.to_dict() for r in coord.artifacts.get_reviews(artifact_id)]
    if history:
        data["history"] = [e.to_dict() for e in coord.artifacts.history(artifact_id)]

    if output_json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0

    console = Console()
    console.print(f"[bold]{artifact.title}[/] ({artifact.artifact_type}) [cyan]{artifact.artifact_id}[/]")
    console.print(f"  status: {artifact.status.value}, version {artifact.version}, target {artifact.publish_target}")
    console.print(f"  next: {', '.join(artifact.next_actions()) or 'none'}", style="dim")
    if artifact.feedback:
        console.print(f"  feedback: {artifact.feedback}")
    if artifact.last_error:
        console.print(f"  last error: {artifact.last_error}", style="yellow")
    if artifact.external_url:
        console.print(f"  published: {artifact.external_url}")
    for review in data["reviews"]:
        console.print(
            f"  review v{review['version_reviewed']} {review['action']} by {review['reviewer']}"
            + (f": {review['feedback']}" if review["feedback"] else ""),
            style="dim",
        )
    if history:
        for event in data["history"]:
            payload = event.get("payload", {})
            console.print(
                f"  {event['timestamp']} {event['actor']} {payload.get('action', event['event_type'])}",
                style="dim",
            )
    console.print()
    console.print(artifact.content or "")
    return 0


def run_artifact_versions(config: Config, artifact_id: str, *, output_json: bool = False) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        versions = coord.artifacts.get_versions(artifact_id)
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    if output_json:
        print(json.dumps([v.to_dict() for v in versions], indent=2, sort_keys=True))
        return 0

    table = Table(title=f"Versions: {artifact_id}")
    table.add_column("v", justify="right", style="cyan")
    table.add_column("change")
    table.add_column("author")
    table.add_column("created_at", style="dim")
    table.add_column("content_id", style="dim")
    for v in versions:
        table.add_row(str(v.version), v.change_summary, v.author, v.created_at.isoformat(), v.content_id[:12] + "…")
    Console().print(table)
    return 0


def run_artifact_review(
    config: Config,
    artifact_id: str,
    action: str,
    reviewer: str,
    *,
    version: int | None = None,
    feedback: str | None = None,
) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        if version is None:
            version = coord.artifacts.get_artifact(artifact_id).version
        review = coord.artifacts.submit_review(artifact_id, version, action, reviewer, feedback=feedback)
    except InvalidTransition as e:
        _print_transition_error(err, e)
        return 1
    except (CtxMemError, ValueError) as e:
        err.print(str(e), style="bold red")
        return 1

    artifact = coord.artifacts.get_artifact(artifact_id)
    Console().print(f"{review.action.value} recorded ({review.review_id}); artifact is {artifact.status.value}")
    return 0


def run_artifact_publish(
    config: Config,
    artifact_id: str,
    reviewer: str,
    *,
    target_config_json: str | None = None,
) -> int:
    err = Console(stderr=True)
    try:
        target_config = json.loads(target_config_json) if target_config_json else {}
    except json.JSONDecodeError as e:
        err.print(f"Invalid JSON: {e}", style="bold red")
        return 2

    coord = build_coordinator(config)
    try:
        artifact = coord.artifacts.request_publish(artifact_id, target_config, reviewer=reviewer)
    except InvalidTransition as e:
        _print_transition_error(err, e)
        return 1
    except PublishFailure as e:
        err.print(str(e), style="bold red")
        err.print("  retry with: ctxmem artifact retry", style="dim")
        return 1
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    Console().print(f"Published {artifact.artifact_id} v{artifact.version} -> {artifact.external_url}")
    return 0


def run_artifact_retry(config: Config, artifact_id: str, reviewer: str) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        artifact = coord.artifacts.retry_publish(artifact_id, actor=reviewer)
    except InvalidTransition as e:
        _print_transition_error(err, e)
        return 1
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    Console().print(f"Published {artifact.artifact_id} v{artifact.version} -> {artifact.external_url}")
    return 0


def run_artifact_cancel(config: Config, artifact_id: str, reviewer: str, *, reason: str | None = None) -> int:
    err = Console(stderr=True)
    coord = build_coordinator(config)
    try:
        artifact = coord.artifacts.cancel_publish(
            artifact_id, actor=reviewer, reason=reason or "cancelled by reviewer",
        )
    except InvalidTransition as e:
        _print_transition_error(err, e)
        return 1
    except CtxMemError as e:
        err.print(str(e), style="bold red")
        return 1

    Console().print(f"{artifact.artifact_id}: {artifact.status.value}")
    return 0


def run_artifact_recover(config: Config, *, older_than_s: float = 0.0) -> int:
    coord = build_coordinator(config)
    recovered = coord.artifacts.recover_stale(older_than_s=older_than_s)
    console = Console()
    for artifact in recovered:
        console.print(f"{artifact.artifact_id}: {artifact.status.value}")
    console.print(f"Recovered {len(recovered)} artifacts", style="dim")
    return 0
