"""CLI commands for issue records: ingest, list, show."""

from __future__ import annotations

import json as json_mod
from typing import Any

import click

from optledger.cli_common import echo_json, fail, get_context
from optledger.core import iso
from optledger.errors import LedgerError, ValidationError
from optledger.models import COLLECTIONS, PRIORITIES, Issue, priority_rank


def _records_from(data: Any) -> tuple[list[Any], dict[str, Any]]:
    """Accept a bare list of issues or a collection-shaped document."""
    if isinstance(data, list):
        return data, {}
    if isinstance(data, dict) and isinstance(data.get("issues"), list):
        header = data.get("header", {})
        source = header.get("source", {}) if isinstance(header, dict) else {}
        return data["issues"], source if isinstance(source, dict) else {}
    msg = "Expected a JSON array of issues or an object with an 'issues' array"
    raise ValidationError(msg)


@click.command()
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def ingest(source: Any, as_json: bool) -> None:
    """Append analysis-producer issues (JSON file, or - for stdin) to pending."""
    ctx = get_context()
    try:
        try:
            data = json_mod.load(source)
        except json_mod.JSONDecodeError as e:
            raise ValidationError(f"{source.name} is not valid JSON: {e}") from e
        records, meta = _records_from(data)
        meta = {**meta, "producer": meta.get("producer", source.name), "ingested_at": iso(ctx.clock())}
        result = ctx.store.ingest(records, source=meta)
        ctx.refresh_summary()
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(result.to_dict())
        return
    click.echo(f"Added {len(result.added)} issue(s) to pending")
    if result.readmitted:
        click.echo(f"Re-admitted from backlog: {', '.join(result.readmitted)}")
    if result.skipped:
        click.echo(f"Skipped (already tracked): {', '.join(result.skipped)}")
    click.echo("Next: optledger review")


def _issue_line(issue: Issue, flagged: bool = False) -> str:
    marker = " !" if flagged else ""
    return f"{issue.priority:<8} {issue.id:<16} {issue.status:<12} {issue.title}{marker}"


@click.command("list")
@click.option(
    "--collection",
    "-c",
    type=click.Choice([*COLLECTIONS, "all"]),
    default="pending",
    show_default=True,
    help="Collection to list",
)
@click.option("--priority", "-p", type=click.Choice(PRIORITIES, case_sensitive=False), default=None)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_issues(collection: str, priority: str | None, as_json: bool) -> None:
    """List issues in a collection, highest priority first."""
    ctx = get_context()
    try:
        collections = ctx.store.load_all()
    except LedgerError as e:
        fail(e, as_json=as_json)
    names = COLLECTIONS if collection == "all" else (collection,)
    rows: list[tuple[Issue, bool]] = []
    for name in names:
        coll = collections[name]  # type: ignore[index]
        for issue in coll.issues:
            if priority is None or issue.priority == priority.upper():
                rows.append((issue, issue.id in coll.flags))
    rows.sort(key=lambda row: priority_rank(row[0].priority))

    if as_json:
        echo_json([{**issue.to_dict(), "flagged": flagged} for issue, flagged in rows])
        return
    for issue, flagged in rows:
        click.echo(_issue_line(issue, flagged))
    click.echo(f"\n{len(rows)} issues")


@click.command()
@click.argument("issue_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(issue_id: str, as_json: bool) -> None:
    """Show one issue, wherever it currently rests."""
    ctx = get_context()
    try:
        found = ctx.store.find(issue_id)
    except LedgerError as e:
        fail(e, as_json=as_json)
    if found is None:
        fail(ValidationError(f"Not found: {issue_id}", offending=[issue_id]), as_json=as_json)
    name, issue = found

    if as_json:
        echo_json({**issue.to_dict(), "collection": name})
        return
    click.echo(f"ID:         {issue.id}")
    click.echo(f"Title:      {issue.title}")
    click.echo(f"Priority:   {issue.priority}")
    click.echo(f"Status:     {issue.status} ({name})")
    if issue.category:
        click.echo(f"Category:   {issue.category}")
    if issue.assigned_capability:
        click.echo(f"Capability: {issue.assigned_capability}")
    if issue.estimated_effort:
        click.echo(f"Effort:     {issue.estimated_effort}")
    if issue.ticket_ref:
        click.echo(f"Ticket:     {issue.ticket_ref}")
    if issue.affected_files:
        click.echo("Files:")
        for path in issue.affected_files:
            click.echo(f"  {path}")
    if issue.description:
        click.echo(f"\n--- Description ---\n{issue.description}")
    if issue.recommended_action:
        click.echo(f"\n--- Recommended action ---\n{issue.recommended_action}")
    if issue.provenance:
        p = issue.provenance
        click.echo("\n--- Provenance ---")
        click.echo(f"  {p.source} via {p.method} (confidence: {p.confidence})")
        if p.session_id:
            click.echo(f"  Session: {p.session_id}")
        if p.comment:
            click.echo(f"  Comment: {p.comment}")
        if p.needs_manual_verification:
            click.echo("  Needs manual verification")
        for line in p.evidence:
            click.echo(f"  - {line}")


def register(cli: click.Group) -> None:
    """Register issue commands with the CLI group."""
    cli.add_command(ingest)
    cli.add_command(list_issues)
    cli.add_command(show)
