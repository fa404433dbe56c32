"""CLI commands for project setup and upkeep: init, status, protect."""

from __future__ import annotations

from pathlib import Path

import click

from optledger.backup import create_backup, list_backups
from optledger.cli_common import echo_json, fail, get_context
from optledger.core import DEFAULT_CONFIG, read_config, state_dir_for, write_config
from optledger.errors import LedgerError
from optledger.logging import setup_logging
from optledger.sessions import SessionRecorder
from optledger.store import IssueStore
from optledger.summary import SUMMARY_FILENAME, collect_status, write_summary


@click.command()
@click.option("--name", "project_name", default=None, help="Project name (default: directory name)")
def init(project_name: str | None) -> None:
    """Initialize .claude/optimize/ in the current directory."""
    cwd = Path.cwd()
    state_dir = state_dir_for(cwd)
    existed = state_dir.exists()
    state_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(state_dir)

    if not (state_dir / "config.json").exists():
        config = {**DEFAULT_CONFIG, "project_name": project_name or cwd.name}
        write_config(state_dir, config)
    config = read_config(state_dir)

    store = IssueStore(state_dir, max_bytes=int(config["store"]["max_bytes"]))
    try:
        created = store.init(source={"producer": "optledger init"})
        write_summary(store, SessionRecorder(state_dir), state_dir / SUMMARY_FILENAME)
    except LedgerError as e:
        fail(e)

    if existed:
        click.echo(f".claude/optimize/ already exists in {cwd}")
        if created:
            click.echo(f"  Restored missing collections: {', '.join(created)}")
        return
    click.echo(f"Initialized .claude/optimize/ in {cwd}")
    click.echo(f"  Project: {config['project_name']}")
    click.echo("\nNext: optledger ingest <issues.json>")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool) -> None:
    """Show collection counts, flagged issues and recent sessions."""
    ctx = get_context()
    try:
        data = collect_status(ctx.store, ctx.recorder())
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(data)
        return

    counts = data["counts"]
    click.echo(f"Pending:   {counts['pending']}")
    click.echo(f"Backlog:   {counts['backlog']}")
    click.echo(f"Completed: {counts['completed']}")
    click.echo("\nPending by priority:")
    for priority, n in data["pending_by_priority"].items():
        click.echo(f"  {priority:<9} {n}")
    if data["completed_by_outcome"]:
        click.echo("\nCompleted by outcome:")
        for outcome, n in data["completed_by_outcome"].items():
            click.echo(f"  {outcome:<13} {n}")
    if data["flagged_for_review"]:
        click.echo(f"\nNeeds manual review: {', '.join(data['flagged_for_review'])}")
    if data["auto_migrated_unverified"]:
        click.echo(f"Auto-migrated, unverified: {', '.join(data['auto_migrated_unverified'])}")
    sessions = data["sessions"]
    click.echo(f"\nSessions: {sessions['total']} ({len(sessions['unlinked'])} unlinked)")
    for s in sessions["recent"]:
        commit = s["commit"][:12] if s["commit"] else "unlinked"
        click.echo(f"  {s['session_id']}  {s['operation_type']:<24} {commit}")
    if data["interrupted_batches"]:
        click.echo(f"\nWarning: {data['interrupted_batches']} interrupted batch journal(s) pending recovery")


@click.command()
@click.option("--list", "list_only", is_flag=True, help="List existing backups instead of creating one")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def protect(list_only: bool, as_json: bool) -> None:
    """Back up the whole ledger to .claude/optimize-backup-<timestamp>.tar.gz."""
    ctx = get_context()
    if list_only:
        backups = list_backups(ctx.state_dir)
        if as_json:
            echo_json([str(p) for p in backups])
            return
        for path in backups:
            click.echo(path.name)
        click.echo(f"\n{len(backups)} backups")
        return
    try:
        path = create_backup(ctx.state_dir, clock=ctx.clock)
    except LedgerError as e:
        fail(e, as_json=as_json)
    if as_json:
        echo_json({"backup": str(path)})
    else:
        click.echo(f"Backup written: {path}")


def register(cli: click.Group) -> None:
    """Register admin commands with the CLI group."""
    cli.add_command(init)
    cli.add_command(status)
    cli.add_command(protect)
