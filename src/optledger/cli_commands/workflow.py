"""CLI commands for the review workflow: dedupe, review, sessions, commit, tickets."""

from __future__ import annotations

import click

from optledger.cli_common import echo_json, fail, get_context
from optledger.context import LedgerContext
from optledger.detector import DetectionReport
from optledger.errors import LedgerError
from optledger.models import PRIORITIES
from optledger.review import run_review
from optledger.tickets import GitHubTracker, TicketSyncResult, build_ticket_payload, sync_tickets, unticketed


def _print_detection(report: DetectionReport) -> None:
    verb = "Would migrate" if report.dry_run else "Migrated"
    for c in report.migrated:
        click.echo(f"{verb} {c.issue_id} -> completed ({c.method}, confidence: {c.confidence})")
    for c in report.uncertain:
        click.echo(f"Needs review: {c.issue_id}")
        for line in c.evidence:
            click.echo(f"  - {line}")
    if report.uncertain and not report.dry_run:
        click.echo("Confirm with: optledger dedupe --confirm <ID>")


def _tracker_for(ctx: LedgerContext) -> GitHubTracker | None:
    repo = ctx.config["tickets"]["repo"]
    if not repo or not ctx.github_token:
        return None
    return GitHubTracker(repo, ctx.github_token, api_url=ctx.config["tickets"]["api_url"])


def _sync(ctx: LedgerContext) -> TicketSyncResult | None:
    tracker = _tracker_for(ctx)
    if tracker is None:
        return None
    with tracker:
        return sync_tickets(ctx.store, tracker, labels=ctx.config["tickets"]["labels"])


def _print_sync(result: TicketSyncResult) -> None:
    for issue_id, ref in result.created.items():
        click.echo(f"Ticket created for {issue_id}: {ref}")
    for issue_id, reason in result.failed.items():
        click.echo(f"Ticket failed for {issue_id}: {reason}", err=True)


@click.command()
@click.option("--dry-run", is_flag=True, help="Classify without moving anything")
@click.option("--confirm", "confirm_ids", multiple=True, help="Migrate an uncertain issue as operator-confirmed")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def dedupe(dry_run: bool, confirm_ids: tuple[str, ...], as_json: bool) -> None:
    """Move pending issues that are already implemented into completed."""
    ctx = get_context()
    try:
        report = ctx.detector().migrate(ctx.store, confirm=confirm_ids, dry_run=dry_run)
        if not dry_run:
            ctx.refresh_summary()
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(report.to_dict())
        return
    _print_detection(report)
    if not report.migrated and not report.uncertain:
        click.echo("No implemented issues found in pending")


def _show_pending(ctx: LedgerContext) -> list[str]:
    pending = ctx.store.load("pending")
    for priority in PRIORITIES:
        issues = pending.by_priority(priority)
        if not issues:
            continue
        click.echo(f"\n{priority} ({len(issues)})")
        for issue in issues:
            marker = "  [needs review]" if issue.id in pending.flags else ""
            click.echo(f"  {issue.id:<16} {issue.title}{marker}")
    return pending.ids()


@click.command()
@click.argument("decision", required=False)
@click.option("--comment", default=None, help="Free-text rationale stored with the session")
@click.option("--no-dedupe", is_flag=True, help="Skip the implemented-issue scan before applying")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def review(decision: str | None, comment: str | None, no_dedupe: bool, as_json: bool) -> None:
    """Apply an operator decision to pending issues.

    \b
    Examples:
      optledger review "skip all"
      optledger review "implement all critical"
      optledger review "implement P1 P2, defer P3 'next sprint'"
    """
    ctx = get_context()
    dedupe_first = not no_dedupe
    try:
        if decision is None:
            if as_json:
                fail("A DECISION argument is required with --json", as_json=True)
            if dedupe_first:
                _print_detection(ctx.detector().migrate(ctx.store))
                dedupe_first = False
            if not _show_pending(ctx):
                click.echo("No pending issues")
                return
            decision = click.prompt("\nDecision", type=str)
        result = run_review(ctx, decision, comment=comment, dedupe=dedupe_first)
        synced = _sync(ctx) if result.plan.ticket_requests else None
        if result.changed or (result.detection and result.detection.migrated):
            ctx.refresh_summary()
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(
            {
                "plan": result.plan.to_dict(),
                "session_id": result.session.session_id if result.session else None,
                "detection": result.detection.to_dict() if result.detection else None,
                "delegations": [d.to_dict() for d in result.outcome.delegations] if result.outcome else [],
                "tickets": synced.to_dict() if synced else None,
            }
        )
        return
    if result.detection is not None:
        _print_detection(result.detection)
    if result.plan.already_applied:
        click.echo(f"Already applied: {', '.join(result.plan.already_applied)}")
    if not result.changed:
        click.echo("Nothing to do")
        return
    counts = ", ".join(f"{n} {key}" for key, n in result.plan.counts().items() if n)
    click.echo(f"Applied {result.plan.decision.operation_type}: {counts}")
    if result.session is not None:
        click.echo(f"Session: {result.session.session_id}")
    for d in result.outcome.delegations if result.outcome else []:
        click.echo(f"  {d.capability}: {d.issue_id} ({d.status})")
    if synced is not None:
        _print_sync(synced)
    elif result.plan.ticket_requests:
        click.echo("Ticket requests recorded. Set tickets.repo and GITHUB_TOKEN, then run: optledger tickets")
    click.echo("Next: optledger commit")


@click.command()
@click.option("--unlinked", is_flag=True, help="Only sessions without a commit")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sessions(unlinked: bool, as_json: bool) -> None:
    """List recorded decision sessions, newest first."""
    ctx = get_context()
    try:
        found = ctx.recorder().list_sessions()
    except LedgerError as e:
        fail(e, as_json=as_json)
    if unlinked:
        found = [s for s in found if not s.is_linked]
    found.reverse()

    if as_json:
        echo_json([s.to_dict() for s in found])
        return
    for s in found:
        commit = s.commit_link.commit_hash[:12] if s.commit_link else "unlinked"
        ids = ", ".join(s.selected_issue_ids)
        click.echo(f"{s.session_id}  {s.operation_type:<24} {commit:<12} {ids}")
    click.echo(f"\n{len(found)} sessions")


def _confirm_interactively(proposed: str) -> str | None:
    click.echo("Proposed commit message:\n")
    click.echo(proposed)
    while True:
        choice = click.prompt(
            "\n[a]ccept, [e]dit, [r]eplace, [q]uit",
            type=click.Choice(["a", "e", "r", "q"]),
            default="a",
            show_choices=False,
        )
        if choice == "a":
            return proposed
        if choice == "q":
            return None
        if choice == "e":
            edited = click.edit(proposed)
            if edited is not None:
                proposed = edited.strip()
        else:
            proposed = click.prompt("Commit message", type=str)
        click.echo(f"\n{proposed}")


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Accept the proposed message without prompting")
@click.option("--message", "-m", default=None, help="Use this commit message instead of the proposed one")
@click.option("--path", "paths", multiple=True, help="Stage only these paths (default: all changes)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def commit(yes: bool, message: str | None, paths: tuple[str, ...], as_json: bool) -> None:
    """Commit the working tree and link the commit to the latest decision session."""
    if as_json and not yes and message is None:
        fail("--json cannot prompt for the commit message; add --yes or --message", as_json=True)
    ctx = get_context()

    def confirm(proposed: str) -> str | None:
        if message is not None:
            return message
        if yes:
            return proposed
        return _confirm_interactively(proposed)

    try:
        result = ctx.linker().commit(confirm, paths=list(paths) or None)
        if result.commit_hash:
            ctx.refresh_summary()
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(result.to_dict())
        return
    if result.status == "aborted":
        click.echo("Commit aborted")
    elif result.status == "nothing_to_commit":
        click.echo("Nothing to commit")
    elif result.status == "unattributed":
        click.echo(f"Committed {result.commit_hash} (no decision session to link)")
    else:
        click.echo(f"Committed {result.commit_hash}, linked to session {result.session_id}")
        click.echo(f"  {len(result.manifest)} file(s) in manifest")


@click.command()
@click.option("--dry-run", is_flag=True, help="List issues that would get a ticket")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tickets(dry_run: bool, as_json: bool) -> None:
    """Create tracker tickets for issues marked github_issue."""
    ctx = get_context()
    try:
        waiting = unticketed(ctx.store)
        if dry_run:
            labels = ctx.config["tickets"]["labels"]
            payloads = [build_ticket_payload(issue, labels) for issue in waiting]
            if as_json:
                echo_json([{"issue_id": p.issue_id, **p.to_dict()} for p in payloads])
            else:
                for p in payloads:
                    click.echo(f"{p.issue_id:<16} {p.title}  labels: {', '.join(p.labels)}")
                click.echo(f"\n{len(waiting)} issues awaiting tickets")
            return
        if not waiting:
            result = TicketSyncResult()
        else:
            synced = _sync(ctx)
            if synced is None:
                fail("Set tickets.repo in config.json and GITHUB_TOKEN in the environment", as_json=as_json)
            result = synced
            ctx.refresh_summary()
    except LedgerError as e:
        fail(e, as_json=as_json)

    if as_json:
        echo_json(result.to_dict())
        return
    _print_sync(result)
    if not result.created and not result.failed:
        click.echo("No issues awaiting tickets")
    if result.failed:
        raise SystemExit(1)


def register(cli: click.Group) -> None:
    """Register workflow commands with the CLI group."""
    cli.add_command(dedupe)
    cli.add_command(review)
    cli.add_command(sessions)
    cli.add_command(commit)
    cli.add_command(tickets)
