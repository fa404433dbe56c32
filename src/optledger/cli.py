"""CLI for the optimization ledger.

Convention-based: discovers .claude/optimize/ by walking up from cwd.

Usage:
    optledger init                                  # Initialize .claude/optimize/ in cwd
    optledger ingest issues.json                    # Add analysis findings to pending
    optledger list --collection=pending             # List issues
    optledger show <id>                             # Show issue details
    optledger dedupe                                # Migrate already-implemented issues
    optledger review "implement all critical"       # Apply an operator decision
    optledger sessions --unlinked                   # Decision sessions without a commit
    optledger commit                                # Commit and link to the latest session
    optledger tickets                               # Create tickets for github_issue outcomes
    optledger status                                # Counts, flags, recent sessions
    optledger protect                               # Back up the ledger
"""

from __future__ import annotations

import click

from optledger import __version__
from optledger.cli_commands import admin, issues, workflow


@click.group()
@click.version_option(version=__version__, prog_name="optledger")
def cli() -> None:
    """optledger: lifecycle ledger for code-optimization findings."""


admin.register(cli)
issues.register(cli)
workflow.register(cli)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
