"""Shared CLI helpers for cli.py and the cli_commands/ modules."""

from __future__ import annotations

import json as json_mod
import os
import sys
from typing import Any, NoReturn

import click

from optledger.context import LedgerContext
from optledger.errors import LedgerError, NotInitializedError, ValidationError
from optledger.logging import setup_logging


def get_context() -> LedgerContext:
    """Discover .claude/optimize/ and return a ready LedgerContext."""
    try:
        ctx = LedgerContext.open(env=os.environ)
    except NotInitializedError:
        click.echo("No .claude/optimize/ found. Run 'optledger init' first.", err=True)
        sys.exit(1)
    setup_logging(ctx.state_dir)
    return ctx


def echo_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))


def fail(error: LedgerError | str, *, as_json: bool = False) -> NoReturn:
    """Report an error the way every command does, then exit 1."""
    message = str(error)
    code = error.code if isinstance(error, LedgerError) else "error"
    if as_json:
        payload: dict[str, Any] = {"error": message, "code": code}
        if isinstance(error, ValidationError) and error.valid_ids:
            payload["valid_ids"] = list(error.valid_ids)
        click.echo(json_mod.dumps(payload))
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(1)
