"""Typed error taxonomy for optledger.

Every error carries enough context for the caller to act on it (offending
id, expected vs. found shape, file path). None of these are retried
automatically.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path


class LedgerError(Exception):
    """Base class for all optledger errors."""

    code = "ledger_error"


class ValidationError(LedgerError, ValueError):
    """Raised when operator input or producer records fail validation.

    Always raised before any mutation is applied.
    """

    code = "validation_error"

    def __init__(
        self,
        reason: str,
        *,
        offending: Iterable[str] = (),
        valid_ids: Iterable[str] = (),
    ) -> None:
        self.reason = reason
        self.offending = tuple(offending)
        self.valid_ids = tuple(valid_ids)
        message = reason
        if self.valid_ids:
            message += f". Valid ids: {', '.join(self.valid_ids)}"
        super().__init__(message)


class CorruptionError(LedgerError):
    """Raised when a persisted record fails structural validation on read."""

    code = "corruption_error"

    def __init__(self, path: Path | str, expected: str, found: str) -> None:
        self.path = Path(path)
        self.expected = expected
        self.found = found
        super().__init__(f"Corrupt record {self.path}: expected {expected}, found {found}")


class StoreIOError(LedgerError, OSError):
    """Raised when a write or rename fails. The temp artifact is already removed."""

    code = "io_error"

    def __init__(self, path: Path | str, cause: BaseException) -> None:
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"Failed to write {self.path}: {cause}")


class UncertainClassificationError(LedgerError):
    """Raised when migrating an issue whose classification needs operator confirmation."""

    code = "uncertain_classification"

    def __init__(self, issue_id: str, classification: str, evidence: Iterable[str] = ()) -> None:
        self.issue_id = issue_id
        self.classification = classification
        self.evidence = tuple(evidence)
        super().__init__(
            f"Issue {issue_id} is classified '{classification}'; confirm it manually before migrating "
            f"(optledger dedupe --confirm {issue_id})"
        )


class NotInitializedError(LedgerError, FileNotFoundError):
    """Raised when no .claude/optimize/ state directory can be found."""

    code = "not_initialized"


class VCSError(LedgerError):
    """Raised when a git invocation fails or times out."""

    code = "vcs_error"

    def __init__(self, command: list[str], returncode: int | None, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        rc = "timeout" if returncode is None else f"exit {returncode}"
        super().__init__(f"{' '.join(command)} failed ({rc}): {stderr.strip()}")


class TicketError(LedgerError):
    """Raised when the issue tracker rejects a ticket creation request."""

    code = "ticket_error"

    def __init__(self, issue_id: str, status_code: int | None, detail: str) -> None:
        self.issue_id = issue_id
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Ticket creation for {issue_id} failed ({status_code}): {detail}")
