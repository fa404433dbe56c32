"""Issue-tracker integration for the ``github_issue`` outcome.

The core only prepares the payload; ``GitHubTracker`` performs creation
through the GitHub REST API and returns the created issue's URL, which is
then stored on the issue via ``IssueStore.record_ticket_reference``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from optledger.errors import TicketError, ValidationError
from optledger.models import Issue
from optledger.store import IssueStore

logger = logging.getLogger(__name__)

_DEFAULT_API_URL = "https://api.github.com"
_TIMEOUT = 30.0


@dataclass(frozen=True)
class TicketPayload:
    issue_id: str
    title: str
    body: str
    labels: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "labels": list(self.labels)}


def build_ticket_payload(issue: Issue, labels: tuple[str, ...] | list[str] = ()) -> TicketPayload:
    """Structured ticket for *issue*."""
    lines = [
        f"**Priority:** {issue.priority}",
        f"**Category:** {issue.category or 'uncategorized'}",
        "",
        issue.description or issue.title,
    ]
    if issue.recommended_action:
        lines += ["", f"**Recommended action:** {issue.recommended_action}"]
    if issue.affected_files:
        lines += ["", "**Affected files:**", *(f"- `{p}`" for p in issue.affected_files)]
    lines += ["", f"_Tracked as {issue.id}_"]
    all_labels = (*labels, f"priority:{issue.priority.lower()}")
    return TicketPayload(
        issue_id=issue.id,
        title=f"[{issue.priority}] {issue.title}",
        body="\n".join(lines),
        labels=tuple(dict.fromkeys(all_labels)),
    )


class Tracker(Protocol):
    def create(self, payload: TicketPayload) -> str: ...


class GitHubTracker:
    """Creates GitHub issues. Pass *transport* (e.g. ``httpx.MockTransport``) in tests."""

    def __init__(
        self,
        repo: str,
        token: str,
        *,
        api_url: str = _DEFAULT_API_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if repo.count("/") != 1 or not all(repo.split("/")):
            msg = f"tickets.repo must look like 'owner/name', got {repo!r}"
            raise ValidationError(msg)
        self.repo = repo
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=_TIMEOUT,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubTracker:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def create(self, payload: TicketPayload) -> str:
        try:
            response = self._client.post(f"/repos/{self.repo}/issues", json=payload.to_dict())
        except httpx.HTTPError as exc:
            raise TicketError(payload.issue_id, None, str(exc)) from exc
        if response.status_code != 201:
            raise TicketError(payload.issue_id, response.status_code, response.text[:200])
        data = response.json()
        ref = data.get("html_url") or f"{self.repo}#{data.get('number')}"
        logger.info("Created ticket %s", ref, extra={"op": "ticket", "issue_ids": [payload.issue_id]})
        return str(ref)


@dataclass
class TicketSyncResult:
    created: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"created": self.created, "failed": self.failed}


def unticketed(store: IssueStore) -> list[Issue]:
    """Completed github_issue outcomes that have no tracker reference yet."""
    return [i for i in store.load("completed").issues if i.status == "github_issue" and not i.ticket_ref]


def sync_tickets(store: IssueStore, tracker: Tracker, *, labels: tuple[str, ...] | list[str] = ()) -> TicketSyncResult:
    """Create a ticket for every unticketed issue and store the returned reference.

    One failing ticket does not stop the others; failures are reported back.
    """
    result = TicketSyncResult()
    for issue in unticketed(store):
        try:
            ref = tracker.create(build_ticket_payload(issue, labels))
        except TicketError as exc:
            logger.warning("Ticket creation failed for %s", issue.id, extra={"op": "ticket", "error": str(exc)})
            result.failed[issue.id] = str(exc)
            continue
        store.record_ticket_reference(issue.id, ref)
        result.created[issue.id] = ref
    return result
