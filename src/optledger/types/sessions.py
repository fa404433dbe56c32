"""TypedDicts for decision session records and commit-tracking records."""

from __future__ import annotations

from typing import TypedDict

from optledger.types.core import ISOTimestamp


class SessionIssueDict(TypedDict):
    id: str
    title: str
    priority: str
    outcome: str


class DelegationDict(TypedDict):
    capability: str
    issue_id: str
    status: str
    detail: str


class TicketRequestDict(TypedDict):
    issue_id: str
    title: str
    priority: str
    category: str
    description: str


class CommitLinkDict(TypedDict):
    """Metadata appended to a session record once its commit exists."""

    commit_hash: str
    session_id: str
    linked_at: ISOTimestamp
    file_manifest: list[str]


class SessionDict(TypedDict, total=False):
    """Shape of decisions/<session_id>.json."""

    session_id: str
    created_at: ISOTimestamp
    operation_type: str
    decision: str
    comment: str
    selected_issue_ids: list[str]
    counts: dict[str, int]
    issues: list[SessionIssueDict]
    delegations: list[DelegationDict]
    ticket_requests: list[TicketRequestDict]
    commit_link: CommitLinkDict


class CommitRecordDict(TypedDict, total=False):
    """Shape of commits/<commit_hash>.json."""

    commit_hash: str
    session_id: str | None
    linked_at: ISOTimestamp
    message: str
    file_manifest: list[str]
    attributed: bool
    discovery: str
    session: SessionDict | None
