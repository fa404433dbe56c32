"""Domain models: Issue, Provenance, Collection.

Issues are serialized into collection files exactly as ``to_dict()`` emits
them, and ``from_dict()`` is the only parser; there is no fallback path for
malformed records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, cast, get_args

from optledger.types.core import CollectionDict, CollectionHeaderDict, ISOTimestamp, IssueDict, ProvenanceDict
from optledger.validation import is_issue_id

Priority = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
Status = Literal["pending", "deferred", "skipped", "implemented", "github_issue"]
CollectionName = Literal["pending", "backlog", "completed"]
Confidence = Literal["high", "medium", "uncertain"]

PRIORITIES: tuple[Priority, ...] = get_args(Priority)
STATUSES: tuple[Status, ...] = get_args(Status)
COLLECTIONS: tuple[CollectionName, ...] = get_args(CollectionName)
TERMINAL_STATUSES: frozenset[str] = frozenset({"implemented", "skipped", "github_issue"})

COLLECTION_FOR_STATUS: dict[str, CollectionName] = {
    "pending": "pending",
    "deferred": "backlog",
    "implemented": "completed",
    "skipped": "completed",
    "github_issue": "completed",
}

COLLECTION_FORMAT_VERSION = 1

REQUIRED_ISSUE_FIELDS = ("id", "title", "priority", "status")
_STR_FIELDS = (
    "title",
    "category",
    "description",
    "assigned_capability",
    "recommended_action",
    "estimated_effort",
)


def priority_rank(priority: str) -> int:
    """0 = CRITICAL through 3 = LOW."""
    return PRIORITIES.index(cast(Priority, priority))


@dataclass(frozen=True)
class Provenance:
    """Who moved an issue out of pending, and on what evidence."""

    source: Literal["auto", "user"]
    method: str
    confidence: str = "high"
    needs_manual_verification: bool = False
    session_id: str | None = None
    operation_type: str = ""
    comment: str = ""
    decided_at: str = ""
    evidence: tuple[str, ...] = ()

    def to_dict(self) -> ProvenanceDict:
        return {
            "source": self.source,
            "method": self.method,
            "confidence": self.confidence,
            "needs_manual_verification": self.needs_manual_verification,
            "session_id": self.session_id,
            "operation_type": self.operation_type,
            "comment": self.comment,
            "decided_at": ISOTimestamp(self.decided_at),
            "evidence": list(self.evidence),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Provenance:
        if not isinstance(data, dict):
            msg = f"provenance must be an object, got {type(data).__name__}"
            raise ValueError(msg)
        source = data.get("source")
        if source not in ("auto", "user"):
            msg = f"provenance.source must be 'auto' or 'user', got {source!r}"
            raise ValueError(msg)
        method = data.get("method")
        if not isinstance(method, str) or not method:
            msg = "provenance.method must be a non-empty string"
            raise ValueError(msg)
        evidence = data.get("evidence", [])
        if not isinstance(evidence, list) or not all(isinstance(e, str) for e in evidence):
            msg = "provenance.evidence must be a list of strings"
            raise ValueError(msg)
        return cls(
            source=source,
            method=method,
            confidence=str(data.get("confidence", "high")),
            needs_manual_verification=bool(data.get("needs_manual_verification", False)),
            session_id=data.get("session_id"),
            operation_type=str(data.get("operation_type", "")),
            comment=str(data.get("comment", "")),
            decided_at=str(data.get("decided_at", "")),
            evidence=tuple(evidence),
        )


@dataclass(frozen=True)
class Issue:
    id: str
    title: str
    priority: Priority
    category: str = ""
    description: str = ""
    affected_files: tuple[str, ...] = ()
    assigned_capability: str = ""
    recommended_action: str = ""
    estimated_effort: str = ""
    status: Status = "pending"
    provenance: Provenance | None = None
    ticket_ref: str | None = None

    @property
    def collection(self) -> CollectionName:
        return COLLECTION_FOR_STATUS[self.status]

    def to_dict(self) -> IssueDict:
        return {
            "id": self.id,
            "title": self.title,
            "priority": self.priority,
            "category": self.category,
            "description": self.description,
            "affected_files": list(self.affected_files),
            "assigned_capability": self.assigned_capability,
            "recommended_action": self.recommended_action,
            "estimated_effort": self.estimated_effort,
            "status": self.status,
            "provenance": self.provenance.to_dict() if self.provenance else None,
            "ticket_ref": self.ticket_ref,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Issue:
        """Parse one issue record. Raises ValueError describing the first problem found."""
        if not isinstance(data, dict):
            msg = f"issue must be an object, got {type(data).__name__}"
            raise ValueError(msg)
        missing = [f for f in REQUIRED_ISSUE_FIELDS if f not in data]
        if missing:
            msg = f"issue {data.get('id', '?')!r} is missing fields: {', '.join(missing)}"
            raise ValueError(msg)
        issue_id = data["id"]
        if not isinstance(issue_id, str) or not issue_id.strip() or issue_id != issue_id.strip():
            msg = f"issue id must be a non-empty string without surrounding whitespace, got {issue_id!r}"
            raise ValueError(msg)
        if not is_issue_id(issue_id):
            msg = (
                f"issue id {issue_id!r} must be letters, digits, '.' or '-' (starting with a letter or digit)"
                " and not a decision keyword"
            )
            raise ValueError(msg)
        priority = str(data["priority"]).upper()
        if priority not in PRIORITIES:
            msg = f"issue {issue_id}: priority must be one of {', '.join(PRIORITIES)}, got {data['priority']!r}"
            raise ValueError(msg)
        status = data["status"]
        if status not in STATUSES:
            msg = f"issue {issue_id}: status must be one of {', '.join(STATUSES)}, got {status!r}"
            raise ValueError(msg)
        for name in _STR_FIELDS:
            if name in data and not isinstance(data[name], str):
                msg = f"issue {issue_id}: {name} must be a string"
                raise ValueError(msg)
        if not data["title"]:
            msg = f"issue {issue_id}: title must not be empty"
            raise ValueError(msg)
        files = data.get("affected_files", [])
        if not isinstance(files, list) or not all(isinstance(p, str) for p in files):
            msg = f"issue {issue_id}: affected_files must be a list of paths"
            raise ValueError(msg)
        ticket_ref = data.get("ticket_ref")
        if ticket_ref is not None and not isinstance(ticket_ref, str):
            msg = f"issue {issue_id}: ticket_ref must be a string or null"
            raise ValueError(msg)
        provenance = data.get("provenance")
        return cls(
            id=issue_id,
            title=data["title"],
            priority=cast(Priority, priority),
            category=data.get("category", ""),
            description=data.get("description", ""),
            affected_files=tuple(dict.fromkeys(files)),
            assigned_capability=data.get("assigned_capability", ""),
            recommended_action=data.get("recommended_action", ""),
            estimated_effort=data.get("estimated_effort", ""),
            status=status,
            provenance=Provenance.from_dict(provenance) if provenance is not None else None,
            ticket_ref=ticket_ref,
        )


@dataclass
class Collection:
    """One named stage: a header plus an ordered list of issues."""

    name: CollectionName
    issues: list[Issue] = field(default_factory=list)
    updated_at: str = ""
    source: dict[str, Any] = field(default_factory=dict)
    flags: dict[str, dict[str, Any]] = field(default_factory=dict)

    def ids(self) -> list[str]:
        return [i.id for i in self.issues]

    def get(self, issue_id: str) -> Issue | None:
        for issue in self.issues:
            if issue.id == issue_id:
                return issue
        return None

    def __contains__(self, issue_id: object) -> bool:
        return any(i.id == issue_id for i in self.issues)

    def __len__(self) -> int:
        return len(self.issues)

    def by_priority(self, priority: str) -> list[Issue]:
        return [i for i in self.issues if i.priority == priority]

    def to_dict(self) -> CollectionDict:
        header: CollectionHeaderDict = {
            "version": COLLECTION_FORMAT_VERSION,
            "collection": self.name,
            "updated_at": ISOTimestamp(self.updated_at),
            "issue_count": len(self.issues),
            "source": self.source,
            "flags": self.flags,
        }
        return {"header": header, "issues": [i.to_dict() for i in self.issues]}

    def touch(self, ts: datetime) -> None:
        self.updated_at = ts.isoformat()
