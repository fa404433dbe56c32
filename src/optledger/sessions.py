"""Session / audit recorder.

One immutable JSON document per applied decision, stored as
``decisions/<session_id>.json``. Records are created with ``write_once``
and never rewritten, except for the single ``commit_link`` block that the
commit linker appends later; that rewrite verifies every prior field is
unchanged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from optledger.core import DECISIONS_DIR, now_utc, read_json, session_id_for, write_atomic, write_once
from optledger.decisions import OUTCOME_KEYS, DecisionOutcome
from optledger.errors import CorruptionError, LedgerError, ValidationError
from optledger.types.core import ISOTimestamp
from optledger.types.sessions import CommitLinkDict, DelegationDict, SessionDict, SessionIssueDict, TicketRequestDict
from optledger.validation import is_session_id

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("session_id", "created_at", "operation_type", "selected_issue_ids", "counts")


@dataclass(frozen=True)
class CommitLink:
    commit_hash: str
    session_id: str
    linked_at: str
    file_manifest: tuple[str, ...] = ()

    def to_dict(self) -> CommitLinkDict:
        return {
            "commit_hash": self.commit_hash,
            "session_id": self.session_id,
            "linked_at": ISOTimestamp(self.linked_at),
            "file_manifest": list(self.file_manifest),
        }

    @classmethod
    def from_dict(cls, data: Any) -> CommitLink:
        if not isinstance(data, dict) or not isinstance(data.get("commit_hash"), str):
            msg = "commit_link must be an object with a commit_hash"
            raise ValueError(msg)
        return cls(
            commit_hash=data["commit_hash"],
            session_id=str(data.get("session_id", "")),
            linked_at=str(data.get("linked_at", "")),
            file_manifest=tuple(data.get("file_manifest", [])),
        )


@dataclass(frozen=True)
class Session:
    session_id: str
    created_at: str
    operation_type: str
    selected_issue_ids: tuple[str, ...]
    counts: dict[str, int]
    decision: str = ""
    comment: str = ""
    issues: tuple[SessionIssueDict, ...] = ()
    delegations: tuple[DelegationDict, ...] = ()
    ticket_requests: tuple[TicketRequestDict, ...] = ()
    commit_link: CommitLink | None = None

    @property
    def is_linked(self) -> bool:
        return self.commit_link is not None

    def to_dict(self) -> SessionDict:
        data: SessionDict = {
            "session_id": self.session_id,
            "created_at": ISOTimestamp(self.created_at),
            "operation_type": self.operation_type,
            "decision": self.decision,
            "comment": self.comment,
            "selected_issue_ids": list(self.selected_issue_ids),
            "counts": dict(self.counts),
            "issues": list(self.issues),
            "delegations": list(self.delegations),
            "ticket_requests": list(self.ticket_requests),
        }
        if self.commit_link is not None:
            data["commit_link"] = self.commit_link.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Session:
        if not isinstance(data, dict):
            msg = f"session must be an object, got {type(data).__name__}"
            raise ValueError(msg)
        missing = [f for f in _REQUIRED_FIELDS if f not in data]
        if missing:
            msg = f"session is missing fields: {', '.join(missing)}"
            raise ValueError(msg)
        if not isinstance(data["session_id"], str) or not is_session_id(data["session_id"]):
            msg = f"invalid session_id {data['session_id']!r}"
            raise ValueError(msg)
        if not isinstance(data["selected_issue_ids"], list) or not isinstance(data["counts"], dict):
            msg = "selected_issue_ids must be a list and counts an object"
            raise ValueError(msg)
        link = data.get("commit_link")
        return cls(
            session_id=data["session_id"],
            created_at=str(data["created_at"]),
            operation_type=str(data["operation_type"]),
            selected_issue_ids=tuple(data["selected_issue_ids"]),
            counts={str(k): int(v) for k, v in data["counts"].items()},
            decision=str(data.get("decision", "")),
            comment=str(data.get("comment", "")),
            issues=tuple(data.get("issues", [])),
            delegations=tuple(data.get("delegations", [])),
            ticket_requests=tuple(data.get("ticket_requests", [])),
            commit_link=CommitLink.from_dict(link) if link is not None else None,
        )

    @classmethod
    def from_outcome(cls, outcome: DecisionOutcome, *, session_id: str, created_at: str) -> Session:
        plan = outcome.plan
        applied = [m.issue for m in outcome.applied]
        counts = {key: 0 for key in OUTCOME_KEYS.values()}
        for issue in applied:
            counts[OUTCOME_KEYS[issue.status]] += 1
        return cls(
            session_id=session_id,
            created_at=created_at,
            operation_type=plan.decision.operation_type,
            decision=plan.decision.raw,
            comment=plan.decision.comment,
            selected_issue_ids=tuple(i.id for i in applied),
            counts=counts,
            issues=tuple(
                {"id": i.id, "title": i.title, "priority": i.priority, "outcome": i.status} for i in applied
            ),
            delegations=tuple(d.to_dict() for d in outcome.delegations),
            ticket_requests=tuple(
                r.to_dict() for r in plan.ticket_requests if r.issue_id in {i.id for i in applied}
            ),
        )


@dataclass
class SessionRecorder:
    state_dir: Path
    clock: Callable[[], datetime] = field(default=now_utc)

    @property
    def decisions_dir(self) -> Path:
        return self.state_dir / DECISIONS_DIR

    def path_for(self, session_id: str) -> Path:
        if not is_session_id(session_id):
            msg = f"Invalid session id: {session_id!r}"
            raise ValidationError(msg, offending=[session_id])
        return self.decisions_dir / f"{session_id}.json"

    def new_session_id(self) -> str:
        """Next free sortable id; same-second collisions get a _NN suffix."""
        base = session_id_for(self.clock())
        candidate = base
        n = 1
        while self.path_for(candidate).exists():
            candidate = f"{base}_{n:02d}"
            n += 1
            if n > 99:
                msg = f"Too many sessions within one second ({base})"
                raise LedgerError(msg)
        return candidate

    def record(self, outcome: DecisionOutcome) -> Session:
        """Persist the session for an applied decision. Write-once."""
        if outcome.session_id is None:
            msg = "Cannot record a decision outcome without a session id"
            raise ValidationError(msg)
        session = Session.from_outcome(outcome, session_id=outcome.session_id, created_at=self.clock().isoformat())
        self.decisions_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session.session_id)
        if not write_once(path, json.dumps(session.to_dict(), indent=2, ensure_ascii=False) + "\n"):
            msg = f"Session {session.session_id} already exists; session records are write-once"
            raise LedgerError(msg)
        logger.info(
            "Recorded session %s (%s)",
            session.session_id,
            session.operation_type,
            extra={"op": "session", "session_id": session.session_id, "issue_ids": list(session.selected_issue_ids)},
        )
        return session

    def load(self, session_id: str) -> Session:
        path = self.path_for(session_id)
        if not path.exists():
            msg = f"Unknown session: {session_id}"
            raise ValidationError(msg, offending=[session_id])
        return self._load_path(path)

    def _load_path(self, path: Path) -> Session:
        try:
            return Session.from_dict(read_json(path))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError, TypeError) as exc:
            raise CorruptionError(path, "session record", str(exc)) from exc

    def _paths(self) -> list[Path]:
        if not self.decisions_dir.is_dir():
            return []
        return [p for p in self.decisions_dir.glob("*.json") if is_session_id(p.stem)]

    def list_sessions(self) -> list[Session]:
        """All sessions, oldest first."""
        return [self._load_path(p) for p in sorted(self._paths(), key=lambda p: p.stem)]

    def latest_unlinked(self) -> Session | None:
        """Most recently modified session without a commit link."""
        paths = sorted(self._paths(), key=lambda p: (p.stat().st_mtime, p.stem), reverse=True)
        for path in paths:
            session = self._load_path(path)
            if not session.is_linked:
                return session
        return None

    def append_commit_link(self, session_id: str, link: CommitLink) -> bool:
        """Append commit metadata to a session. Returns False if it was already there.

        A session can be linked to exactly one commit.
        """
        path = self.path_for(session_id)
        before = self.load(session_id)
        if before.commit_link is not None:
            if before.commit_link.commit_hash == link.commit_hash:
                return False
            msg = f"Session {session_id} is already linked to commit {before.commit_link.commit_hash}"
            raise ValidationError(msg, offending=[link.commit_hash])
        original = read_json(path)
        updated = {**original, "commit_link": link.to_dict()}

        def _check(tmp: Path) -> None:
            written = read_json(tmp)
            prior = {k: v for k, v in written.items() if k != "commit_link"}
            if prior != original:
                raise CorruptionError(tmp, "unchanged session fields", "modified prior content")

        write_atomic(path, json.dumps(updated, indent=2, ensure_ascii=False) + "\n", validate=_check)
        logger.info(
            "Linked session %s to %s",
            session_id,
            link.commit_hash[:12],
            extra={"op": "link", "session_id": session_id, "args_data": {"commit": link.commit_hash}},
        )
        return True
