"""Commit-attribution linker.

States::

    no session found      -> standard commit (no attribution)
    unlinked session      -> contextual message -> operator confirms/edits
                          -> stage + commit -> append CommitLink to session
                          -> write commits/<hash>.json

Discovery prefers the most recently modified unlinked session record. When
there is none, recently modified transition outputs (backlog/completed
issues decided by a session that has no commit yet) are a weaker signal.
The linker never blocks a commit: with nothing to attribute it falls back
to an un-attributed commit.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal

from optledger.core import COMMITS_DIR, now_utc, read_json, write_once
from optledger.decisions import OUTCOME_KEYS
from optledger.detector import SESSION_TRAILER
from optledger.errors import CorruptionError, ValidationError
from optledger.models import Issue
from optledger.sessions import CommitLink, Session, SessionRecorder
from optledger.store import IssueStore
from optledger.types.sessions import CommitRecordDict
from optledger.validation import is_commit_hash
from optledger.vcs import VersionControl

logger = logging.getLogger(__name__)

Discovery = Literal["session_record", "transition_artifacts"]
LinkStatus = Literal["linked", "already_linked", "unattributed", "aborted", "nothing_to_commit"]

STANDARD_MESSAGE = "optimize: update optimization ledger"

_OUTCOME_HEADINGS = (
    ("implemented", "Implemented"),
    ("github_issue", "Ticketed"),
    ("deferred", "Deferred"),
    ("skipped", "Skipped"),
)


@dataclass(frozen=True)
class DiscoveredSession:
    session_id: str
    discovery: Discovery
    session: Session | None = None
    issue_ids: tuple[str, ...] = ()
    operation_type: str = ""


@dataclass
class LinkResult:
    status: LinkStatus
    commit_hash: str | None = None
    session_id: str | None = None
    message: str = ""
    manifest: list[str] = field(default_factory=list)
    discovery: Discovery | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "commit_hash": self.commit_hash,
            "session_id": self.session_id,
            "discovery": self.discovery,
            "manifest": self.manifest,
        }


class CommitLinker:
    def __init__(
        self,
        state_dir: Path,
        *,
        store: IssueStore,
        recorder: SessionRecorder,
        vcs: VersionControl,
        fallback_window_hours: float = 24.0,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.state_dir = state_dir
        self.store = store
        self.recorder = recorder
        self.vcs = vcs
        self.fallback_window = timedelta(hours=fallback_window_hours)
        self.clock = clock

    @property
    def commits_dir(self) -> Path:
        return self.state_dir / COMMITS_DIR

    # -- Commit-tracking records ----------------------------------------------

    def record_path(self, commit_hash: str) -> Path:
        if not is_commit_hash(commit_hash):
            msg = f"Invalid commit hash: {commit_hash!r}"
            raise ValidationError(msg, offending=[commit_hash])
        return self.commits_dir / f"{commit_hash}.json"

    def commit_records(self) -> list[CommitRecordDict]:
        if not self.commits_dir.is_dir():
            return []
        records: list[CommitRecordDict] = []
        for path in sorted(self.commits_dir.glob("*.json")):
            try:
                data = read_json(path)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise CorruptionError(path, "commit-tracking record", str(exc)) from exc
            if not isinstance(data, dict) or "commit_hash" not in data:
                raise CorruptionError(path, "commit-tracking record", type(data).__name__)
            records.append(data)  # type: ignore[arg-type]
        return records

    def linked_session_ids(self) -> set[str]:
        return {r["session_id"] for r in self.commit_records() if r.get("session_id")}

    # -- Discovery -----------------------------------------------------------

    def recover_links(self) -> list[str]:
        """Finish links interrupted between the commit record and the session append.

        A commit record names its session, so the missing ``commit_link`` is
        rebuilt from the record. Returns the session ids that were repaired.
        """
        repaired: list[str] = []
        for record in self.commit_records():
            session_id = record.get("session_id")
            if not session_id or not self.recorder.path_for(session_id).exists():
                continue
            if self.recorder.load(session_id).is_linked:
                continue
            link = CommitLink(
                commit_hash=record["commit_hash"],
                session_id=session_id,
                linked_at=record.get("linked_at", ""),
                file_manifest=tuple(record.get("file_manifest", ())),
            )
            self.recorder.append_commit_link(session_id, link)
            repaired.append(session_id)
        if repaired:
            logger.warning(
                "Completed %d interrupted commit link(s)",
                len(repaired),
                extra={"op": "link", "args_data": {"sessions": repaired}},
            )
        return repaired

    def discover(self) -> DiscoveredSession | None:
        """Latest unlinked session, after finishing any interrupted link."""
        self.recover_links()
        session = self.recorder.latest_unlinked()
        if session is not None:
            return DiscoveredSession(
                session_id=session.session_id,
                discovery="session_record",
                session=session,
                issue_ids=session.selected_issue_ids,
                operation_type=session.operation_type,
            )
        return self._discover_from_artifacts()

    def _discover_from_artifacts(self) -> DiscoveredSession | None:
        cutoff = self.clock() - self.fallback_window
        recent = [
            name
            for name in ("completed", "backlog")
            if self.store.path_for(name).exists()
            and datetime.fromtimestamp(self.store.path_for(name).stat().st_mtime, tz=cutoff.tzinfo) >= cutoff
        ]
        if not recent:
            return None
        linked = self.linked_session_ids()
        candidates: dict[str, list[Issue]] = {}
        latest: dict[str, str] = {}
        collections = self.store.load_all()
        for name in recent:
            for issue in collections[name].issues:
                prov = issue.provenance
                if prov is None or prov.source != "user" or not prov.session_id or prov.session_id in linked:
                    continue
                if not _is_recent(prov.decided_at, cutoff):
                    continue
                try:
                    existing = self.recorder.load(prov.session_id)
                except ValidationError:
                    existing = None
                if existing is not None and existing.is_linked:
                    continue
                candidates.setdefault(prov.session_id, []).append(issue)
                latest[prov.session_id] = max(latest.get(prov.session_id, ""), prov.decided_at)
        if not candidates:
            return None
        session_id = max(candidates, key=lambda sid: (latest[sid], sid))
        issues = candidates[session_id]
        logger.warning(
            "No unlinked session record; attributing from transition outputs",
            extra={"op": "link", "session_id": session_id, "issue_ids": [i.id for i in issues]},
        )
        provenance = issues[0].provenance
        return DiscoveredSession(
            session_id=session_id,
            discovery="transition_artifacts",
            session=None,
            issue_ids=tuple(i.id for i in issues),
            operation_type=provenance.operation_type if provenance else "",
        )

    # -- Message -------------------------------------------------------------

    def build_message(self, discovered: DiscoveredSession | None) -> str:
        """Contextual commit message: session id, issue ids and titles, counts."""
        if discovered is None:
            return STANDARD_MESSAGE
        resolved = self._resolve_issues(discovered.issue_ids)
        by_outcome: dict[str, list[str]] = {status: [] for status, _ in _OUTCOME_HEADINGS}
        for issue_id in discovered.issue_ids:
            issue = resolved.get(issue_id)
            if issue is None:
                status = _session_outcome(discovered.session, issue_id)
                line = f"- {issue_id}"
            else:
                status = issue.status
                line = f"- {issue_id} {issue.title}"
            by_outcome.setdefault(status, []).append(line)

        op = discovered.operation_type or "review"
        lines = [f"optimize: {op.replace('_', ' ')} (session {discovered.session_id})", ""]
        for status, heading in _OUTCOME_HEADINGS:
            entries = by_outcome.get(status) or []
            if entries:
                lines.append(f"{heading} ({len(entries)}):")
                lines.extend(entries)
                lines.append("")
        counts = _counts_for(discovered, by_outcome)
        lines.append("Counts: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        comment = discovered.session.comment if discovered.session else ""
        if comment:
            lines.append(f"Comment: {comment}")
        lines.append("")
        lines.append(f"{SESSION_TRAILER} {discovered.session_id}")
        return "\n".join(lines)

    def _resolve_issues(self, issue_ids: Sequence[str]) -> dict[str, Issue]:
        wanted = set(issue_ids)
        found: dict[str, Issue] = {}
        for coll in self.store.load_all().values():
            for issue in coll.issues:
                if issue.id in wanted:
                    found[issue.id] = issue
        return found

    # -- Commit + link -------------------------------------------------------

    def commit(
        self,
        confirm: Callable[[str], str | None],
        *,
        paths: Sequence[str] | None = None,
    ) -> LinkResult:
        """Run the full flow. *confirm* receives the proposed message and returns
        the final one (unchanged, edited or replaced), or None to abort.
        """
        discovered = self.discover()
        proposed = self.build_message(discovered)
        final = confirm(proposed)
        if final is None or not final.strip():
            logger.info("Commit aborted by operator", extra={"op": "commit"})
            return LinkResult(status="aborted", message=proposed)

        self.vcs.stage(paths)
        if not self.vcs.has_staged_changes():
            return LinkResult(status="nothing_to_commit", message=final)
        commit_hash = self.vcs.commit(final)
        manifest = self.vcs.files_in_commit(commit_hash)
        if discovered is None:
            return LinkResult(status="unattributed", commit_hash=commit_hash, message=final, manifest=manifest)
        return self.link(discovered, commit_hash, message=final, manifest=manifest)

    def link(
        self,
        discovered: DiscoveredSession,
        commit_hash: str,
        *,
        message: str = "",
        manifest: Sequence[str] = (),
    ) -> LinkResult:
        """Record the bidirectional link. Safe to call again for the same pair."""
        session = discovered.session
        if session is not None:
            current = self.recorder.load(session.session_id)
            if current.commit_link is not None and current.commit_link.commit_hash != commit_hash:
                return LinkResult(
                    status="already_linked",
                    commit_hash=current.commit_link.commit_hash,
                    session_id=session.session_id,
                    discovery=discovered.discovery,
                    manifest=list(current.commit_link.file_manifest),
                )
            session = current

        linked_at = self.clock().isoformat()
        link = CommitLink(
            commit_hash=commit_hash,
            session_id=discovered.session_id,
            linked_at=linked_at,
            file_manifest=tuple(manifest),
        )
        record: CommitRecordDict = {
            "commit_hash": commit_hash,
            "session_id": discovered.session_id,
            "linked_at": link.to_dict()["linked_at"],
            "message": message,
            "file_manifest": list(manifest),
            "attributed": True,
            "discovery": discovered.discovery,
            "session": session.to_dict() if session is not None else None,
        }
        self.commits_dir.mkdir(parents=True, exist_ok=True)
        created = write_once(self.record_path(commit_hash), json.dumps(record, indent=2, ensure_ascii=False) + "\n")
        appended = False
        if session is not None:
            appended = self.recorder.append_commit_link(session.session_id, link)
        status: LinkStatus = "linked" if created or appended else "already_linked"
        logger.info(
            "Commit %s %s to session %s",
            commit_hash[:12],
            status,
            discovered.session_id,
            extra={"op": "link", "session_id": discovered.session_id, "args_data": {"commit": commit_hash}},
        )
        return LinkResult(
            status=status,
            commit_hash=commit_hash,
            session_id=discovered.session_id,
            message=message,
            manifest=list(manifest),
            discovery=discovered.discovery,
        )


def _is_recent(decided_at: str, cutoff: datetime) -> bool:
    try:
        ts = datetime.fromisoformat(decided_at)
    except ValueError:
        return False
    if ts.tzinfo is None and cutoff.tzinfo is not None:
        ts = ts.replace(tzinfo=cutoff.tzinfo)
    return ts >= cutoff


def _session_outcome(session: Session | None, issue_id: str) -> str:
    if session is not None:
        for entry in session.issues:
            if entry["id"] == issue_id:
                return entry["outcome"]
    return "implemented"


def _counts_for(discovered: DiscoveredSession, by_outcome: dict[str, list[str]]) -> dict[str, int]:
    if discovered.session is not None:
        return {key: discovered.session.counts.get(key, 0) for key in OUTCOME_KEYS.values()}
    return {key: len(by_outcome.get(status, [])) for status, key in OUTCOME_KEYS.items()}
