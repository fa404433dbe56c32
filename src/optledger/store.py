"""Issue store: crash-safe persistence for the pending/backlog/completed collections.

Each collection lives in ``<stage>/issues.json``. Saves go through
``write_atomic`` with a validation hook, so the bytes are parsed back and
checked before the rename publishes them. Loads apply the same checks and
fail closed with ``CorruptionError``.

Moving issues between collections touches two files. Every move batch is
recorded in an intent journal first; leftover journals (from a process that
died mid-batch) are rolled forward before the store serves any read.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from optledger.core import (
    COLLECTION_FILENAME,
    COMMITS_DIR,
    DECISIONS_DIR,
    JOURNAL_DIR,
    now_utc,
    read_json,
    write_atomic,
)
from optledger.errors import CorruptionError, StoreIOError, ValidationError
from optledger.logging import log_op
from optledger.models import (
    COLLECTION_FOR_STATUS,
    COLLECTIONS,
    Collection,
    CollectionName,
    Issue,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
_JOURNAL_PREFIX = "transition-"


@dataclass(frozen=True)
class Move:
    """Place *issue* into *destination*, removing it from *source* (None = new record)."""

    issue: Issue
    source: CollectionName | None
    destination: CollectionName

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue.to_dict(), "source": self.source, "destination": self.destination}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Move:
        return cls(issue=Issue.from_dict(data["issue"]), source=data["source"], destination=data["destination"])


@dataclass
class IngestResult:
    added: list[str] = field(default_factory=list)
    readmitted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"added": self.added, "readmitted": self.readmitted, "skipped": self.skipped}


class IssueStore:
    """File-backed store for the three issue collections.

    No in-memory cache is kept: every public call reads the collections from
    disk, so two invocations never trust each other's stale view.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.state_dir = state_dir
        self.max_bytes = max_bytes
        self.clock = clock
        self._recovered = False

    # -- Layout --------------------------------------------------------------

    def path_for(self, name: CollectionName) -> Path:
        if name not in COLLECTIONS:
            msg = f"Unknown collection: {name!r}"
            raise ValidationError(msg)
        return self.state_dir / name / COLLECTION_FILENAME

    @property
    def journal_dir(self) -> Path:
        return self.state_dir / JOURNAL_DIR

    def init(self, *, source: dict[str, Any] | None = None) -> list[CollectionName]:
        """Create the stage directories and empty collections. Existing files are kept.

        Returns the names of the collections that were created.
        """
        for sub in (*COLLECTIONS, DECISIONS_DIR, COMMITS_DIR, JOURNAL_DIR):
            (self.state_dir / sub).mkdir(parents=True, exist_ok=True)
        created: list[CollectionName] = []
        for name in COLLECTIONS:
            if not self.path_for(name).exists():
                self.save(Collection(name=name, source=dict(source or {})))
                created.append(name)
        return created

    # -- Validation ----------------------------------------------------------

    def _parse_file(self, path: Path, name: CollectionName) -> Collection:
        """Structurally validate a collection file and return its contents."""
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            raise CorruptionError(path, f"{name} collection file", "no file") from None
        except OSError as exc:
            raise StoreIOError(path, exc) from exc
        if size == 0:
            raise CorruptionError(path, "non-empty file", "0 bytes")
        if size > self.max_bytes:
            raise CorruptionError(path, f"at most {self.max_bytes} bytes", f"{size} bytes")
        try:
            data = read_json(path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptionError(path, "valid JSON", str(exc)) from exc
        except OSError as exc:
            raise StoreIOError(path, exc) from exc
        return self._parse_data(path, name, data)

    def _parse_data(self, path: Path, name: CollectionName, data: Any) -> Collection:
        if not isinstance(data, dict):
            raise CorruptionError(path, "JSON object with header and issues", type(data).__name__)
        header = data.get("header")
        issues = data.get("issues")
        if not isinstance(header, dict):
            raise CorruptionError(path, "header object", repr(header)[:80])
        if not isinstance(issues, list):
            raise CorruptionError(path, "issues array", repr(issues)[:80])
        if header.get("collection") != name:
            raise CorruptionError(path, f"header.collection == {name!r}", repr(header.get("collection")))
        if header.get("issue_count") != len(issues):
            raise CorruptionError(path, f"header.issue_count == {len(issues)}", repr(header.get("issue_count")))
        source = header.get("source", {})
        if not isinstance(source, dict):
            raise CorruptionError(path, "header.source object", type(source).__name__)

        parsed: list[Issue] = []
        seen: set[str] = set()
        for raw in issues:
            try:
                issue = Issue.from_dict(raw)
            except ValueError as exc:
                raise CorruptionError(path, "valid issue record", str(exc)) from exc
            if issue.id in seen:
                raise CorruptionError(path, "unique issue ids", f"duplicate id {issue.id}")
            if COLLECTION_FOR_STATUS[issue.status] != name:
                raise CorruptionError(path, f"issues belonging to {name}", f"{issue.id} with status {issue.status}")
            seen.add(issue.id)
            parsed.append(issue)
        flags = header.get("flags", {})
        if not isinstance(flags, dict) or not all(isinstance(v, dict) for v in flags.values()):
            raise CorruptionError(path, "header.flags object of objects", repr(flags)[:80])
        stale = sorted(set(flags) - seen)
        if stale:
            raise CorruptionError(path, "flags only for issues in this collection", f"flags for {', '.join(stale)}")
        return Collection(
            name=name,
            issues=parsed,
            updated_at=str(header.get("updated_at", "")),
            source=source,
            flags=flags,
        )

    # -- Load / save ---------------------------------------------------------

    def load(self, name: CollectionName) -> Collection:
        """Load and validate one collection. Raises CorruptionError on any structural problem."""
        self._ensure_recovered()
        return self._parse_file(self.path_for(name), name)

    def load_all(self) -> dict[CollectionName, Collection]:
        """Load all three collections and check that no id appears in two of them."""
        self._ensure_recovered()
        collections = {name: self._parse_file(self.path_for(name), name) for name in COLLECTIONS}
        owner: dict[str, CollectionName] = {}
        for name, coll in collections.items():
            for issue_id in coll.ids():
                if issue_id in owner:
                    raise CorruptionError(
                        self.state_dir,
                        "each issue id in exactly one collection",
                        f"{issue_id} in both {owner[issue_id]} and {name}",
                    )
                owner[issue_id] = name
        return collections

    def save(self, collection: Collection) -> None:
        """Atomically replace the collection file.

        On failure the destination is byte-identical to its prior state.
        """
        path = self.path_for(collection.name)
        collection.touch(self.clock())
        payload = json.dumps(collection.to_dict(), indent=2, ensure_ascii=False) + "\n"

        def _check(tmp: Path) -> None:
            self._parse_file(tmp, collection.name)

        args = {"collection": collection.name, "issues": len(collection)}
        with log_op(logger, "save", f"Saved {collection.name} collection", args_data=args):
            write_atomic(path, payload, validate=_check)

    # -- Queries -------------------------------------------------------------

    def find(self, issue_id: str) -> tuple[CollectionName, Issue] | None:
        for name, coll in self.load_all().items():
            issue = coll.get(issue_id)
            if issue is not None:
                return name, issue
        return None

    def all_ids(self) -> set[str]:
        return {issue_id for coll in self.load_all().values() for issue_id in coll.ids()}

    # -- Moves ---------------------------------------------------------------

    def apply_moves(
        self,
        moves: Sequence[Move],
        *,
        op: str = "transition",
        header_sources: dict[CollectionName, dict[str, Any]] | None = None,
    ) -> list[Move]:
        """Apply a batch of moves crash-safely. Returns the moves that changed state.

        A move whose issue already rests in its destination (with the same
        status) and is gone from its source is treated as already applied.
        *header_sources* replaces the header source metadata of the named
        collections when they are rewritten.
        """
        collections = self.load_all()
        for name, meta in (header_sources or {}).items():
            collections[name].source = dict(meta)
        pending_moves: list[Move] = []
        for move in moves:
            dest = collections[move.destination].get(move.issue.id)
            in_source = move.source is not None and move.issue.id in collections[move.source]
            if dest is not None and dest.status == move.issue.status and not in_source:
                continue
            if move.source is not None and not in_source:
                msg = f"Issue {move.issue.id} is not in the {move.source} collection"
                raise ValidationError(msg, offending=[move.issue.id])
            if move.source is None and dest is not None:
                msg = f"Issue {move.issue.id} already exists in {move.destination}"
                raise ValidationError(msg, offending=[move.issue.id])
            pending_moves.append(move)
        if not pending_moves:
            return []

        journal = self._write_journal(pending_moves, op)
        self._roll_forward(pending_moves, collections)
        self._remove_journal(journal)
        logger.info(
            "Applied %d move(s)",
            len(pending_moves),
            extra={"op": op, "issue_ids": [m.issue.id for m in pending_moves]},
        )
        return pending_moves

    def _roll_forward(self, moves: Iterable[Move], collections: dict[CollectionName, Collection]) -> None:
        """Insert into destinations, then remove from sources. Idempotent."""
        moves = list(moves)
        dirty_dest: list[CollectionName] = []
        for move in moves:
            dest = collections[move.destination]
            if move.issue.id not in dest:
                dest.issues.append(move.issue)
                if move.destination not in dirty_dest:
                    dirty_dest.append(move.destination)
        dirty_src: list[CollectionName] = []
        for move in moves:
            if move.source is None or move.source == move.destination:
                continue
            src = collections[move.source]
            if move.issue.id in src:
                src.issues = [i for i in src.issues if i.id != move.issue.id]
                src.flags.pop(move.issue.id, None)
                if move.source not in dirty_src:
                    dirty_src.append(move.source)
        # Destinations first: a crash in between leaves a duplicate that the
        # journal resolves, never a lost issue.
        for name in dirty_dest:
            self.save(collections[name])
        for name in dirty_src:
            self.save(collections[name])

    # -- Journal -------------------------------------------------------------

    def _write_journal(self, moves: Sequence[Move], op: str) -> Path:
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        path = self.journal_dir / f"{_JOURNAL_PREFIX}{os.getpid()}-{uuid.uuid4().hex[:8]}.json"
        body = {"op": op, "created_at": self.clock().isoformat(), "moves": [m.to_dict() for m in moves]}
        write_atomic(path, json.dumps(body, indent=2, ensure_ascii=False) + "\n")
        return path

    def _remove_journal(self, path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

    def pending_journals(self) -> list[Path]:
        if not self.journal_dir.is_dir():
            return []
        return sorted(p for p in self.journal_dir.glob(f"{_JOURNAL_PREFIX}*.json") if not p.name.startswith("."))

    def _ensure_recovered(self) -> None:
        if self._recovered:
            return
        self._recovered = True
        try:
            self.recover()
        except BaseException:
            self._recovered = False
            raise

    def recover(self) -> int:
        """Roll forward any journals left by an interrupted batch. Returns how many were replayed."""
        replayed = 0
        for journal in self.pending_journals():
            try:
                body = read_json(journal)
                moves = [Move.from_dict(m) for m in body["moves"]]
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                raise CorruptionError(journal, "transition journal", str(exc)) from exc
            collections = {name: self._parse_file(self.path_for(name), name) for name in COLLECTIONS}
            self._roll_forward(moves, collections)
            self._remove_journal(journal)
            replayed += 1
            logger.warning(
                "Recovered interrupted %s batch from %s",
                body.get("op", "transition"),
                journal.name,
                extra={"op": "recover", "issue_ids": [m.issue.id for m in moves]},
            )
        return replayed

    # -- Producer entry point ------------------------------------------------

    def ingest(self, records: Iterable[Any], *, source: dict[str, Any] | None = None) -> IngestResult:
        """Append producer records to pending.

        Ids already pending or completed are skipped; deferred ids in the
        backlog are re-admitted to pending with the producer's fresh record.
        Any malformed record rejects the whole batch.
        """
        parsed: list[Issue] = []
        seen: set[str] = set()
        for raw in records:
            if isinstance(raw, dict):
                raw = {**raw, "status": raw.get("status", "pending")}
            try:
                issue = Issue.from_dict(raw)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if issue.status != "pending" or issue.provenance is not None:
                msg = f"Producer records must be new pending issues; {issue.id} has status {issue.status}"
                raise ValidationError(msg, offending=[issue.id])
            if issue.id in seen:
                msg = f"Duplicate issue id in batch: {issue.id}"
                raise ValidationError(msg, offending=[issue.id])
            seen.add(issue.id)
            parsed.append(issue)

        collections = self.load_all()
        result = IngestResult()
        moves: list[Move] = []
        for issue in parsed:
            if issue.id in collections["backlog"]:
                moves.append(Move(issue=issue, source="backlog", destination="pending"))
                result.readmitted.append(issue.id)
            elif issue.id in collections["pending"] or issue.id in collections["completed"]:
                result.skipped.append(issue.id)
            else:
                moves.append(Move(issue=issue, source=None, destination="pending"))
                result.added.append(issue.id)
        if moves:
            self.apply_moves(moves, op="ingest", header_sources={"pending": source} if source else None)
        return result

    # -- Review flags --------------------------------------------------------

    def set_review_flags(self, flags: dict[str, dict[str, Any]]) -> bool:
        """Replace the manual-review flags on pending issues. Returns True if the file changed.

        Flags for ids that are no longer pending are dropped.
        """
        pending = self.load("pending")
        wanted = {issue_id: dict(flag) for issue_id, flag in flags.items() if issue_id in pending}
        if wanted == pending.flags:
            return False
        pending.flags = wanted
        self.save(pending)
        return True

    # -- Tracker references --------------------------------------------------

    def record_ticket_reference(self, issue_id: str, ref: str) -> Issue:
        """Store the tracker reference returned for a github_issue outcome."""
        completed = self.load("completed")
        issue = completed.get(issue_id)
        if issue is None or issue.status != "github_issue":
            msg = f"Issue {issue_id} is not a completed github_issue"
            raise ValidationError(msg, offending=[issue_id])
        if issue.ticket_ref == ref:
            return issue
        if issue.ticket_ref:
            msg = f"Issue {issue_id} already references {issue.ticket_ref}"
            raise ValidationError(msg, offending=[issue_id])
        updated = replace(issue, ticket_ref=ref)
        completed.issues = [updated if i.id == issue_id else i for i in completed.issues]
        self.save(completed)
        logger.info("Recorded ticket %s for %s", ref, issue_id, extra={"op": "ticket_ref", "issue_ids": [issue_id]})
        return updated
