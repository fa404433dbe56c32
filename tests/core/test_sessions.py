"""Tests for the session recorder and the review workflow."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from optledger.context import LedgerContext
from optledger.core import read_config
from optledger.decisions import TransitionEngine
from optledger.errors import CorruptionError, LedgerError, ValidationError
from optledger.review import run_review
from optledger.sessions import CommitLink, SessionRecorder
from optledger.store import IssueStore


FIXED = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


def _apply(store: IssueStore, text: str, session_id: str) -> Any:
    engine = TransitionEngine(store)
    return engine.apply(engine.plan(text), session_id)


class TestRecorder:
    def test_record_and_load(self, populated_store: IssueStore, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir, clock=lambda: FIXED)
        session_id = recorder.new_session_id()
        assert session_id == "20240301_120000"
        session = recorder.record(_apply(populated_store, "implement A skip B 'perf budget'", session_id))

        assert session.operation_type == "mixed_individual"
        assert session.selected_issue_ids == ("A", "B")
        assert session.counts == {"implemented": 1, "ticketed": 0, "deferred": 0, "skipped": 1}
        assert session.comment == "perf budget"
        assert recorder.load(session_id) == session

    def test_same_second_ids_get_suffix(self, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir, clock=lambda: FIXED)
        (state_dir / "decisions" / "20240301_120000.json").write_text("{}")
        assert recorder.new_session_id() == "20240301_120000_01"

    def test_sessions_are_write_once(self, populated_store: IssueStore, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir)
        outcome = _apply(populated_store, "skip A", "20240301_120000")
        recorder.record(outcome)
        with pytest.raises(LedgerError, match="write-once"):
            recorder.record(outcome)

    def test_invalid_session_id(self, state_dir: Path) -> None:
        with pytest.raises(ValidationError, match="Invalid session id"):
            SessionRecorder(state_dir).path_for("../escape")

    def test_corrupt_session(self, state_dir: Path) -> None:
        (state_dir / "decisions" / "20240301_120000.json").write_text('{"session_id": "x"}')
        with pytest.raises(CorruptionError, match="session record"):
            SessionRecorder(state_dir).load("20240301_120000")


class TestCommitLinkAppend:
    def test_append_once(self, populated_store: IssueStore, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir)
        recorder.record(_apply(populated_store, "skip A", "20240301_120000"))
        path = recorder.path_for("20240301_120000")
        before = json.loads(path.read_text())

        link = CommitLink("abc123", "20240301_120000", "2024-03-01T12:05:00+00:00", ("src/a.py",))
        assert recorder.append_commit_link("20240301_120000", link) is True
        assert recorder.append_commit_link("20240301_120000", link) is False

        after = json.loads(path.read_text())
        assert after.pop("commit_link")["commit_hash"] == "abc123"
        assert after == before

    def test_second_commit_rejected(self, populated_store: IssueStore, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir)
        recorder.record(_apply(populated_store, "skip A", "20240301_120000"))
        recorder.append_commit_link("20240301_120000", CommitLink("abc123", "20240301_120000", "t"))
        with pytest.raises(ValidationError, match="already linked"):
            recorder.append_commit_link("20240301_120000", CommitLink("def456", "20240301_120000", "t"))

    def test_latest_unlinked(self, populated_store: IssueStore, state_dir: Path) -> None:
        recorder = SessionRecorder(state_dir)
        recorder.record(_apply(populated_store, "skip A", "20240301_120000"))
        recorder.append_commit_link("20240301_120000", CommitLink("abc123", "20240301_120000", "t"))
        assert recorder.latest_unlinked() is None
        recorder.record(_apply(populated_store, "skip B", "20240301_130000"))
        latest = recorder.latest_unlinked()
        assert latest is not None
        assert latest.session_id == "20240301_130000"


class TestRunReview:
    def _context(self, state_dir: Path, clock: Any) -> LedgerContext:
        store = IssueStore(state_dir, clock=clock)
        return LedgerContext(state_dir=state_dir, config=read_config(state_dir), store=store, clock=clock)

    def test_records_session(self, populated_store: IssueStore, state_dir: Path, clock: Any) -> None:
        ctx = self._context(state_dir, clock)
        result = run_review(ctx, "implement all critical", dedupe=False)
        assert result.changed
        assert result.session is not None
        assert result.session.operation_type == "implement_all_critical"
        assert [s.session_id for s in ctx.recorder().list_sessions()] == [result.session.session_id]

    def test_noop_records_nothing(self, store: IssueStore, state_dir: Path, clock: Any) -> None:
        ctx = self._context(state_dir, clock)
        result = run_review(ctx, "skip all")
        assert not result.changed
        assert result.session is None
        assert list((state_dir / "decisions").iterdir()) == []

    def test_invalid_decision_checked_before_dedupe(
        self, populated_store: IssueStore, state_dir: Path, clock: Any
    ) -> None:
        ctx = self._context(state_dir, clock)
        before = populated_store.path_for("pending").read_bytes()
        with pytest.raises(ValidationError):
            run_review(ctx, "skip `A`")
        assert populated_store.path_for("pending").read_bytes() == before

    @pytest.mark.parametrize("decision", ["skip NOPE", "skip A"])
    def test_unresolvable_decision_leaves_collections_untouched(
        self, project_root: Path, store: IssueStore, state_dir: Path, clock: Any, make_issue: Any, decision: str
    ) -> None:
        (project_root / "src").mkdir()
        (project_root / "src" / "a.py").touch()
        store.ingest([make_issue("A", affected_files=["src/a.py"]), make_issue("B")])
        before = {name: store.path_for(name).read_bytes() for name in ("pending", "backlog", "completed")}

        with pytest.raises(ValidationError):
            run_review(self._context(state_dir, clock), decision)

        assert {name: store.path_for(name).read_bytes() for name in before} == before
        assert list((state_dir / "decisions").iterdir()) == []
