"""Tests for status collection, the status.md summary, backups and capabilities."""

from __future__ import annotations

import tarfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from optledger.backup import create_backup, list_backups
from optledger.capabilities import CapabilityRegistry, ChecklistHandler
from optledger.decisions import TransitionEngine
from optledger.detector import Detector
from optledger.models import Issue
from optledger.sessions import SessionRecorder
from optledger.store import IssueStore
from optledger.summary import collect_status, generate_summary, write_summary
from optledger.vcs import Commit


def _decide(store: IssueStore, state_dir: Path, text: str, session_id: str) -> None:
    engine = TransitionEngine(store)
    SessionRecorder(state_dir).record(engine.apply(engine.plan(text), session_id))


class TestCollectStatus:
    def test_empty(self, store: IssueStore, state_dir: Path) -> None:
        status = collect_status(store, SessionRecorder(state_dir))
        assert status["counts"] == {"pending": 0, "backlog": 0, "completed": 0}
        assert status["sessions"]["total"] == 0
        assert status["interrupted_batches"] == 0

    def test_after_decisions(self, populated_store: IssueStore, state_dir: Path) -> None:
        _decide(populated_store, state_dir, "skip A defer B", "20240301_120000")
        status = collect_status(populated_store, SessionRecorder(state_dir))
        assert status["counts"] == {"pending": 1, "backlog": 1, "completed": 1}
        assert status["pending_by_priority"]["MEDIUM"] == 1
        assert status["completed_by_outcome"] == {"skipped": 1}
        assert status["sessions"]["unlinked"] == ["20240301_120000"]
        assert status["sessions"]["recent"][0]["operation_type"] == "mixed_individual"

    def test_flags_and_unverified(
        self, project_root: Path, state_dir: Path, store: IssueStore, make_issue: Any
    ) -> None:
        (project_root / "a.py").write_text("")
        store.ingest(
            [
                make_issue("HALF", affected_files=["a.py", "b.py"]),
                make_issue("HIST", title="Vectorize scoring loop"),
            ]
        )

        class History:
            def recent_commits(self, limit: int) -> list[Commit]:
                return [Commit("f" * 40, "Vectorize the scoring loop")]

        Detector(project_root, vcs=History()).migrate(store)
        status = collect_status(store, SessionRecorder(state_dir))
        assert status["flagged_for_review"] == ["HALF"]
        assert status["auto_migrated_unverified"] == ["HIST"]


class TestSummary:
    def test_sections(self, populated_store: IssueStore, state_dir: Path) -> None:
        _decide(populated_store, state_dir, "implement A", "20240301_120000")
        text = generate_summary(populated_store, SessionRecorder(state_dir))
        assert text.startswith("# Optimization Ledger")
        assert "Pending: 2 | Backlog: 0 | Completed: 1" in text
        assert "- [HIGH] B Optimize B" in text
        assert "20240301_120000 implement_individual" in text
        assert "[unlinked]" in text

    def test_header_uses_injected_clock(self, store: IssueStore, state_dir: Path) -> None:
        stamp = datetime(2030, 1, 2, 3, 4, 5, 678, tzinfo=UTC)
        text = generate_summary(store, SessionRecorder(state_dir), clock=lambda: stamp)
        assert text.splitlines()[0] == "# Optimization Ledger (auto-generated 2030-01-02T03:04:05+00:00)"

    def test_titles_are_sanitized(self, store: IssueStore, state_dir: Path, make_issue: Any) -> None:
        store.ingest([make_issue("X", title="line one\nline two\x07")])
        text = generate_summary(store, SessionRecorder(state_dir))
        assert "X line one line two" in text

    def test_write_summary(self, store: IssueStore, state_dir: Path) -> None:
        out = state_dir / "status.md"
        write_summary(store, SessionRecorder(state_dir), out)
        assert "no sessions yet" in out.read_text()


class TestBackup:
    def test_archives_state_without_journals(self, populated_store: IssueStore, state_dir: Path, clock: Any) -> None:
        (state_dir / "journal" / "transition-1-abcd.json").write_text("{}")
        path = create_backup(state_dir, clock=clock)
        assert path.parent == state_dir.parent
        assert path.name.startswith("optimize-backup-20240301_")
        with tarfile.open(path) as tar:
            names = tar.getnames()
        assert "optimize/pending/issues.json" in names
        assert "optimize/journal/transition-1-abcd.json" not in names
        assert list_backups(state_dir) == [path]

    def test_same_second_backups_do_not_collide(self, store: IssueStore, state_dir: Path) -> None:
        def fixed() -> datetime:
            return datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)

        first = create_backup(state_dir, clock=fixed)
        second = create_backup(state_dir, clock=fixed)
        assert first != second
        assert len(list_backups(state_dir)) == 2


class TestCapabilities:
    def test_registered_handler(self) -> None:
        registry = CapabilityRegistry([ChecklistHandler("perf", ("measure", "fix"))])
        result = registry.apply(Issue(id="P", title="t", priority="LOW", assigned_capability="PERF"))
        assert result.status == "queued"
        assert result.detail == "t [measure; fix]"

    def test_unregistered_falls_back_to_noop(self) -> None:
        result = CapabilityRegistry().apply(Issue(id="P", title="t", priority="LOW"))
        assert result.status == "manual"
        assert result.capability == "unassigned"

    def test_builtins(self) -> None:
        assert "security-review" in CapabilityRegistry.with_builtins().names()
