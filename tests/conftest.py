"""Shared pytest fixtures for optledger tests."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from optledger.core import state_dir_for
from optledger.store import IssueStore
from optledger.vcs import Commit

IssueFactory = Callable[..., dict[str, Any]]


class StepClock:
    """Deterministic clock: each call advances by *step* seconds."""

    def __init__(self, start: datetime | None = None, step: float = 1.0) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


class FakeVCS:
    """In-memory stand-in for GitRepo."""

    def __init__(self, commits: Sequence[Commit] = ()) -> None:
        self.commits = list(commits)
        self.staged: list[str] = ["src/app.py"]
        self.messages: list[str] = []
        self.stage_calls: list[Sequence[str] | None] = []

    def recent_commits(self, limit: int) -> list[Commit]:
        return self.commits[:limit]

    def stage(self, paths: Sequence[str] | None = None) -> None:
        self.stage_calls.append(paths)

    def has_staged_changes(self) -> bool:
        return bool(self.staged)

    def commit(self, message: str) -> str:
        commit_hash = f"abc123{len(self.messages):034x}"[:40]
        self.messages.append(message)
        self.commits.insert(0, Commit(hash=commit_hash, subject=message.splitlines()[0], body=message))
        return commit_hash

    def files_in_commit(self, commit_hash: str) -> list[str]:
        return list(self.staged)


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """A tmp project with an initialized .claude/optimize/ directory."""
    IssueStore(state_dir_for(tmp_path)).init()
    return tmp_path


@pytest.fixture
def state_dir(project_root: Path) -> Path:
    return state_dir_for(project_root)


@pytest.fixture
def store(state_dir: Path, clock: StepClock) -> IssueStore:
    return IssueStore(state_dir, clock=clock)


@pytest.fixture
def make_issue() -> IssueFactory:
    """Factory for producer-shaped issue records."""

    def _make(issue_id: str, priority: str = "HIGH", **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": issue_id,
            "title": fields.pop("title", f"Optimize {issue_id}"),
            "priority": priority,
            "category": "performance",
            "description": f"Finding {issue_id}",
            "affected_files": [],
            "status": "pending",
        }
        record.update(fields)
        return record

    return _make


@pytest.fixture
def populated_store(store: IssueStore, make_issue: IssueFactory) -> IssueStore:
    """Store with pending A (CRITICAL), B (HIGH), C (MEDIUM)."""
    store.ingest(
        [make_issue("A", "CRITICAL"), make_issue("B", "HIGH"), make_issue("C", "MEDIUM")],
        source={"producer": "test"},
    )
    return store


@pytest.fixture
def fake_vcs() -> FakeVCS:
    return FakeVCS()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A real git work tree with one commit. Skipped when git is unavailable."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    git("init", "-q")
    git("config", "user.email", "dev@example.com")
    git("config", "user.name", "Dev")
    git("config", "commit.gpgsign", "false")
    (tmp_path / "README.md").write_text("project\n")
    git("add", "README.md")
    git("commit", "-q", "-m", "initial commit")
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
