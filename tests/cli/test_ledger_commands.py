"""CLI tests: init, ingest, list/show, dedupe, review, sessions, commit, tickets, status, protect."""

from __future__ import annotations

import json
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from optledger.cli import cli


@pytest.fixture
def in_project(tmp_path: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    """Initialize a ledger in tmp_path and chdir into it."""
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    result = cli_runner.invoke(cli, ["init", "--name", "demo"])
    assert result.exit_code == 0, result.output
    yield cli_runner, tmp_path
    os.chdir(original_cwd)


def _findings(path: Path, records: list[dict[str, Any]]) -> str:
    path.write_text(json.dumps({"issues": records, "header": {"source": {"producer": "analyzer"}}}))
    return str(path)


@pytest.fixture
def with_issues(in_project: tuple[CliRunner, Path]) -> tuple[CliRunner, Path]:
    runner, root = in_project
    records = [
        {"id": "P1", "title": "Cache templates", "priority": "critical", "affected_files": ["src/cache.py"]},
        {"id": "P2", "title": "Batch writes", "priority": "HIGH", "assigned_capability": "performance-optimization"},
        {"id": "P3", "title": "Trim logging", "priority": "LOW"},
    ]
    result = runner.invoke(cli, ["ingest", _findings(root / "findings.json", records)])
    assert result.exit_code == 0, result.output
    return runner, root


def _json(result: Any) -> Any:
    return json.loads(result.stdout)


class TestInit:
    def test_creates_state_dir(self, in_project: tuple[CliRunner, Path]) -> None:
        _, root = in_project
        state = root / ".claude" / "optimize"
        for name in ("pending", "backlog", "completed"):
            assert (state / name / "issues.json").exists()
        assert json.loads((state / "config.json").read_text())["project_name"] == "demo"
        assert (state / "status.md").exists()

    def test_reinit_is_safe(self, in_project: tuple[CliRunner, Path]) -> None:
        runner, root = in_project
        (root / ".claude" / "optimize" / "backlog" / "issues.json").unlink()
        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "already exists" in result.output
        assert "Restored missing collections: backlog" in result.output

    def test_commands_require_init(
        self, tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        result = cli_runner.invoke(cli, ["status"])
        assert result.exit_code == 1
        assert "optledger init" in result.output


class TestIngestListShow:
    def test_ingest_reports(self, in_project: tuple[CliRunner, Path]) -> None:
        runner, root = in_project
        path = _findings(root / "f.json", [{"id": "X1", "title": "t", "priority": "LOW"}])
        result = runner.invoke(cli, ["ingest", path, "--json"])
        assert result.exit_code == 0
        assert _json(result) == {"added": ["X1"], "readmitted": [], "skipped": []}
        again = runner.invoke(cli, ["ingest", path])
        assert "Skipped (already tracked): X1" in again.output

    def test_ingest_from_stdin(self, in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = in_project
        payload = json.dumps([{"id": "S1", "title": "From stdin", "priority": "MEDIUM"}])
        result = runner.invoke(cli, ["ingest", "-"], input=payload)
        assert result.exit_code == 0, result.output
        assert "Added 1 issue(s) to pending" in result.output

    def test_ingest_rejects_bad_record(self, in_project: tuple[CliRunner, Path]) -> None:
        runner, root = in_project
        path = _findings(root / "bad.json", [{"id": "B1", "title": "t", "priority": "SOON"}])
        result = runner.invoke(cli, ["ingest", path, "--json"])
        assert result.exit_code == 1
        assert _json(result)["code"] == "validation_error"

    def test_list_sorted_by_priority(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["list", "--json"])
        assert [i["id"] for i in _json(result)] == ["P1", "P2", "P3"]
        filtered = runner.invoke(cli, ["list", "--priority", "low", "--json"])
        assert [i["id"] for i in _json(filtered)] == ["P3"]

    def test_show(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["show", "P1", "--json"])
        data = _json(result)
        assert data["priority"] == "CRITICAL"
        assert data["collection"] == "pending"

    def test_show_missing(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["show", "NOPE"])
        assert result.exit_code == 1
        assert "Not found: NOPE" in result.output


class TestReview:
    def test_skip_one(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, root = with_issues
        result = runner.invoke(cli, ["review", "skip P2", "--no-dedupe"])
        assert result.exit_code == 0, result.output
        assert "Applied skip_individual: 1 skipped" in result.output
        assert "Next: optledger commit" in result.output
        pending = runner.invoke(cli, ["list", "--json"])
        assert [i["id"] for i in _json(pending)] == ["P1", "P3"]
        assert len(list((root / ".claude" / "optimize" / "decisions").iterdir())) == 1

    def test_json_output(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["review", "implement all critical", "--no-dedupe", "--json"])
        data = _json(result)
        assert data["plan"]["operation_type"] == "implement_all_critical"
        assert data["plan"]["counts"]["implemented"] == 1
        assert data["session_id"]
        assert data["delegations"][0]["status"] == "manual"

    def test_unknown_id_lists_valid_ids(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["review", "skip P9", "--json"])
        assert result.exit_code == 1
        data = _json(result)
        assert data["code"] == "validation_error"
        assert data["valid_ids"] == ["P1", "P2", "P3"]

    def test_shell_metacharacters_rejected(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, root = with_issues
        before = (root / ".claude" / "optimize" / "pending" / "issues.json").read_bytes()
        result = runner.invoke(cli, ["review", "skip P1", "--comment", "done `rm -rf ~`"])
        assert result.exit_code == 1
        assert "disallowed characters" in result.output
        assert (root / ".claude" / "optimize" / "pending" / "issues.json").read_bytes() == before

    def test_noop(self, in_project: tuple[CliRunner, Path]) -> None:
        runner, _ = in_project
        result = runner.invoke(cli, ["review", "skip all"])
        assert result.exit_code == 0
        assert "Nothing to do" in result.output

    def test_interactive_prompt(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["review"], input="defer P3\n")
        assert result.exit_code == 0, result.output
        assert "CRITICAL (1)" in result.output
        assert "Applied defer_individual: 1 deferred" in result.output

    def test_ticket_without_config_hints(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["review", "ticket P2", "--no-dedupe"], env={"GITHUB_TOKEN": ""})
        assert result.exit_code == 0
        assert "optledger tickets" in result.output


class TestDedupe:
    def test_migrates_implemented(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, root = with_issues
        (root / "src").mkdir()
        (root / "src" / "cache.py").write_text("")
        result = runner.invoke(cli, ["dedupe", "--json"])
        assert result.exit_code == 0, result.output
        assert [c["issue_id"] for c in _json(result)["migrated"]] == ["P1"]
        shown = _json(runner.invoke(cli, ["show", "P1", "--json"]))
        assert shown["collection"] == "completed"
        assert shown["provenance"]["source"] == "auto"

    def test_dry_run(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, root = with_issues
        (root / "src").mkdir()
        (root / "src" / "cache.py").write_text("")
        result = runner.invoke(cli, ["dedupe", "--dry-run"])
        assert "Would migrate P1" in result.output
        assert _json(runner.invoke(cli, ["show", "P1", "--json"]))["collection"] == "pending"


class TestSessionsStatusProtect:
    def test_sessions_listing(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        runner.invoke(cli, ["review", "skip P3", "--no-dedupe"])
        result = runner.invoke(cli, ["sessions", "--unlinked", "--json"])
        sessions = _json(result)
        assert len(sessions) == 1
        assert sessions[0]["selected_issue_ids"] == ["P3"]

    def test_status(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        runner.invoke(cli, ["review", "defer P3", "--no-dedupe"])
        data = _json(runner.invoke(cli, ["status", "--json"]))
        assert data["counts"] == {"pending": 2, "backlog": 1, "completed": 0}
        text = runner.invoke(cli, ["status"])
        assert "Pending:   2" in text.output

    def test_protect(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["protect", "--json"])
        assert result.exit_code == 0
        backup = Path(_json(result)["backup"])
        assert backup.parent.name == ".claude"
        assert backup.exists()
        listed = runner.invoke(cli, ["protect", "--list", "--json"])
        assert _json(listed) == [str(backup)]


class TestTickets:
    def test_dry_run_lists_unticketed(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        runner.invoke(cli, ["review", "github P2", "--no-dedupe"])
        result = runner.invoke(cli, ["tickets", "--dry-run", "--json"])
        payloads = _json(result)
        assert [p["issue_id"] for p in payloads] == ["P2"]
        assert payloads[0]["title"] == "[HIGH] Batch writes"
        assert "optimization" in payloads[0]["labels"]

    def test_requires_configuration(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        runner.invoke(cli, ["review", "github P2", "--no-dedupe"])
        result = runner.invoke(cli, ["tickets"], env={"GITHUB_TOKEN": ""})
        assert result.exit_code == 1
        assert "tickets.repo" in result.output


@pytest.mark.git
class TestCommit:
    @pytest.fixture
    def repo_project(self, git_repo: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
        original_cwd = os.getcwd()
        os.chdir(str(git_repo))
        assert cli_runner.invoke(cli, ["init"]).exit_code == 0
        path = _findings(git_repo / "findings.json", [{"id": "Q1", "title": "Cache lookups", "priority": "HIGH"}])
        assert cli_runner.invoke(cli, ["ingest", path]).exit_code == 0
        yield cli_runner, git_repo
        os.chdir(original_cwd)

    def test_commit_links_latest_session(self, repo_project: tuple[CliRunner, Path]) -> None:
        runner, root = repo_project
        review = runner.invoke(cli, ["review", "implement Q1", "--no-dedupe", "--json"])
        session_id = _json(review)["session_id"]
        result = runner.invoke(cli, ["commit", "--yes", "--json"])
        assert result.exit_code == 0, result.output
        data = _json(result)
        assert data["status"] == "linked"
        assert data["session_id"] == session_id
        assert (root / ".claude" / "optimize" / "commits" / f"{data['commit_hash']}.json").exists()
        sessions = _json(runner.invoke(cli, ["sessions", "--unlinked", "--json"]))
        assert sessions == []

    def test_quit_aborts(self, repo_project: tuple[CliRunner, Path]) -> None:
        runner, _ = repo_project
        runner.invoke(cli, ["review", "skip Q1", "--no-dedupe"])
        result = runner.invoke(cli, ["commit"], input="q\n")
        assert result.exit_code == 0
        assert "Optimize-Session:" in result.output
        assert "Commit aborted" in result.output

    def test_json_needs_an_explicit_message_choice(self, repo_project: tuple[CliRunner, Path]) -> None:
        runner, root = repo_project
        runner.invoke(cli, ["review", "implement Q1", "--no-dedupe"])
        result = runner.invoke(cli, ["commit", "--json"])
        assert result.exit_code == 1
        data = _json(result)
        assert data["code"] == "error"
        assert "--yes or --message" in data["error"]
        assert list((root / ".claude" / "optimize" / "commits").iterdir()) == []
        assert len(_json(runner.invoke(cli, ["sessions", "--unlinked", "--json"]))) == 1

    def test_json_with_message(self, repo_project: tuple[CliRunner, Path]) -> None:
        runner, _ = repo_project
        runner.invoke(cli, ["review", "implement Q1", "--no-dedupe"])
        result = runner.invoke(cli, ["commit", "--json", "-m", "perf: cache lookups"])
        assert result.exit_code == 0, result.output
        assert _json(result)["status"] == "linked"

    def test_commit_outside_git_fails(self, with_issues: tuple[CliRunner, Path]) -> None:
        runner, _ = with_issues
        result = runner.invoke(cli, ["commit", "--yes"])
        assert result.exit_code == 1
        assert "not inside a git work tree" in result.output
