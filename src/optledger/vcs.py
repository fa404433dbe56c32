"""Git collaborator: the only code that shells out to version control.

Read-only history access for the detector and session discovery, plus
stage/commit for the commit-attribution linker. Branches, merges and
remotes are never touched.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from optledger.errors import VCSError

logger = logging.getLogger(__name__)

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"


@dataclass(frozen=True)
class Commit:
    hash: str
    subject: str
    body: str = ""

    @property
    def message(self) -> str:
        return f"{self.subject}\n{self.body}".strip()


class VersionControl(Protocol):
    """What the detector and linker need from a VCS."""

    def recent_commits(self, limit: int) -> list[Commit]: ...

    def stage(self, paths: Sequence[str] | None = None) -> None: ...

    def has_staged_changes(self) -> bool: ...

    def commit(self, message: str) -> str: ...

    def files_in_commit(self, commit_hash: str) -> list[str]: ...


class GitRepo:
    """Thin subprocess wrapper around the git CLI with a per-call timeout."""

    def __init__(self, root: Path, *, timeout: float = 30.0, git: str | None = None) -> None:
        self.root = root
        self.timeout = timeout
        self.git = git or shutil.which("git") or "git"

    def _run(self, *args: str, ok_codes: tuple[int, ...] = (0,)) -> subprocess.CompletedProcess[str]:
        cmd = [self.git, *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise VCSError(cmd, None, f"timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise VCSError(cmd, None, f"git executable not found: {self.git}") from exc
        if proc.returncode not in ok_codes:
            raise VCSError(cmd, proc.returncode, proc.stderr)
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self._run("rev-parse", "--is-inside-work-tree", ok_codes=(0, 128))
        except VCSError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def has_head(self) -> bool:
        proc = self._run("rev-parse", "--verify", "--quiet", "HEAD", ok_codes=(0, 1, 128))
        return proc.returncode == 0

    def recent_commits(self, limit: int) -> list[Commit]:
        """Most recent *limit* commits on HEAD, newest first. Empty for an unborn branch."""
        if limit <= 0 or not self.has_head():
            return []
        fmt = f"%H{_FIELD_SEP}%s{_FIELD_SEP}%b{_RECORD_SEP}"
        proc = self._run("log", f"-n{limit}", f"--format={fmt}")
        commits: list[Commit] = []
        for record in proc.stdout.split(_RECORD_SEP):
            record = record.strip("\n")
            if not record:
                continue
            parts = record.split(_FIELD_SEP)
            if len(parts) < 2:
                continue
            body = parts[2] if len(parts) > 2 else ""
            commits.append(Commit(hash=parts[0].strip(), subject=parts[1], body=body.strip()))
        return commits

    def stage(self, paths: Sequence[str] | None = None) -> None:
        if paths:
            self._run("add", "-A", "--", *paths)
        else:
            self._run("add", "-A")

    def has_staged_changes(self) -> bool:
        proc = self._run("diff", "--cached", "--quiet", ok_codes=(0, 1))
        return proc.returncode == 1

    def commit(self, message: str) -> str:
        """Create a commit from the index and return its hash."""
        self._run("commit", "-q", "-m", message)
        head = self._run("rev-parse", "HEAD").stdout.strip()
        logger.info("Created commit %s", head[:12], extra={"op": "commit", "args_data": {"hash": head}})
        return head

    def files_in_commit(self, commit_hash: str) -> list[str]:
        proc = self._run("show", "--name-only", "--format=", commit_hash)
        return [line for line in proc.stdout.splitlines() if line.strip()]
