"""Explicit per-invocation context threaded through every component.

Built once by the CLI (or a test) from the state directory. Components
receive what they need from it; nothing reads process environment or
module-level mutable state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from optledger.capabilities import CapabilityRegistry
from optledger.core import find_state_dir, now_utc, project_root_of, read_config
from optledger.decisions import TransitionEngine
from optledger.detector import Detector, DetectorSettings, PredicateRegistry
from optledger.errors import VCSError
from optledger.linker import CommitLinker
from optledger.sessions import SessionRecorder
from optledger.store import IssueStore
from optledger.summary import SUMMARY_FILENAME, write_summary
from optledger.types.core import ProjectConfig
from optledger.vcs import GitRepo, VersionControl

logger = logging.getLogger(__name__)


@dataclass
class LedgerContext:
    state_dir: Path
    config: ProjectConfig
    store: IssueStore
    vcs: VersionControl | None = None
    capabilities: CapabilityRegistry = field(default_factory=CapabilityRegistry.with_builtins)
    clock: Callable[[], datetime] = now_utc
    github_token: str | None = None

    @property
    def project_root(self) -> Path:
        return project_root_of(self.state_dir)

    @classmethod
    def open(
        cls,
        state_dir: Path | None = None,
        *,
        vcs: VersionControl | None = None,
        clock: Callable[[], datetime] = now_utc,
        env: Mapping[str, str] | None = None,
    ) -> LedgerContext:
        """Discover the state dir (unless given) and assemble the context.

        A git collaborator is attached automatically when the project root is
        inside a work tree.
        """
        state_dir = state_dir or find_state_dir()
        config = read_config(state_dir)
        store = IssueStore(state_dir, max_bytes=int(config["store"]["max_bytes"]), clock=clock)
        if vcs is None:
            repo = GitRepo(project_root_of(state_dir), timeout=float(config["vcs"]["timeout_seconds"]))
            vcs = repo if repo.is_repo() else None
        token = (env or {}).get("GITHUB_TOKEN") or None
        return cls(state_dir=state_dir, config=config, store=store, vcs=vcs, clock=clock, github_token=token)

    def detector(self) -> Detector:
        return Detector(
            self.project_root,
            settings=DetectorSettings.from_config(self.config),
            vcs=self.vcs,
            predicates=PredicateRegistry.from_config(self.config),
            clock=self.clock,
        )

    def engine(self) -> TransitionEngine:
        return TransitionEngine(
            self.store,
            capabilities=self.capabilities,
            max_length=int(self.config["decisions"]["max_length"]),
            clock=self.clock,
        )

    def recorder(self) -> SessionRecorder:
        return SessionRecorder(self.state_dir, clock=self.clock)

    def linker(self, vcs: VersionControl | None = None) -> CommitLinker:
        vcs = vcs or self.vcs
        if vcs is None:
            msg = f"{self.project_root} is not inside a git work tree"
            raise VCSError(["git", "rev-parse", "--is-inside-work-tree"], None, msg)
        return CommitLinker(
            self.state_dir,
            store=self.store,
            recorder=self.recorder(),
            vcs=vcs,
            fallback_window_hours=float(self.config["linker"]["fallback_window_hours"]),
            clock=self.clock,
        )

    def refresh_summary(self) -> None:
        """Regenerate status.md after mutations."""
        write_summary(self.store, self.recorder(), self.state_dir / SUMMARY_FILENAME, clock=self.clock)
