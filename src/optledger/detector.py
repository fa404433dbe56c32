"""Deduplication / migration detector.

Classifies pending issues that were already implemented outside the review
workflow, so stale findings are never shown to the operator.

Signals, strongest first:

1. Verification predicate (high): a hand-written check registered for a
   specific issue id. A conclusive answer overrides everything else.
2. File existence (high): ratio of ``affected_files`` that exist on disk.
   At or above ``implemented_ratio`` the issue is implemented; between
   ``uncertain_ratio`` and ``implemented_ratio`` the signal is weak.
3. VCS history (medium): a recent commit mentions the issue id, or enough
   salient title keywords co-occur in one commit message.

Weak or conflicting signals classify as ``uncertain``: the issue stays
pending, flagged for manual review, and is only migrated after the operator
confirms it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from optledger.core import now_utc
from optledger.errors import UncertainClassificationError, ValidationError, VCSError
from optledger.models import Collection, CollectionName, Issue, Provenance
from optledger.store import IssueStore, Move
from optledger.types.core import ProjectConfig
from optledger.vcs import Commit, VersionControl

logger = logging.getLogger(__name__)

Verdict = Literal["implemented", "not_implemented", "uncertain"]

METHOD_PREDICATE = "verification_predicate"
METHOD_FILES = "file_existence"
METHOD_HISTORY = "vcs_history"
METHOD_NONE = "none"

# Commits written by the commit linker carry this trailer. They describe
# review decisions (including deferrals), not implementations.
SESSION_TRAILER = "Optimize-Session:"

_STOPWORDS = frozenset(
    {
        "about", "across", "after", "also", "before", "between", "code", "could",
        "file", "files", "from", "have", "improve", "into", "issue", "make",
        "more", "need", "needs", "optimize", "optimization", "should", "some",
        "than", "that", "their", "them", "then", "there", "these", "this",
        "through", "update", "use", "using", "when", "where", "which", "while",
        "will", "with", "without", "would",
    }
)  # fmt: skip
_WORD_RE = re.compile(r"[a-z0-9]+")


def salient_keywords(title: str) -> frozenset[str]:
    """Lower-cased title words of 4+ characters that are not filler."""
    return frozenset(w for w in _WORD_RE.findall(title.lower()) if len(w) >= 4 and w not in _STOPWORDS)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectorSettings:
    implemented_ratio: float = 0.80
    uncertain_ratio: float = 0.40
    history_depth: int = 50
    min_keyword_hits: int = 2

    def __post_init__(self) -> None:
        if not 0.0 < self.implemented_ratio <= 1.0:
            msg = f"implemented_ratio must be in (0, 1], got {self.implemented_ratio}"
            raise ValueError(msg)
        if not 0.0 <= self.uncertain_ratio <= self.implemented_ratio:
            msg = f"uncertain_ratio must be in [0, implemented_ratio], got {self.uncertain_ratio}"
            raise ValueError(msg)
        if self.min_keyword_hits < 1:
            msg = f"min_keyword_hits must be >= 1, got {self.min_keyword_hits}"
            raise ValueError(msg)

    @classmethod
    def from_config(cls, config: ProjectConfig) -> DetectorSettings:
        section = config.get("detector", {})
        return cls(
            implemented_ratio=float(section.get("implemented_ratio", cls.implemented_ratio)),
            uncertain_ratio=float(section.get("uncertain_ratio", cls.uncertain_ratio)),
            history_depth=int(section.get("history_depth", cls.history_depth)),
            min_keyword_hits=int(section.get("min_keyword_hits", cls.min_keyword_hits)),
        )


# ---------------------------------------------------------------------------
# Verification predicates
# ---------------------------------------------------------------------------

# True = implemented, False = not implemented, None = can't tell (fall through).
Predicate = Callable[[Issue, Path], bool | None]


def artifacts_exist(*paths: str) -> Predicate:
    """Predicate that reports implemented once every expected artifact exists."""

    def check(issue: Issue, project_root: Path) -> bool | None:
        if all((project_root / p).exists() for p in paths):
            return True
        return None

    check.__doc__ = f"artifacts exist: {', '.join(paths)}"
    return check


class PredicateRegistry:
    """Issue id -> verification predicate."""

    def __init__(self) -> None:
        self._predicates: dict[str, Predicate] = {}

    def register(self, issue_id: str) -> Callable[[Predicate], Predicate]:
        def decorator(fn: Predicate) -> Predicate:
            self._predicates[issue_id] = fn
            return fn

        return decorator

    def add(self, issue_id: str, fn: Predicate) -> None:
        self._predicates[issue_id] = fn

    def get(self, issue_id: str) -> Predicate | None:
        return self._predicates.get(issue_id)

    def __contains__(self, issue_id: object) -> bool:
        return issue_id in self._predicates

    @classmethod
    def from_config(cls, config: ProjectConfig) -> PredicateRegistry:
        """Build predicates from ``detector.predicates`` (``{id: {"artifacts": [...]}}``)."""
        registry = cls()
        for issue_id, entry in config.get("detector", {}).get("predicates", {}).items():
            artifacts = entry.get("artifacts") if isinstance(entry, dict) else None
            if not isinstance(artifacts, list) or not artifacts or not all(isinstance(a, str) for a in artifacts):
                logger.warning("Ignoring predicate for %s: 'artifacts' must be a non-empty list of paths", issue_id)
                continue
            registry.add(issue_id, artifacts_exist(*artifacts))
        return registry


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    method: str
    verdict: Verdict
    confidence: str
    evidence: tuple[str, ...] = ()


@dataclass(frozen=True)
class Classification:
    issue_id: str
    verdict: Verdict
    confidence: str
    method: str
    signals: tuple[Signal, ...] = ()

    @property
    def evidence(self) -> tuple[str, ...]:
        return tuple(e for s in self.signals for e in s.evidence)

    @property
    def needs_manual_verification(self) -> bool:
        return self.verdict == "uncertain" or (self.verdict == "implemented" and self.confidence != "high")

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "verdict": self.verdict,
            "confidence": self.confidence,
            "method": self.method,
            "needs_manual_verification": self.needs_manual_verification,
            "evidence": list(self.evidence),
        }


@dataclass
class DetectionReport:
    migrated: list[Classification] = field(default_factory=list)
    uncertain: list[Classification] = field(default_factory=list)
    not_implemented: list[Classification] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "migrated": [c.to_dict() for c in self.migrated],
            "uncertain": [c.to_dict() for c in self.uncertain],
            "not_implemented": [c.issue_id for c in self.not_implemented],
        }


class Detector:
    def __init__(
        self,
        project_root: Path,
        *,
        settings: DetectorSettings | None = None,
        vcs: VersionControl | None = None,
        predicates: PredicateRegistry | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.project_root = project_root
        self.settings = settings or DetectorSettings()
        self.vcs = vcs
        self.predicates = predicates or PredicateRegistry()
        self.clock = clock

    # -- Individual heuristics -----------------------------------------------

    def _predicate_signal(self, issue: Issue) -> Signal | None:
        predicate = self.predicates.get(issue.id)
        if predicate is None:
            return None
        result = predicate(issue, self.project_root)
        if result is None:
            return None
        label = (predicate.__doc__ or "verification predicate").strip()
        if result:
            return Signal(METHOD_PREDICATE, "implemented", "high", (f"{label}: passed",))
        return Signal(METHOD_PREDICATE, "not_implemented", "high", (f"{label}: failed",))

    def file_ratio(self, issue: Issue) -> tuple[float, list[str]] | None:
        """(existing/total, existing paths), or None when the issue lists no files."""
        if not issue.affected_files:
            return None
        existing = [p for p in issue.affected_files if (self.project_root / p).exists()]
        return len(existing) / len(issue.affected_files), existing

    def _file_signal(self, issue: Issue) -> Signal | None:
        measured = self.file_ratio(issue)
        if measured is None:
            return None
        ratio, existing = measured
        total = len(issue.affected_files)
        evidence = (f"{len(existing)}/{total} affected files exist ({ratio:.0%})",)
        if ratio >= self.settings.implemented_ratio:
            return Signal(METHOD_FILES, "implemented", "high", evidence)
        if ratio >= self.settings.uncertain_ratio and ratio > 0:
            return Signal(METHOD_FILES, "uncertain", "uncertain", evidence)
        return Signal(METHOD_FILES, "not_implemented", "high" if ratio == 0 else "uncertain", evidence)

    def _history_signal(self, issue: Issue, commits: Sequence[Commit]) -> Signal | None:
        id_re = re.compile(rf"(?<![\w-]){re.escape(issue.id)}(?![\w-])", re.IGNORECASE)
        keywords = salient_keywords(issue.title)
        for commit in commits:
            message = commit.message
            if SESSION_TRAILER in message:
                continue
            if id_re.search(message):
                evidence = (f"commit {commit.hash[:12]} references {issue.id}",)
                return Signal(METHOD_HISTORY, "implemented", "medium", evidence)
            if len(keywords) >= self.settings.min_keyword_hits:
                words = set(_WORD_RE.findall(message.lower()))
                hits = sorted(keywords & words)
                if len(hits) >= self.settings.min_keyword_hits:
                    return Signal(
                        METHOD_HISTORY,
                        "implemented",
                        "medium",
                        (f"commit {commit.hash[:12]} mentions {', '.join(hits)}",),
                    )
        return None

    # -- Combination ---------------------------------------------------------

    def recent_commits(self) -> list[Commit]:
        if self.vcs is None:
            return []
        try:
            return self.vcs.recent_commits(self.settings.history_depth)
        except VCSError as exc:
            logger.warning("History heuristic disabled: %s", exc, extra={"op": "dedupe", "error": str(exc)})
            return []

    def classify(self, issue: Issue, commits: Sequence[Commit] | None = None) -> Classification:
        predicate = self._predicate_signal(issue)
        if predicate is not None:
            return Classification(issue.id, predicate.verdict, "high", METHOD_PREDICATE, (predicate,))

        files = self._file_signal(issue)
        if files is not None and files.verdict == "implemented":
            return Classification(issue.id, "implemented", "high", METHOD_FILES, (files,))

        history = self._history_signal(issue, self.recent_commits() if commits is None else commits)
        signals = tuple(s for s in (files, history) if s is not None)
        if history is not None:
            if files is not None and files.verdict == "not_implemented" and files.confidence == "high":
                # History says done but none of the affected files exist.
                return Classification(issue.id, "uncertain", "uncertain", METHOD_HISTORY, signals)
            return Classification(issue.id, "implemented", "medium", METHOD_HISTORY, signals)
        if files is not None and files.verdict == "uncertain":
            return Classification(issue.id, "uncertain", "uncertain", METHOD_FILES, signals)
        confidence = files.confidence if files else "uncertain"
        return Classification(issue.id, "not_implemented", confidence, METHOD_NONE, signals)

    def scan(self, issues: Iterable[Issue]) -> list[Classification]:
        commits = self.recent_commits()
        return [self.classify(issue, commits) for issue in issues]

    # -- Migration -----------------------------------------------------------

    def _move_for(self, issue: Issue, classification: Classification, *, confirmed: bool) -> Move:
        provenance = Provenance(
            source="auto",
            method=classification.method if not confirmed else f"{classification.method}+operator_confirmed",
            confidence=classification.confidence,
            needs_manual_verification=classification.needs_manual_verification and not confirmed,
            operation_type="auto_migration",
            decided_at=self.clock().isoformat(),
            evidence=classification.evidence,
        )
        return Move(
            issue=replace(issue, status="implemented", provenance=provenance),
            source="pending",
            destination="completed",
        )

    def migrate(self, store: IssueStore, *, confirm: Iterable[str] = (), dry_run: bool = False) -> DetectionReport:
        """Classify every pending issue and migrate the implemented ones to completed.

        Ids in *confirm* must currently classify as uncertain; they are
        migrated as operator-confirmed. Remaining uncertain issues are flagged
        for manual review in the pending collection.
        """
        pending = store.load("pending")
        confirmed = set(confirm)
        unknown = sorted(confirmed - set(pending.ids()))
        if unknown:
            msg = f"Cannot confirm issues that are not pending: {', '.join(unknown)}"
            raise ValidationError(msg, offending=unknown, valid_ids=pending.ids())

        report = DetectionReport(dry_run=dry_run)
        moves: list[Move] = []
        flags: dict[str, dict[str, Any]] = {}
        for issue, classification in zip(pending.issues, self.scan(pending.issues), strict=True):
            if classification.verdict == "implemented":
                report.migrated.append(classification)
                moves.append(self._move_for(issue, classification, confirmed=False))
            elif classification.verdict == "uncertain" and issue.id in confirmed:
                report.migrated.append(classification)
                moves.append(self._move_for(issue, classification, confirmed=True))
            elif classification.verdict == "uncertain":
                report.uncertain.append(classification)
                flags[issue.id] = {
                    "needs_manual_verification": True,
                    "method": classification.method,
                    "evidence": list(classification.evidence),
                    "flagged_at": self.clock().isoformat(),
                }
            else:
                report.not_implemented.append(classification)

        wrongly_confirmed = sorted(confirmed - {c.issue_id for c in report.migrated})
        if wrongly_confirmed:
            msg = f"Only uncertain issues can be confirmed; not uncertain: {', '.join(wrongly_confirmed)}"
            raise ValidationError(msg, offending=wrongly_confirmed, valid_ids=[c.issue_id for c in report.uncertain])

        if dry_run:
            return report
        if moves:
            store.apply_moves(moves, op="dedupe")
        store.set_review_flags(flags)
        logger.info(
            "Dedupe migrated %d, flagged %d",
            len(report.migrated),
            len(report.uncertain),
            extra={"op": "dedupe", "issue_ids": [c.issue_id for c in report.migrated]},
        )
        return report

    def project(
        self, collections: dict[CollectionName, Collection], report: DetectionReport
    ) -> dict[CollectionName, Collection]:
        """The collections as they will look once *report*'s migrations are applied. Nothing is written."""
        migrated = {c.issue_id for c in report.migrated}
        pending, completed = collections["pending"], collections["completed"]
        moved = [replace(i, status="implemented") for i in pending.issues if i.id in migrated]
        return {
            **collections,
            "pending": replace(pending, issues=[i for i in pending.issues if i.id not in migrated]),
            "completed": replace(completed, issues=[*completed.issues, *moved]),
        }

    def migrate_one(self, store: IssueStore, issue_id: str, *, confirmed: bool = False) -> Classification:
        """Classify and migrate a single pending issue.

        Raises UncertainClassificationError when the issue is uncertain and
        the operator has not confirmed it.
        """
        pending = store.load("pending")
        issue = pending.get(issue_id)
        if issue is None:
            msg = f"Unknown pending issue: {issue_id}"
            raise ValidationError(msg, offending=[issue_id], valid_ids=pending.ids())
        classification = self.classify(issue)
        if classification.verdict == "uncertain" and not confirmed:
            raise UncertainClassificationError(issue_id, classification.verdict, classification.evidence)
        if classification.verdict == "not_implemented":
            return classification
        is_confirmed = confirmed and classification.verdict == "uncertain"
        store.apply_moves([self._move_for(issue, classification, confirmed=is_confirmed)], op="dedupe")
        return classification
