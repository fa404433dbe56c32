"""Decision parser and transition engine.

Grammar (case-insensitive)::

    decision   := body [quoted-comment]
    body       := batch | individual
    batch      := VERB "all" [PRIORITY]            e.g. "implement all critical"
    individual := (VERB id ("," id)*)+             e.g. "implement A,B skip C"
    VERB       := implement | skip | defer | ticket | github
    PRIORITY   := critical | high | medium | low

If a batch phrase appears anywhere in the body it wins over explicit ids.
Batch phrases are tried in a fixed order (see ``BATCH_RULES``); individual
id parsing only runs when none match.

The full transition set is computed and validated before anything is
written. Applying it again after it has taken effect is a no-op.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

from optledger.capabilities import CapabilityRegistry, CapabilityResult
from optledger.core import now_utc
from optledger.errors import ValidationError
from optledger.models import (
    COLLECTION_FOR_STATUS,
    Collection,
    CollectionName,
    Issue,
    Provenance,
    Status,
)
from optledger.store import IssueStore, Move
from optledger.types.sessions import TicketRequestDict
from optledger.validation import DEFAULT_MAX_DECISION_LENGTH, check_operator_text

logger = logging.getLogger(__name__)

Action = Literal["implement", "skip", "defer", "ticket"]

ACTION_STATUS: dict[str, Status] = {
    "implement": "implemented",
    "skip": "skipped",
    "defer": "deferred",
    "ticket": "github_issue",
}
VERBS: dict[str, Action] = {
    "implement": "implement",
    "skip": "skip",
    "defer": "defer",
    "ticket": "ticket",
    "github": "ticket",
}

# Outcome keys used in session counts, one per destination status.
OUTCOME_KEYS: dict[str, str] = {
    "implemented": "implemented",
    "github_issue": "ticketed",
    "deferred": "deferred",
    "skipped": "skipped",
}

_PRIORITY = r"(?P<priority>critical|high|medium|low)"
# Keyword edges: a hyphen or dot continues an id (``all-caches``), so it is not a boundary.
_START = r"(?<![\w.\-])"
_END = r"(?![\w.\-])"
BATCH_RULES: tuple[tuple[Action, re.Pattern[str]], ...] = (
    ("skip", re.compile(rf"{_START}skip\s+all\s+{_PRIORITY}{_END}")),
    ("skip", re.compile(rf"{_START}skip\s+all{_END}")),
    ("implement", re.compile(rf"{_START}implement\s+all\s+{_PRIORITY}{_END}")),
    ("implement", re.compile(rf"{_START}implement\s+all{_END}")),
    ("defer", re.compile(rf"{_START}defer\s+all\s+{_PRIORITY}{_END}")),
    ("defer", re.compile(rf"{_START}defer\s+all{_END}")),
    ("ticket", re.compile(rf"{_START}(?:ticket|github)\s+all\s+{_PRIORITY}{_END}")),
    ("ticket", re.compile(rf"{_START}(?:ticket|github)\s+all{_END}")),
)
_COMMENT_RE = re.compile(r"^(?P<body>.*?)\s*(?P<quote>[\"'])(?P<comment>.*?)(?P=quote)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Decision:
    """A parsed, validated decision expression. Nothing is resolved against the store yet."""

    raw: str
    kind: Literal["batch", "individual"]
    operation_type: str
    comment: str = ""
    action: Action | None = None
    priority: str | None = None
    selections: tuple[tuple[Action, tuple[str, ...]], ...] = ()


def _split_comment(text: str) -> tuple[str, str]:
    match = _COMMENT_RE.match(text)
    if match:
        body, comment = match.group("body"), match.group("comment").strip()
    else:
        body, comment = text, ""
    if '"' in body or "'" in body:
        msg = "Quotes are only allowed around a trailing comment"
        raise ValidationError(msg, offending=[text])
    return body.strip(), comment


def parse_decision(
    text: str,
    *,
    comment: str | None = None,
    max_length: int = DEFAULT_MAX_DECISION_LENGTH,
) -> Decision:
    """Parse a decision expression. Raises ValidationError on any malformed input.

    *comment* (e.g. from a separate prompt) is validated with the same rules
    and takes the place of an inline quoted comment.
    """
    cleaned, err = check_operator_text(text, field="decision", max_length=max_length)
    if err:
        raise ValidationError(err, offending=[text if isinstance(text, str) else repr(text)])
    body, inline_comment = _split_comment(cleaned)
    if comment is not None:
        extra, err = check_operator_text(comment, field="comment", max_length=max_length)
        if err:
            raise ValidationError(err, offending=[comment])
        if inline_comment and extra:
            msg = "Give the comment either inline or separately, not both"
            raise ValidationError(msg)
        inline_comment = inline_comment or extra

    lowered = body.lower()
    if not lowered:
        msg = "Empty decision: expected e.g. 'skip all' or 'implement 1,2'"
        raise ValidationError(msg)

    for action, pattern in BATCH_RULES:
        match = pattern.search(lowered)
        if match is None:
            continue
        priority = match.groupdict().get("priority")
        op = f"{action}_all" + (f"_{priority}" if priority else "")
        return Decision(
            raw=cleaned,
            kind="batch",
            operation_type=op,
            comment=inline_comment,
            action=action,
            priority=priority.upper() if priority else None,
        )

    return _parse_individual(cleaned, body, inline_comment)


def _parse_individual(raw: str, body: str, comment: str) -> Decision:
    tokens = [t for t in re.split(r"[\s,]+", body) if t]
    selections: list[tuple[Action, list[str]]] = []
    for token in tokens:
        verb = VERBS.get(token.lower())
        if verb is not None:
            selections.append((verb, []))
            continue
        if not selections:
            msg = f"Expected an action verb before {token!r} (one of: {', '.join(sorted(VERBS))})"
            raise ValidationError(msg, offending=[token])
        ids = selections[-1][1]
        if token not in ids:
            ids.append(token)

    empty = [verb for verb, ids in selections if not ids]
    if not selections or empty:
        msg = f"Empty selection for '{empty[0]}'" if empty else "Empty selection"
        raise ValidationError(msg)

    seen: dict[str, Action] = {}
    for verb, ids in selections:
        for issue_id in ids:
            key = issue_id.lower()
            if key in seen and seen[key] != verb:
                msg = f"Conflicting actions for {issue_id}: {seen[key]} and {verb}"
                raise ValidationError(msg, offending=[issue_id])
            seen[key] = verb

    verbs = {verb for verb, _ in selections}
    op = f"{selections[0][0]}_individual" if len(verbs) == 1 else "mixed_individual"
    return Decision(
        raw=raw,
        kind="individual",
        operation_type=op,
        comment=comment,
        selections=tuple((verb, tuple(ids)) for verb, ids in selections),
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Transition:
    issue: Issue
    destination: Status

    @property
    def issue_id(self) -> str:
        return self.issue.id

    @property
    def destination_collection(self) -> CollectionName:
        return COLLECTION_FOR_STATUS[self.destination]


@dataclass(frozen=True)
class TicketRequest:
    """Structured payload handed to the issue-tracker integration."""

    issue_id: str
    title: str
    priority: str
    category: str
    description: str

    @classmethod
    def for_issue(cls, issue: Issue) -> TicketRequest:
        return cls(issue.id, issue.title, issue.priority, issue.category, issue.description)

    def to_dict(self) -> TicketRequestDict:
        return {
            "issue_id": self.issue_id,
            "title": self.title,
            "priority": self.priority,
            "category": self.category,
            "description": self.description,
        }


@dataclass
class TransitionPlan:
    decision: Decision
    transitions: list[Transition] = field(default_factory=list)
    already_applied: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.transitions

    @property
    def ticket_requests(self) -> list[TicketRequest]:
        return [TicketRequest.for_issue(t.issue) for t in self.transitions if t.destination == "github_issue"]

    def counts(self) -> dict[str, int]:
        tally = Counter(OUTCOME_KEYS[t.destination] for t in self.transitions)
        return {key: tally.get(key, 0) for key in OUTCOME_KEYS.values()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_type": self.decision.operation_type,
            "comment": self.decision.comment,
            "transitions": [{"issue_id": t.issue_id, "destination": t.destination} for t in self.transitions],
            "already_applied": self.already_applied,
            "counts": self.counts(),
        }


def plan_transitions(decision: Decision, collections: dict[CollectionName, Collection]) -> TransitionPlan:
    """Resolve a decision against the current collections. Raises ValidationError for unknown ids."""
    pending = collections["pending"]
    plan = TransitionPlan(decision=decision)

    if decision.kind == "batch":
        assert decision.action is not None
        destination = ACTION_STATUS[decision.action]
        for issue in pending.issues:
            if decision.priority is None or issue.priority == decision.priority:
                plan.transitions.append(Transition(issue, destination))
        return plan

    by_key: dict[str, tuple[CollectionName, Issue]] = {}
    for name, coll in collections.items():
        for issue in coll.issues:
            by_key[issue.id.lower()] = (name, issue)

    unknown: list[str] = []
    conflicts: list[str] = []
    for action, ids in decision.selections:
        destination = ACTION_STATUS[action]
        for token in ids:
            found = by_key.get(token.lower())
            if found is None:
                unknown.append(token)
                continue
            name, issue = found
            if name == "pending":
                plan.transitions.append(Transition(issue, destination))
            elif issue.status == destination:
                plan.already_applied.append(issue.id)
            else:
                conflicts.append(f"{issue.id} (already {issue.status})")

    if unknown:
        msg = f"Unknown issue ids: {', '.join(unknown)}"
        raise ValidationError(msg, offending=unknown, valid_ids=pending.ids())
    if conflicts:
        msg = f"Issues are no longer pending: {', '.join(conflicts)}"
        raise ValidationError(msg, offending=[c.split(" ", 1)[0] for c in conflicts], valid_ids=pending.ids())
    return plan


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class DecisionOutcome:
    plan: TransitionPlan
    session_id: str | None
    applied: list[Move] = field(default_factory=list)
    delegations: list[CapabilityResult] = field(default_factory=list)


class TransitionEngine:
    """Plans decisions against the store and applies them as one batch."""

    def __init__(
        self,
        store: IssueStore,
        *,
        capabilities: CapabilityRegistry | None = None,
        max_length: int = DEFAULT_MAX_DECISION_LENGTH,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.capabilities = capabilities or CapabilityRegistry()
        self.max_length = max_length
        self.clock = clock

    def parse(self, text: str, *, comment: str | None = None) -> Decision:
        return parse_decision(text, comment=comment, max_length=self.max_length)

    def plan(self, decision: Decision | str, *, comment: str | None = None) -> TransitionPlan:
        if isinstance(decision, str):
            decision = self.parse(decision, comment=comment)
        return plan_transitions(decision, self.store.load_all())

    def apply(self, plan: TransitionPlan, session_id: str) -> DecisionOutcome:
        """Apply every transition in *plan*. Returns what actually changed."""
        outcome = DecisionOutcome(plan=plan, session_id=session_id)
        if plan.is_noop:
            return outcome
        decided_at = self.clock().isoformat()
        moves = []
        for t in plan.transitions:
            provenance = Provenance(
                source="user",
                method="decision",
                confidence="high",
                session_id=session_id,
                operation_type=plan.decision.operation_type,
                comment=plan.decision.comment,
                decided_at=decided_at,
            )
            moved = replace(t.issue, status=t.destination, provenance=provenance)
            moves.append(Move(issue=moved, source="pending", destination=t.destination_collection))
        outcome.applied = self.store.apply_moves(moves, op="review")
        outcome.delegations = [
            self.capabilities.apply(m.issue) for m in outcome.applied if m.issue.status == "implemented"
        ]
        logger.info(
            "Applied %s to %d issue(s)",
            plan.decision.operation_type,
            len(outcome.applied),
            extra={"op": "review", "session_id": session_id, "issue_ids": [m.issue.id for m in outcome.applied]},
        )
        return outcome
