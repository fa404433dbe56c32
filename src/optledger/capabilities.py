"""Capability registry: routes implemented issues to the role that owns them.

Each issue names a logical capability (``security-review``,
``performance-optimization`` and so on). A handler's ``apply(issue)`` returns a
``CapabilityResult`` describing the follow-up work it queued. Capabilities
without a handler resolve to a no-op that marks the issue for manual work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from optledger.models import Issue
from optledger.types.sessions import DelegationDict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilityResult:
    capability: str
    issue_id: str
    status: str  # "queued" | "manual"
    detail: str

    def to_dict(self) -> DelegationDict:
        return {"capability": self.capability, "issue_id": self.issue_id, "status": self.status, "detail": self.detail}


class CapabilityHandler(Protocol):
    name: str

    def apply(self, issue: Issue) -> CapabilityResult: ...


class ChecklistHandler:
    """Queues an issue for a capability, with a fixed checklist for the work."""

    def __init__(self, name: str, checklist: tuple[str, ...]) -> None:
        self.name = name
        self.checklist = checklist

    def apply(self, issue: Issue) -> CapabilityResult:
        action = issue.recommended_action or issue.title
        steps = "; ".join(self.checklist)
        return CapabilityResult(self.name, issue.id, "queued", f"{action} [{steps}]")


class NoopHandler:
    name = "manual"

    def apply(self, issue: Issue) -> CapabilityResult:
        capability = issue.assigned_capability or "unassigned"
        return CapabilityResult(capability, issue.id, "manual", "no handler registered; implement manually")


BUILTIN_HANDLERS: tuple[ChecklistHandler, ...] = (
    ChecklistHandler("security-review", ("reproduce the finding", "patch", "add a regression test")),
    ChecklistHandler("performance-optimization", ("measure baseline", "apply change", "measure again")),
    ChecklistHandler("code-quality", ("refactor", "keep behaviour identical", "run the test suite")),
    ChecklistHandler("documentation", ("update docs", "check examples still run")),
    ChecklistHandler("testing", ("write failing test", "cover edge cases")),
    ChecklistHandler("architecture-review", ("write a short design note", "agree on the boundary", "migrate callers")),
)


class CapabilityRegistry:
    """Capability name -> handler, with a no-op default."""

    def __init__(self, handlers: tuple[CapabilityHandler, ...] | list[CapabilityHandler] = ()) -> None:
        self._handlers: dict[str, CapabilityHandler] = {}
        self._default = NoopHandler()
        for handler in handlers:
            self.register(handler)

    def register(self, handler: CapabilityHandler) -> None:
        self._handlers[handler.name.lower()] = handler

    def resolve(self, capability: str) -> CapabilityHandler:
        handler = self._handlers.get(capability.strip().lower())
        if handler is None:
            logger.debug("No handler for capability %r, using no-op", capability)
            return self._default
        return handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def apply(self, issue: Issue) -> CapabilityResult:
        return self.resolve(issue.assigned_capability).apply(issue)

    @classmethod
    def with_builtins(cls) -> CapabilityRegistry:
        return cls(BUILTIN_HANDLERS)
