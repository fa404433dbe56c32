"""Foundational TypedDicts for collection files and config.json."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class DetectorConfig(TypedDict, total=False):
    implemented_ratio: float
    uncertain_ratio: float
    history_depth: int
    min_keyword_hits: int
    predicates: dict[str, dict[str, Any]]


class DecisionsConfig(TypedDict, total=False):
    max_length: int


class VCSConfig(TypedDict, total=False):
    timeout_seconds: float


class LinkerConfig(TypedDict, total=False):
    fallback_window_hours: float


class TicketsConfig(TypedDict, total=False):
    repo: str
    api_url: str
    labels: list[str]


class StoreConfig(TypedDict, total=False):
    max_bytes: int


class ProjectConfig(TypedDict, total=False):
    """Shape of .claude/optimize/config.json."""

    version: int
    project_name: str
    detector: DetectorConfig
    decisions: DecisionsConfig
    vcs: VCSConfig
    linker: LinkerConfig
    tickets: TicketsConfig
    store: StoreConfig


class ProvenanceDict(TypedDict, total=False):
    source: str  # "auto" | "user"
    method: str
    confidence: str
    needs_manual_verification: bool
    session_id: str | None
    operation_type: str
    comment: str
    decided_at: ISOTimestamp
    evidence: list[str]


class IssueDict(TypedDict, total=False):
    id: str
    title: str
    priority: str
    category: str
    description: str
    affected_files: list[str]
    assigned_capability: str
    recommended_action: str
    estimated_effort: str
    status: str
    provenance: ProvenanceDict | None
    ticket_ref: str | None


class CollectionHeaderDict(TypedDict, total=False):
    version: int
    collection: str
    updated_at: ISOTimestamp
    issue_count: int
    source: dict[str, Any]
    flags: dict[str, dict[str, Any]]


class CollectionDict(TypedDict):
    """Top-level shape of <stage>/issues.json."""

    header: CollectionHeaderDict
    issues: list[IssueDict]
