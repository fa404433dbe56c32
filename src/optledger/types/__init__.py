# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, store.py, or any engine module (circular imports).
"""Typed on-disk and return-value contracts for optledger."""

from __future__ import annotations

from optledger.types.core import (
    CollectionDict,
    CollectionHeaderDict,
    ISOTimestamp,
    IssueDict,
    ProjectConfig,
    ProvenanceDict,
)
from optledger.types.sessions import (
    CommitLinkDict,
    CommitRecordDict,
    DelegationDict,
    SessionDict,
    SessionIssueDict,
    TicketRequestDict,
)

__all__ = [
    "CollectionDict",
    "CollectionHeaderDict",
    "CommitLinkDict",
    "CommitRecordDict",
    "DelegationDict",
    "ISOTimestamp",
    "IssueDict",
    "ProjectConfig",
    "ProvenanceDict",
    "SessionDict",
    "SessionIssueDict",
    "TicketRequestDict",
]
