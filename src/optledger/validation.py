"""Shared validation functions for operator input.

Pure functions with no Click or store dependencies. Operator commands are
rejected outright when they contain anything outside the allowed character
set; they are never sanitized and then executed.
"""

from __future__ import annotations

import re
from typing import Any

DEFAULT_MAX_DECISION_LENGTH = 500
_ALLOWED_RE = re.compile(r"[A-Za-z0-9 ,.\-'\"]*")
_SESSION_ID_RE = re.compile(r"\d{8}_\d{6}(?:_\d{2})?")
_COMMIT_HASH_RE = re.compile(r"[0-9a-f]{4,64}")
# Ids must survive the decision grammar: whitelisted characters, no separators.
_ISSUE_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9.\-]*")
# Words the decision grammar reads as keywords, so they cannot name an issue.
RESERVED_ISSUE_IDS = frozenset({"all", "skip", "implement", "defer", "ticket", "github"})


def check_operator_text(
    value: Any,
    *,
    field: str = "decision",
    max_length: int = DEFAULT_MAX_DECISION_LENGTH,
) -> tuple[str, str | None]:
    """Validate a decision or comment string.

    Returns (cleaned, None) on success or ("", error_message) on failure.
    Only surrounding spaces are stripped. Tabs, newlines and every other
    character outside the allowed set are an error.
    """
    if not isinstance(value, str):
        return ("", f"{field} must be a string")
    cleaned = value.strip(" ")
    if len(cleaned) > max_length:
        return ("", f"{field} must be at most {max_length} characters (got {len(cleaned)})")
    if not _ALLOWED_RE.fullmatch(cleaned):
        bad = sorted({ch for ch in cleaned if not _ALLOWED_RE.fullmatch(ch)})
        shown = ", ".join(repr(ch) for ch in bad)
        return ("", f"{field} contains disallowed characters: {shown}")
    return (cleaned, None)


def is_session_id(value: str) -> bool:
    return bool(_SESSION_ID_RE.fullmatch(value))


def is_commit_hash(value: str) -> bool:
    return bool(_COMMIT_HASH_RE.fullmatch(value))


def is_issue_id(value: str) -> bool:
    return bool(_ISSUE_ID_RE.fullmatch(value)) and value.lower() not in RESERVED_ISSUE_IDS
