"""Ledger status: counts per collection and a compact markdown summary.

``write_summary`` regenerates ``.claude/optimize/status.md`` after every
mutation so the current state can be read in a single file read.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from optledger.core import iso, now_utc, write_atomic
from optledger.models import COLLECTIONS, PRIORITIES
from optledger.sessions import SessionRecorder
from optledger.store import IssueStore

SUMMARY_FILENAME = "status.md"
RECENT_SESSIONS = 5

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")


def _sanitize_title(text: str) -> str:
    """Strip control characters and newlines so titles stay on one markdown line."""
    text = _CONTROL_CHARS_RE.sub("", text)
    text = " ".join(text.split())
    if len(text) > 200:
        text = text[:197] + "..."
    return text


def collect_status(store: IssueStore, recorder: SessionRecorder) -> dict[str, Any]:
    collections = store.load_all()
    pending = collections["pending"]
    by_priority = Counter(i.priority for i in pending.issues)
    outcomes = Counter(i.status for i in collections["completed"].issues)
    auto = [i for i in collections["completed"].issues if i.provenance and i.provenance.source == "auto"]
    sessions = recorder.list_sessions()
    return {
        "counts": {name: len(collections[name]) for name in COLLECTIONS},
        "pending_by_priority": {p: by_priority.get(p, 0) for p in PRIORITIES},
        "completed_by_outcome": dict(sorted(outcomes.items())),
        "flagged_for_review": sorted(pending.flags),
        "auto_migrated_unverified": [
            i.id for i in auto if i.provenance is not None and i.provenance.needs_manual_verification
        ],
        "sessions": {
            "total": len(sessions),
            "unlinked": [s.session_id for s in sessions if not s.is_linked],
            "recent": [
                {
                    "session_id": s.session_id,
                    "operation_type": s.operation_type,
                    "counts": s.counts,
                    "commit": s.commit_link.commit_hash if s.commit_link else None,
                }
                for s in sessions[-RECENT_SESSIONS:][::-1]
            ],
        },
        "interrupted_batches": len(store.pending_journals()),
    }


def generate_summary(
    store: IssueStore, recorder: SessionRecorder, *, clock: Callable[[], datetime] = now_utc
) -> str:
    status = collect_status(store, recorder)
    pending = store.load("pending")
    lines = [f"# Optimization Ledger (auto-generated {iso(clock().replace(microsecond=0))})", ""]

    counts = status["counts"]
    lines.append(f"Pending: {counts['pending']} | Backlog: {counts['backlog']} | Completed: {counts['completed']}")
    lines.append("")

    lines.append("## Pending by priority")
    for priority, n in status["pending_by_priority"].items():
        lines.append(f"- {priority}: {n}")
    lines.append("")

    if pending.issues:
        lines.append("## Pending issues")
        for issue in pending.issues:
            marker = " (needs manual review)" if issue.id in pending.flags else ""
            lines.append(f"- [{issue.priority}] {issue.id} {_sanitize_title(issue.title)}{marker}")
        lines.append("")

    if status["auto_migrated_unverified"]:
        lines.append("## Auto-migrated, verify manually")
        lines.extend(f"- {issue_id}" for issue_id in status["auto_migrated_unverified"])
        lines.append("")

    lines.append("## Recent sessions")
    recent = status["sessions"]["recent"]
    if recent:
        for s in recent:
            commit = s["commit"][:12] if s["commit"] else "unlinked"
            tallies = ", ".join(f"{k}={v}" for k, v in s["counts"].items())
            lines.append(f"- {s['session_id']} {s['operation_type']} ({tallies}) [{commit}]")
    else:
        lines.append("- (no sessions yet)")
    lines.append("")
    return "\n".join(lines)


def write_summary(
    store: IssueStore,
    recorder: SessionRecorder,
    output_path: Path,
    *,
    clock: Callable[[], datetime] = now_utc,
) -> None:
    """Generate and write the summary atomically (write-temp then rename)."""
    write_atomic(output_path, generate_summary(store, recorder, clock=clock))
