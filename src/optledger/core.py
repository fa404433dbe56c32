"""Project discovery, configuration, and atomic file primitives.

Convention-based discovery: each project has a `.claude/optimize/` directory
containing `config.json`, one sub-directory per lifecycle stage (pending,
backlog, completed), `decisions/` for session records and `commits/` for
commit-tracking records.

Every write in optledger goes through `write_atomic` (replace) or
`write_once` (create-exclusive). Both write to a per-process temporary file
in the destination directory, fsync it, and only then publish it with a
single rename/link, so a reader sees either the old file or the new one.
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from optledger.errors import LedgerError, NotInitializedError, StoreIOError
from optledger.types.core import ProjectConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

CLAUDE_DIR_NAME = ".claude"
STATE_DIR_NAME = "optimize"
CONFIG_FILENAME = "config.json"
COLLECTION_FILENAME = "issues.json"
DECISIONS_DIR = "decisions"
COMMITS_DIR = "commits"
JOURNAL_DIR = "journal"
BACKUP_PREFIX = "optimize-backup-"

SESSION_ID_FORMAT = "%Y%m%d_%H%M%S"


def state_dir_for(project_root: Path) -> Path:
    return project_root / CLAUDE_DIR_NAME / STATE_DIR_NAME


def find_state_dir(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .claude/optimize/.

    Returns the state directory (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = state_dir_for(parent)
        if candidate.is_dir():
            return candidate
    msg = f"No {CLAUDE_DIR_NAME}/{STATE_DIR_NAME}/ directory found in {current} or any parent"
    raise NotInitializedError(msg)


def project_root_of(state_dir: Path) -> Path:
    return state_dir.parent.parent


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: ProjectConfig = {
    "version": 1,
    "project_name": "",
    "detector": {
        "implemented_ratio": 0.80,
        "uncertain_ratio": 0.40,
        "history_depth": 50,
        "min_keyword_hits": 2,
        "predicates": {},
    },
    "decisions": {"max_length": 500},
    "vcs": {"timeout_seconds": 30.0},
    "linker": {"fallback_window_hours": 24.0},
    "tickets": {
        "repo": "",
        "api_url": "https://api.github.com",
        "labels": ["optimization"],
    },
    "store": {"max_bytes": 50 * 1024 * 1024},
}


def _merge_config(raw: dict[str, Any]) -> ProjectConfig:
    merged: dict[str, Any] = copy.deepcopy(dict(DEFAULT_CONFIG))
    for key, value in raw.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    result: ProjectConfig = merged  # type: ignore[assignment]
    return result


def read_config(state_dir: Path) -> ProjectConfig:
    """Read config.json merged over defaults. Returns defaults if missing or corrupt."""
    config_path = state_dir / CONFIG_FILENAME
    if not config_path.exists():
        return _merge_config({"project_name": project_root_of(state_dir).name})
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return _merge_config({"project_name": project_root_of(state_dir).name})
    if not isinstance(raw, dict):
        logger.warning("Config %s is not a JSON object, using defaults", config_path)
        return _merge_config({"project_name": project_root_of(state_dir).name})
    raw.setdefault("project_name", project_root_of(state_dir).name)
    return _merge_config(raw)


def write_config(state_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write config.json atomically."""
    write_atomic(state_dir / CONFIG_FILENAME, json.dumps(config, indent=2) + "\n")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def now_utc() -> datetime:
    return datetime.now(UTC)


def iso(ts: datetime) -> str:
    return ts.isoformat()


def session_id_for(ts: datetime) -> str:
    """Sortable session identifier (YYYYMMDD_HHMMSS)."""
    return ts.strftime(SESSION_ID_FORMAT)


# ---------------------------------------------------------------------------
# Atomic file primitives
# ---------------------------------------------------------------------------


def _temp_for(path: Path) -> tuple[int, str]:
    """Create a uniquely named temp file beside *path*.

    The name carries the pid so concurrent invocations never share a temp path.
    """
    return tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.{os.getpid()}.", suffix=".tmp")


def _fsync_dir(directory: Path) -> None:
    # Not every platform lets you open a directory; the rename is still atomic there.
    with contextlib.suppress(OSError):
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


def _write_temp(path: Path, content: str) -> str:
    try:
        fd, tmp_name = _temp_for(path)
    except OSError as exc:
        raise StoreIOError(path, exc) from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException as exc:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        if isinstance(exc, OSError):
            raise StoreIOError(path, exc) from exc
        raise
    return tmp_name


def write_atomic(path: Path, content: str, *, validate: Callable[[Path], None] | None = None) -> None:
    """Replace *path* with *content* via temp file + os.replace().

    *validate* is called with the temp path before the rename; if it raises,
    the temp file is removed and the destination is left untouched.
    """
    tmp_name = _write_temp(path, content)
    try:
        if validate is not None:
            validate(Path(tmp_name))
        os.replace(tmp_name, path)
    except BaseException as exc:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        if isinstance(exc, OSError) and not isinstance(exc, LedgerError):
            raise StoreIOError(path, exc) from exc
        raise
    _fsync_dir(path.parent)


def write_once(path: Path, content: str) -> bool:
    """Create *path* with *content* only if it does not exist yet.

    Returns False (and writes nothing) when the file already exists.
    Publication uses os.link(), which fails atomically on an existing target.
    """
    tmp_name = _write_temp(path, content)
    try:
        os.link(tmp_name, path)
    except FileExistsError:
        return False
    except OSError as exc:
        raise StoreIOError(path, exc) from exc
    finally:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
    _fsync_dir(path.parent)
    return True


def read_json(path: Path) -> Any:
    """Read a JSON document. Raises OSError / json.JSONDecodeError to the caller."""
    return json.loads(path.read_text(encoding="utf-8"))
