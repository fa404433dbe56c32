"""Backups of the whole ledger state directory.

``create_backup`` writes ``.claude/optimize-backup-<YYYYMMDD_HHMMSS>.tar.gz``
next to the state directory. Transition journals and temp files are left
out; everything else (collections, sessions, commit records, config, log)
goes in.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tarfile
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from optledger.core import BACKUP_PREFIX, JOURNAL_DIR, STATE_DIR_NAME, now_utc, session_id_for
from optledger.errors import StoreIOError

logger = logging.getLogger(__name__)


def _exclude(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
    parts = Path(info.name).parts
    if JOURNAL_DIR in parts[1:2] and len(parts) > 2:
        return None
    if parts and parts[-1].startswith(".") and parts[-1].endswith(".tmp"):
        return None
    return info


def create_backup(state_dir: Path, *, clock: Callable[[], datetime] = now_utc) -> Path:
    """Archive *state_dir* atomically. Returns the archive path."""
    target_dir = state_dir.parent
    stamp = session_id_for(clock())
    target = target_dir / f"{BACKUP_PREFIX}{stamp}.tar.gz"
    n = 1
    while target.exists():
        target = target_dir / f"{BACKUP_PREFIX}{stamp}_{n:02d}.tar.gz"
        n += 1

    fd, tmp_name = tempfile.mkstemp(dir=target_dir, prefix=f".{target.name}.{os.getpid()}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as raw, tarfile.open(fileobj=raw, mode="w:gz") as tar:
            tar.add(state_dir, arcname=STATE_DIR_NAME, filter=_exclude)
        os.replace(tmp_name, target)
    except BaseException as exc:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        if isinstance(exc, OSError):
            raise StoreIOError(target, exc) from exc
        raise
    logger.info("Wrote backup %s", target.name, extra={"op": "backup", "args_data": {"path": str(target)}})
    return target


def list_backups(state_dir: Path) -> list[Path]:
    """Existing backups, newest first."""
    return sorted(state_dir.parent.glob(f"{BACKUP_PREFIX}*.tar.gz"), reverse=True)
