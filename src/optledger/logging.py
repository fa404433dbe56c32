"""JSON-lines logging for optledger.

One rotating file per project at ``.claude/optimize/optledger.log``. Modules
log through ``logging.getLogger(__name__)``; records reach the file through
the ``optledger`` package logger. Structured context goes in ``extra``:

    logger.info("Saved", extra={"op": "save", "args_data": {...}})

``log_op`` wraps a mutation and logs one record with its duration, or the
error it raised.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "optledger.log"
_ROTATE_BYTES = 5 * 1024 * 1024
_ROTATE_KEEP = 3
_lock = threading.Lock()

# record attribute -> JSON key
_CONTEXT_KEYS = {
    "op": "op",
    "args_data": "args",
    "duration_ms": "duration_ms",
    "error": "error",
    "session_id": "session_id",
    "issue_ids": "issue_ids",
}


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        line.update({key: getattr(record, attr) for attr, key in _CONTEXT_KEYS.items() if hasattr(record, attr)})
        if record.exc_info and record.exc_info[1] is not None:
            line["exception"] = repr(record.exc_info[1])
        return json.dumps(line, default=str)


def _file_handlers(logger: logging.Logger) -> list[RotatingFileHandler]:
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]


def setup_logging(state_dir: Path) -> logging.Logger:
    """Point the ``optledger`` logger at *state_dir*'s log file.

    Idempotent per directory. A handler left over from another project is
    closed and replaced.
    """
    package_logger = logging.getLogger("optledger")
    target = os.path.abspath(state_dir / LOG_FILENAME)

    with _lock:
        for existing in _file_handlers(package_logger):
            if existing.baseFilename == target:
                return package_logger
            package_logger.removeHandler(existing)
            existing.close()

        handler = RotatingFileHandler(target, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_KEEP, encoding="utf-8")
        handler.setFormatter(_JsonLineFormatter())
        package_logger.addHandler(handler)
        package_logger.setLevel(logging.INFO)
    return package_logger


@contextmanager
def log_op(logger: logging.Logger, op: str, message: str, **context: Any) -> Iterator[dict[str, Any]]:
    """Log *message* once the block finishes, with ``duration_ms``.

    The yielded dict is merged into the record, so the block can add fields
    it only knows at the end (``issue_ids``, ``session_id``). If the block
    raises, a WARNING with ``error`` is logged and the exception propagates.
    """
    fields: dict[str, Any] = {"op": op, **context}
    started = time.monotonic()
    try:
        yield fields
    except Exception as exc:
        fields["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        logger.warning("%s failed", message, extra={**fields, "error": str(exc)})
        raise
    fields["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
    logger.info(message, extra=fields)
