"""
Logging helpers for the download job core.

Provides:
    - StructuredFormatter: one JSON object per line, for audit and log shippers.
    - get_logger: dedicated JSON logger (used for the audit trail).
    - configure_logging: root logging setup for the process embedding the core.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict


class StructuredFormatter(logging.Formatter):
    """Render a log record as a single JSON line.

    Keys: ``timestamp`` (UTC), ``level``, ``logger``, ``message``.  Job
    lifecycle events pass their payload as ``extra={"metrics": {...}}``;
    it is emitted under ``"metrics"``.  Exceptions go under ``"exception"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        metrics = getattr(record, "metrics", None)
        if metrics is not None:
            entry["metrics"] = metrics
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Return logger *name* writing JSON lines to stderr.

    The logger owns its handler and does not propagate, so records are not
    written a second time by root handlers installed via ``configure_logging``.
    Calling it again for the same name reuses the existing handler.
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)
    logger.propagate = False

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(numeric_level)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

    return logger


def configure_logging(level: str = "INFO", fmt: str = "structured") -> None:
    """Configure root logging for a process embedding the job core.

    ``fmt="json"`` switches every handler to ``StructuredFormatter``;
    anything else uses a pipe-separated human-readable layout.
    """
    effective_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=effective_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if fmt == "json":
        for handler in logging.getLogger().handlers:
            handler.setFormatter(StructuredFormatter())
