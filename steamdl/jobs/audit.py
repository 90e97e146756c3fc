"""Audit sink seam for job lifecycle events."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..utils.logging import get_logger
from .models import LifecycleEvent


class AuditSink(Protocol):
    async def record(self, event: LifecycleEvent) -> None: ...


class LoggingAuditSink:
    """Writes lifecycle events as structured JSON log lines."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or get_logger("steamdl.audit")

    async def record(self, event: LifecycleEvent) -> None:
        self._logger.info(
            "job %s %s",
            event.job_id or "-",
            event.kind,
            extra={"metrics": event.model_dump(mode="json")},
        )
