"""Retention bookkeeping for finished jobs.

The core never deletes anything on a timer.  The scheduler enqueues one
``CleanupEntry`` per terminal job; an external periodic sweep calls
``CleanupQueue.drain_due`` and removes the files with ``delete_entry``.
"""
from __future__ import annotations

import heapq
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(order=True)
class CleanupEntry:
    delete_after: datetime
    job_id: str = field(compare=False)
    work_dir: Optional[Path] = field(default=None, compare=False)
    artifact_path: Optional[Path] = field(default=None, compare=False)


class CleanupQueue:
    """Terminal jobs ordered by the instant they become safe to delete."""

    def __init__(self) -> None:
        self._heap: List[CleanupEntry] = []

    def __len__(self) -> int:
        return len(self._heap)

    def enqueue(self, entry: CleanupEntry) -> None:
        heapq.heappush(self._heap, entry)

    def pending(self) -> List[CleanupEntry]:
        return sorted(self._heap)

    def drain_due(self, now: Optional[datetime] = None) -> List[CleanupEntry]:
        """Remove and return every entry whose ``delete_after`` has passed."""
        now = now or datetime.now(timezone.utc)
        due: List[CleanupEntry] = []
        while self._heap and self._heap[0].delete_after <= now:
            due.append(heapq.heappop(self._heap))
        return due


def delete_entry(entry: CleanupEntry) -> None:
    """Delete the artifact and work directory of *entry*, ignoring missing paths."""
    for path in (entry.artifact_path, entry.work_dir):
        if path is None or not path.exists():
            continue
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        logger.info("Removed %s for job %s", path, entry.job_id)
