"""Turn raw download-tool output into structured progress events.

Tool output formats live in ``PATTERN_TABLES`` keyed by version, so a change
in the tool's wording is an edit to one table rather than to the scheduler.
Patterns are tried in order; the first match wins.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .models import JobStatus, ProgressEvent

logger = logging.getLogger(__name__)

TERMINAL_PHASE = "terminal"


class LineKind(str, enum.Enum):
    progress = "progress"  # carries a percentage in group "pct"
    phase = "phase"        # phase change, keeps the last fraction
    complete = "complete"  # tool reports success, fraction jumps to 1.0
    failure = "failure"    # early-failure marker, message in group "msg"


@dataclass(frozen=True)
class LinePattern:
    name: str
    regex: re.Pattern
    kind: LineKind
    phase: str


def _p(name: str, pattern: str, kind: LineKind, phase: str) -> LinePattern:
    return LinePattern(name, re.compile(pattern, re.IGNORECASE), kind, phase)


# steamcmd +workshop_download_item output, e.g.
#   Update state (0x61) downloading, progress: 45.12 (123456 / 273456)
#   Success. Downloaded item 431960 to "/data/steamapps/workshop/content/..." (1234 bytes)
#   ERROR! Download item 431960 failed (Access Denied).
_STEAMCMD_V1: Tuple[LinePattern, ...] = (
    _p("download_failed", r"ERROR!\s+(?P<msg>Download item \d+ failed.*?)\.?\s*$", LineKind.failure, "failed"),
    _p("timeout", r"ERROR!\s+(?P<msg>Timeout downloading item \d+)", LineKind.failure, "failed"),
    _p("generic_error", r"^\s*ERROR!\s+(?P<msg>.+?)\s*$", LineKind.failure, "failed"),
    _p("login_failure", r"(?P<msg>(?:Login Failure|FAILED login).*?)\s*$", LineKind.failure, "failed"),
    _p("verifying", r"Update state \(0x[0-9a-f]+\) verifying[^,]*, progress:\s*(?P<pct>\d+(?:\.\d+)?)",
       LineKind.progress, "verifying"),
    _p("downloading", r"Update state \(0x[0-9a-f]+\) downloading, progress:\s*(?P<pct>\d+(?:\.\d+)?)",
       LineKind.progress, "downloading"),
    _p("success", r"^\s*Success\. Downloaded item \d+", LineKind.complete, "complete"),
    _p("download_start", r"^\s*Downloading item \d+", LineKind.phase, "downloading"),
    _p("login", r"^\s*Logging in user", LineKind.phase, "login"),
    _p("update_check", r"Checking for available update", LineKind.phase, "updating"),
    _p("percent", r"(?P<pct>\d{1,3}(?:\.\d+)?)\s*%", LineKind.progress, "downloading"),
)

PATTERN_TABLES: Dict[str, Tuple[LinePattern, ...]] = {
    "steamcmd-v1": _STEAMCMD_V1,
}

DEFAULT_PATTERN_VERSION = "steamcmd-v1"


class ProgressParser:
    """Per-job parser producing monotonic, sequenced progress events.

    The only state is the last emitted fraction and the sequence counter:
    a line reporting a lower fraction than already seen is discarded.
    """

    def __init__(self, job_id: str, version: str = DEFAULT_PATTERN_VERSION) -> None:
        try:
            self._patterns = PATTERN_TABLES[version]
        except KeyError:
            raise ValueError(f"Unknown progress pattern version: {version!r}") from None
        self.job_id = job_id
        self.version = version
        self._last = 0.0
        self._seq = 0

    @property
    def last_progress(self) -> float:
        return self._last

    def parse(self, line: str) -> Optional[ProgressEvent]:
        """Return a ``ProgressEvent`` for *line*, or ``None`` if it carries nothing."""
        for pattern in self._patterns:
            m = pattern.regex.search(line)
            if m is None:
                continue
            if pattern.kind is LineKind.failure:
                return self._emit(pattern.phase, self._last, message=m.group("msg").strip(), failed=True)
            if pattern.kind is LineKind.complete:
                return self._emit(pattern.phase, 1.0, message=line.strip())
            if pattern.kind is LineKind.phase:
                return self._emit(pattern.phase, self._last)
            fraction = min(max(float(m.group("pct")) / 100.0, 0.0), 1.0)
            if fraction < self._last:
                logger.debug("Job %s: discarding regressed progress %.4f < %.4f", self.job_id, fraction, self._last)
                return None
            return self._emit(pattern.phase, fraction)
        return None

    def terminal_event(self, status: JobStatus, message: Optional[str] = None) -> ProgressEvent:
        """Build the end-of-stream marker sent to subscribers."""
        progress = 1.0 if status is JobStatus.succeeded else self._last
        return self._emit(TERMINAL_PHASE, progress, message=message, terminal=True, status=status)

    def _emit(self, phase: str, fraction: float, **kwargs) -> ProgressEvent:
        self._seq += 1
        self._last = max(self._last, fraction)
        return ProgressEvent(job_id=self.job_id, seq=self._seq, phase=phase, progress=self._last, **kwargs)
