"""Exception taxonomy for the download job core."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .jobs.models import DenialReason


class SteamDLError(Exception):
    """Base class for all errors raised by the job core."""


class AdmissionDenied(SteamDLError):
    """Concurrency, rate or quota limit refused a new job. No resources were consumed."""

    def __init__(self, reason: DenialReason, job_id: Optional[str] = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.job_id = job_id


class ProcessLaunchFailed(SteamDLError):
    """The download tool could not be spawned (missing or not executable)."""


class ToolReportedFailure(SteamDLError):
    """The tool printed a failure marker or exited non-zero."""


class JobTimeout(SteamDLError):
    """The job exceeded its maximum runtime and was killed."""


class JobCancelled(SteamDLError):
    """The job was cancelled on request."""


class SubscriberOverflow(SteamDLError):
    """A progress subscriber fell too far behind and was dropped.

    Raised only to the affected subscriber; the job keeps running.
    """


class JobNotFoundError(SteamDLError):
    """Requested job ID does not exist."""
