"""Job data models."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow_iso() -> str:
    """UTC timestamp like ``2026-01-01T09:12:34.123456+00:00``."""
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return uuid.uuid4().hex[:12]


class JobStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.succeeded, JobStatus.failed, JobStatus.cancelled})


class DenialReason(str, enum.Enum):
    """Why the admission controller refused a submission."""

    concurrency_exceeded = "CONCURRENCY_EXCEEDED"
    rate_exceeded = "RATE_EXCEEDED"
    quota_daily_exceeded = "QUOTA_DAILY_EXCEEDED"
    quota_monthly_exceeded = "QUOTA_MONTHLY_EXCEEDED"


class CancelOutcome(str, enum.Enum):
    ok = "ok"
    not_found = "not_found"
    already_terminal = "already_terminal"


class JobRecord(BaseModel):
    """Persistent representation of a download job."""

    job_id: str = Field(default_factory=new_job_id)
    identity_id: str
    target: str
    status: JobStatus = JobStatus.queued
    progress: float = 0.0
    phase: str = ""
    created_at: str = Field(default_factory=utcnow_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    artifact_path: Optional[str] = None
    retain_until: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Limits(BaseModel):
    """Per-identity limit snapshot. ``None`` means unbounded."""

    max_concurrent: Optional[int] = Field(default=None, ge=0)
    rate_per_minute: Optional[int] = Field(default=None, ge=0)
    quota_daily: Optional[int] = Field(default=None, ge=0)
    quota_monthly: Optional[int] = Field(default=None, ge=0)
    max_runtime_seconds: Optional[float] = Field(default=None, gt=0)

    model_config = {"frozen": True}


class ProgressEvent(BaseModel):
    """One structured progress update for a job.

    The terminal marker is a ``ProgressEvent`` with ``terminal=True`` and
    ``status`` set to the job's final status; subscribers close after it.
    """

    job_id: str
    seq: int
    phase: str
    progress: float = Field(ge=0.0, le=1.0)
    message: Optional[str] = None
    failed: bool = False
    terminal: bool = False
    status: Optional[JobStatus] = None

    model_config = {"frozen": True}


class LifecycleEvent(BaseModel):
    """Audit record for a job lifecycle transition."""

    job_id: Optional[str] = None
    identity_id: str
    kind: str
    at: str = Field(default_factory=utcnow_iso)
    detail: Dict[str, Any] = Field(default_factory=dict)
