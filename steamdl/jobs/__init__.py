"""Download job orchestration: admission, supervision, progress fan-out."""
from .admission import AdmissionController, AdmissionTicket
from .broadcast import ProgressHub, Subscription
from .cleanup import CleanupEntry, CleanupQueue
from .models import CancelOutcome, DenialReason, JobRecord, JobStatus, Limits, ProgressEvent
from .process import ExitStatus, ProcessHandle, ProcessRunner
from .progress import ProgressParser
from .scheduler import JobScheduler
from .store import JobRepository, JobStore

__all__ = [
    "AdmissionController",
    "AdmissionTicket",
    "CancelOutcome",
    "CleanupEntry",
    "CleanupQueue",
    "DenialReason",
    "ExitStatus",
    "JobRecord",
    "JobRepository",
    "JobScheduler",
    "JobStatus",
    "JobStore",
    "Limits",
    "ProcessHandle",
    "ProcessRunner",
    "ProgressEvent",
    "ProgressHub",
    "ProgressParser",
    "Subscription",
]
