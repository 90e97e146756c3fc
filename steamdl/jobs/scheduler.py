"""Download job scheduler: admission, process supervision and progress streaming."""
from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..config import CoreSettings, get_settings
from ..errors import (
    AdmissionDenied,
    JobCancelled,
    JobNotFoundError,
    JobTimeout,
    ProcessLaunchFailed,
    SteamDLError,
    ToolReportedFailure,
)
from .admission import AdmissionController, AdmissionTicket
from .audit import AuditSink, LoggingAuditSink
from .broadcast import ProgressHub, Subscription
from .cleanup import CleanupEntry, CleanupQueue
from .limits import LimitsProvider, StaticLimitsProvider
from .models import (
    CancelOutcome,
    JobRecord,
    JobStatus,
    LifecycleEvent,
    Limits,
    ProgressEvent,
    utcnow_iso,
)
from .process import ExitStatus, ProcessHandle, ProcessRunner
from .progress import TERMINAL_PHASE, ProgressParser
from .store import JobRepository

logger = logging.getLogger(__name__)

STOP_CANCELLED = "cancelled"
STOP_TIMEOUT = "timeout"
STOP_SHUTDOWN = "shutdown"


@dataclass
class _ActiveJob:
    """Everything owned by the task driving one job."""

    record: JobRecord
    ticket: AdmissionTicket
    parser: ProgressParser
    work_dir: Path
    destination: Path
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    handle: Optional[ProcessHandle] = None
    task: Optional[asyncio.Task] = None
    stop_reason: Optional[str] = None
    stopped_by: Optional[str] = None
    failure: Optional[str] = None
    last_saved: float = 0.0


class JobScheduler:
    """Runs download jobs as supervised subprocesses with per-identity admission.

    The scheduler is the only writer of ``JobRecord`` state.  Each admitted job
    gets its own ``asyncio.Task`` that pumps tool output through a
    ``ProgressParser`` into the record and the ``ProgressHub``, enforces the
    maximum runtime, and performs the terminal transition exactly once.

    Parameters
    ----------
    repository : persistence for job records (``save``/``load``/``list_by_status``).
    settings : defaults to the cached ``CoreSettings``.
    admission, hub, runner, audit, limits_provider, cleanup :
        collaborators; defaults are built from *settings*.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        settings: Optional[CoreSettings] = None,
        admission: Optional[AdmissionController] = None,
        hub: Optional[ProgressHub] = None,
        runner: Optional[ProcessRunner] = None,
        audit: Optional[AuditSink] = None,
        limits_provider: Optional[LimitsProvider] = None,
        cleanup: Optional[CleanupQueue] = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self._repo = repository
        self.admission = admission or AdmissionController()
        self.hub = hub or ProgressHub(s.subscriber_buffer, s.overflow_wait_seconds, s.terminal_retention)
        self._runner = runner or ProcessRunner(s.kill_grace_seconds, s.line_limit)
        self._audit = audit or LoggingAuditSink()
        self._limits = limits_provider or StaticLimitsProvider()
        self.cleanup = cleanup or CleanupQueue()
        self._active: Dict[str, _ActiveJob] = {}
        self._shutting_down = False

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> int:
        """Fail records left queued or running by a previous process.

        Returns the number of recovered records.
        """
        orphans = await self._repo.list_by_status(JobStatus.queued, JobStatus.running, limit=100_000)
        recovered = 0
        for rec in orphans:
            if rec.job_id in self._active:
                continue
            now = utcnow_iso()
            rec.status = JobStatus.failed
            rec.started_at = rec.started_at or now
            rec.completed_at = now
            rec.error_message = "interrupted by restart"
            await self._repo.save(rec)
            await self._emit("failed", rec.identity_id, rec.job_id, reason="orphaned")
            recovered += 1
        if recovered:
            logger.info("Recovered %d orphaned job(s) as failed", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Stop every in-flight job and wait for its terminal transition."""
        self._shutting_down = True
        jobs = list(self._active.values())
        for job in jobs:
            await self._request_stop(job, STOP_SHUTDOWN, "scheduler")
        tasks = [job.task for job in jobs if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler shut down (%d job(s) stopped)", len(jobs))

    # ── Submit ───────────────────────────────────────────────────────

    async def submit_job(self, identity_id: str, target: str, limits: Optional[Limits] = None) -> str:
        """Admit, record and launch a download of *target* for *identity_id*.

        Returns the new job id once the tool process is running.

        Raises
        ------
        AdmissionDenied
            Concurrency, rate or quota limit reached; no job was started.
        ProcessLaunchFailed
            The download tool could not be spawned; the job is recorded FAILED.
        """
        if self._shutting_down:
            raise SteamDLError("scheduler is shutting down")
        if limits is None:
            limits = await self._limits.resolve(identity_id)

        try:
            ticket = await self.admission.try_acquire(identity_id, limits)
        except AdmissionDenied as exc:
            if self._settings.persist_denied:
                now = utcnow_iso()
                rec = JobRecord(
                    identity_id=identity_id,
                    target=target,
                    status=JobStatus.failed,
                    started_at=now,
                    completed_at=now,
                    error_message=exc.reason.value,
                )
                await self._repo.save(rec)
                exc.job_id = rec.job_id
            await self._emit("denied", identity_id, exc.job_id, target=target, reason=exc.reason.value)
            raise

        record = JobRecord(identity_id=identity_id, target=target)
        work_dir = Path(self._settings.download_root) / record.job_id
        job = _ActiveJob(
            record=record,
            ticket=ticket,
            parser=ProgressParser(record.job_id, self._settings.progress_pattern_version),
            work_dir=work_dir,
            destination=work_dir / "output",
        )

        try:
            await self._repo.save(record)
        except BaseException:
            await self.admission.release(ticket)
            raise

        try:
            await self._emit("submitted", identity_id, record.job_id, target=target)
            work_dir.mkdir(parents=True, exist_ok=True)
            args = [a.format(target=target, destination=str(job.destination)) for a in self._settings.tool_args]
            job.handle = await self._runner.start(self._settings.tool_path, args, work_dir)
        except ProcessLaunchFailed as exc:
            logger.error("Job %s failed to launch: %s", record.job_id, exc)
            await self._finalize(job, JobStatus.failed, error=str(exc))
            raise
        except OSError as exc:
            logger.error("Job %s: cannot prepare %s: %s", record.job_id, work_dir, exc)
            await self._finalize(job, JobStatus.failed, error=f"cannot prepare work dir: {exc}")
            raise ProcessLaunchFailed(f"cannot prepare work dir {work_dir}: {exc}") from exc
        except BaseException:
            # Caller went away before a supervisor owns the job.
            logger.warning("Job %s: submission interrupted before launch completed", record.job_id)
            if job.handle is not None:
                await job.handle.close()
            await self._finalize(job, JobStatus.failed, error="submission interrupted")
            raise

        # No await until the supervisor task owns the process.
        record.status = JobStatus.running
        record.started_at = utcnow_iso()
        record.phase = "starting"
        self.hub.open(record.job_id)
        self._active[record.job_id] = job
        job.last_saved = time.monotonic()
        job.task = asyncio.create_task(self._supervise(job), name=f"steamdl-job-{record.job_id}")
        logger.info("Job %s started for %s (target %s)", record.job_id, identity_id, target)
        return record.job_id

    # ── Queries ──────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Current state of *job_id*, or ``None``. Returns a copy."""
        job = self._active.get(job_id)
        if job is not None:
            return job.record.model_copy()
        return await self._repo.load(job_id)

    def active_jobs(self) -> List[str]:
        return list(self._active)

    async def wait_for(self, job_id: str) -> JobRecord:
        """Block until *job_id* is terminal and return its final record."""
        job = self._active.get(job_id)
        if job is not None and job.task is not None:
            await asyncio.shield(job.task)
        rec = await self.get_job(job_id)
        if rec is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return rec

    async def result(self, job_id: str) -> Path:
        """Wait for *job_id* and return its artifact path.

        Raises ``ToolReportedFailure``, ``JobTimeout`` or ``JobCancelled``
        when the job did not succeed, and ``JobNotFoundError`` for unknown ids.
        """
        rec = await self.wait_for(job_id)
        if not rec.is_terminal:
            raise SteamDLError(f"Job {job_id} is {rec.status.value} and not owned by this scheduler")
        if rec.status is JobStatus.succeeded:
            return Path(rec.artifact_path)
        if rec.status is JobStatus.cancelled:
            if rec.error_message == STOP_TIMEOUT:
                raise JobTimeout(f"Job {job_id} exceeded its maximum runtime")
            raise JobCancelled(f"Job {job_id} was cancelled ({rec.error_message})")
        raise ToolReportedFailure(rec.error_message or f"Job {job_id} failed")

    async def subscribe_progress(self, job_id: str) -> Subscription:
        """Live progress for *job_id*.

        Running jobs stream until their terminal marker; finished jobs yield
        only the terminal marker; unknown ids yield nothing.
        """
        if job_id in self._active or self.hub.terminal_for(job_id) is not None:
            return self.hub.subscribe(job_id)
        rec = await self._repo.load(job_id)
        if rec is not None and rec.is_terminal:
            marker = ProgressEvent(
                job_id=job_id,
                seq=0,
                phase=TERMINAL_PHASE,
                progress=rec.progress,
                message=rec.error_message,
                terminal=True,
                status=rec.status,
            )
            return Subscription.closed(job_id, marker)
        return Subscription.closed(job_id)

    # ── Cancel ───────────────────────────────────────────────────────

    async def cancel_job(self, job_id: str, requested_by: str) -> CancelOutcome:
        """Cancel a running job.

        A job that is unknown or still queued returns ``not_found``; a
        finished job returns ``already_terminal``.  Neither mutates state.
        Once ``ok`` is returned the job always ends CANCELLED.
        """
        job = self._active.get(job_id)
        if job is None:
            rec = await self._repo.load(job_id)
            if rec is not None and rec.is_terminal:
                return CancelOutcome.already_terminal
            return CancelOutcome.not_found
        return await self._request_stop(job, STOP_CANCELLED, requested_by)

    async def _request_stop(self, job: _ActiveJob, reason: str, requested_by: str) -> CancelOutcome:
        async with job.lock:
            if job.record.is_terminal:
                return CancelOutcome.already_terminal
            if job.record.status is not JobStatus.running:
                return CancelOutcome.not_found
            if job.stop_reason is None:
                job.stop_reason = reason
                job.stopped_by = requested_by
                logger.info("Job %s: stop requested (%s) by %s", job.record.job_id, reason, requested_by)
        if job.handle is not None:
            await job.handle.kill()
        return CancelOutcome.ok

    # ── Supervision ──────────────────────────────────────────────────

    async def _supervise(self, job: _ActiveJob) -> None:
        job_id = job.record.job_id
        await self._announce(job)
        runtime = job.ticket.limits.max_runtime_seconds or self._settings.max_runtime_seconds
        pump = asyncio.create_task(self._pump(job))
        waiter = asyncio.ensure_future(job.handle.wait())
        try:
            await asyncio.wait({waiter, pump}, timeout=runtime, return_when=asyncio.FIRST_EXCEPTION)
            if not waiter.done():
                if _failed(pump):
                    logger.error("Job %s: output reader failed; killing tool", job_id)
                else:
                    logger.warning("Job %s exceeded max runtime of %.1fs; killing", job_id, runtime)
                    async with job.lock:
                        if job.stop_reason is None:
                            job.stop_reason = STOP_TIMEOUT
                await job.handle.kill()
            exit_status = await waiter
            await self._drain(job, pump)
            status, error, artifact = self._outcome(job, exit_status)
        except Exception as exc:
            logger.error("Job %s supervisor failed: %s\n%s", job_id, exc, traceback.format_exc())
            status, error, artifact = JobStatus.failed, f"internal error: {exc}", None
        finally:
            for task in (pump, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(pump, waiter, return_exceptions=True)
            await job.handle.close()
        await self._finalize(job, status, error=error, artifact=artifact)

    async def _announce(self, job: _ActiveJob) -> None:
        rec = job.record
        try:
            await self._repo.save(rec)
        except Exception as exc:  # noqa: BLE001
            logger.error("Job %s: could not persist RUNNING state: %s", rec.job_id, exc)
        await self._emit("started", rec.identity_id, rec.job_id, pid=job.handle.pid)

    async def _drain(self, job: _ActiveJob, pump: asyncio.Task) -> None:
        """Let the reader reach EOF after the tool has exited.

        Descendants that still hold the pipe are killed after the grace period.
        """
        grace = self._settings.kill_grace_seconds
        done, _ = await asyncio.wait({pump}, timeout=grace)
        if not done:
            logger.warning("Job %s: output pipe still open after tool exit; killing its process group",
                           job.record.job_id)
            await job.handle.kill()
            done, _ = await asyncio.wait({pump}, timeout=grace)
        if not done:
            logger.warning("Job %s: abandoning output reader", job.record.job_id)
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            return
        pump.result()

    async def _pump(self, job: _ActiveJob) -> None:
        async for line in job.handle.lines():
            event = job.parser.parse(line)
            if event is None:
                continue
            if event.failed:
                if job.failure is None:
                    job.failure = event.message
                    logger.info("Job %s: tool reported failure: %s", job.record.job_id, event.message)
                    await job.handle.kill()
                continue
            await self._on_progress(job, event)

    async def _on_progress(self, job: _ActiveJob, event: ProgressEvent) -> None:
        async with job.lock:
            rec = job.record
            if rec.is_terminal or job.stop_reason is not None:
                return
            rec.progress = event.progress
            rec.phase = event.phase
            now = time.monotonic()
            if now - job.last_saved >= self._settings.progress_save_interval:
                job.last_saved = now
                try:
                    await self._repo.save(rec)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Job %s: progress save failed: %s", rec.job_id, exc)
        # Publish outside the lock; stop requests never wait on subscribers.
        await self.hub.publish(rec.job_id, event)

    def _outcome(self, job: _ActiveJob, exit_status: ExitStatus) -> Tuple[JobStatus, Optional[str], Optional[Path]]:
        if job.stop_reason is not None:
            return JobStatus.cancelled, job.stop_reason, None
        if job.failure is not None:
            return JobStatus.failed, job.failure, None
        if exit_status.success:
            if _artifact_present(job.destination):
                return JobStatus.succeeded, None, job.destination
            return JobStatus.failed, f"download tool exited 0 but produced nothing at {job.destination}", None
        return JobStatus.failed, f"download tool failed ({exit_status})", None

    # ── Terminal transition ──────────────────────────────────────────

    async def _finalize(
        self,
        job: _ActiveJob,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        artifact: Optional[Path] = None,
    ) -> bool:
        """Commit the single terminal transition of *job*.

        Returns ``False`` if another path already committed one.
        """
        rec = job.record
        async with job.lock:
            if rec.is_terminal:
                return False
            if job.stop_reason is not None:
                # A stop answered with OK always ends CANCELLED.
                status, error, artifact = JobStatus.cancelled, job.stop_reason, None
            now = datetime.now(timezone.utc)
            retain_until = now + timedelta(seconds=self._settings.retention_seconds)
            if status is JobStatus.succeeded:
                rec.progress = 1.0
            rec.status = status
            rec.started_at = rec.started_at or now.isoformat()
            rec.completed_at = now.isoformat()
            rec.error_message = error
            rec.artifact_path = str(artifact) if artifact is not None else None
            rec.retain_until = retain_until.isoformat()

            await self.hub.close(rec.job_id, job.parser.terminal_event(status, error))
            await self.admission.release(job.ticket)
            try:
                await self._repo.save(rec)
            except Exception as exc:  # noqa: BLE001
                logger.error("Job %s: could not persist terminal state %s: %s", rec.job_id, status.value, exc)
            self.cleanup.enqueue(CleanupEntry(
                delete_after=retain_until,
                job_id=rec.job_id,
                work_dir=job.work_dir,
                artifact_path=artifact,
            ))
            await self._emit(
                status.value,
                rec.identity_id,
                rec.job_id,
                error=error,
                artifact=rec.artifact_path,
                stopped_by=job.stopped_by,
            )
        self._active.pop(rec.job_id, None)
        logger.info("Job %s %s%s", rec.job_id, status.value, f": {error}" if error else "")
        return True

    async def _emit(self, kind: str, identity_id: str, job_id: Optional[str] = None, **detail) -> None:
        event = LifecycleEvent(
            job_id=job_id,
            identity_id=identity_id,
            kind=kind,
            detail={k: v for k, v in detail.items() if v is not None},
        )
        try:
            await self._audit.record(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Audit sink rejected %s event for job %s: %s", kind, job_id, exc)


def _failed(task: asyncio.Task) -> bool:
    return task.done() and not task.cancelled() and task.exception() is not None


def _artifact_present(path: Path) -> bool:
    if path.is_file():
        return True
    return path.is_dir() and any(path.iterdir())
