"""
Job status lifecycle and background execution.

This module owns the only code paths that mutate job statuses and their
event logs:
- Job creation (synchronous, before any background work starts)
- Info / Error / Fatal event logging
- The single terminal "done" transition
- Detached execution of job work behind a crash-isolation boundary

Every event written to the database is mirrored to the process log as
``[job <id> <level>]: <text>``.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Callable, List, Optional

from .database import JobDatabase
from .errors import NotFoundError
from .models import EventLevel, JobEvent, JobState, JobStatus, Originator

logger = logging.getLogger(__name__)

JOB_FINISHED_TEXT = "job finished"

_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
    EventLevel.FATAL: logging.ERROR,
}


class JobManager:
    """
    Central coordinator for job status lifecycle management.

    Thread Safety:
        The database row is authoritative and every transition is a single
        statement or transaction. The lock only keeps the caller's in-memory
        JobStatus copy consistent when several threads log against the same
        job (the IIIF batch workers do this).

    Attributes:
        database: Persistence for job statuses and events
    """

    def __init__(self, database: JobDatabase, max_workers: int = 8) -> None:
        """
        Initialize the job manager.

        Args:
            database: Job persistence
            max_workers: Number of jobs that may run concurrently (default: 8)
        """
        self.database = database
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")

    def create(self, name: str, originator: Originator) -> JobStatus:
        """
        Create a running job for the given originator.

        Raises:
            PersistenceError: If the job status cannot be written
        """
        job = self.database.create_job_status(name, originator)
        logger.info(
            f"Created job {job.id} [{name}] for {originator.type.value} {originator.id}"
        )
        return job

    def get(self, job_id: int) -> JobStatus:
        """
        Read the current state of a job.

        Raises:
            NotFoundError: If no job has this ID
        """
        job = self.database.get_job_status(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return job

    def events(self, job_id: int) -> List[JobEvent]:
        self.get(job_id)
        return self.database.list_events(job_id)

    def log_info(self, job: Optional[JobStatus], text: str) -> None:
        if job is None:
            logger.info(f"[no job]: {text}")
            return
        self._mirror(job, EventLevel.INFO, text)
        self._write_event(job, EventLevel.INFO, text)

    def log_error(self, job: Optional[JobStatus], text: str) -> None:
        """Record a recoverable failure; the job keeps running."""
        if job is None:
            logger.error(f"[no job]: {text}")
            return
        self._mirror(job, EventLevel.ERROR, text)
        try:
            failures = self.database.add_error(job.id, text)
        except sqlite3.Error as exc:
            logger.error(f"[job {job.id}] unable to record error event: {exc}")
            return
        with self._lock:
            job.failures = max(job.failures, failures)

    def log_fatal(self, job: Optional[JobStatus], text: str) -> bool:
        """
        Fail the job unless it has already ended.

        Returns:
            True if this call ended the job, False if it was a no-op
        """
        if job is None:
            logger.error(f"[no job] FATAL: {text}")
            return False
        return self._end(job, JobState.FAILURE, EventLevel.FATAL, text, error=text)

    def done(self, job: JobStatus) -> bool:
        """
        Finish the job successfully unless it has already ended.

        Returns:
            True if this call ended the job, False if it was a no-op
        """
        return self._end(job, JobState.FINISHED, EventLevel.INFO, JOB_FINISHED_TEXT)

    def run_detached(
        self,
        job: JobStatus,
        work: Callable[[], None],
        on_crash: Optional[Callable[[str], None]] = None,
    ) -> Future:
        """
        Run ``work`` on a background thread and return immediately.

        Any exception escaping ``work`` is logged with its stack trace and
        converted into a fatal transition, via ``on_crash`` when given (so a
        workflow can also roll back its own records) or ``log_fatal``
        otherwise. The job is never left running because ``work`` crashed.

        Args:
            job: The job the work reports into
            work: Callable performing the job
            on_crash: Optional handler receiving the failure text

        Returns:
            Future completing when the work and any crash handling are done
        """
        return self._executor.submit(self._run_guarded, job, work, on_crash)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run_guarded(
        self,
        job: JobStatus,
        work: Callable[[], None],
        on_crash: Optional[Callable[[str], None]],
    ) -> None:
        try:
            work()
        except Exception as exc:
            logger.exception(f"[job {job.id}] {job.name} crashed")
            message = f"{job.name} failed unexpectedly: {exc}"
            if on_crash is None:
                self.log_fatal(job, message)
                return
            try:
                on_crash(message)
            except Exception:
                logger.exception(f"[job {job.id}] crash handler failed")
            self.log_fatal(job, message)
            return

        if not job.ended:
            logger.warning(f"[job {job.id}] {job.name} returned without ending its job")
            self.done(job)

    def _end(
        self,
        job: JobStatus,
        status: JobState,
        level: EventLevel,
        text: str,
        error: str = "",
    ) -> bool:
        ended_at = self.database.end_job(job.id, status, level, text, error=error)
        if ended_at is None:
            logger.info(f"[job {job.id}] already ended; ignoring {status.value} transition")
            self._refresh(job)
            return False
        with self._lock:
            job.status = status
            job.error = error
            job.ended_at = ended_at
        self._mirror(job, level, text)
        return True

    def _refresh(self, job: JobStatus) -> None:
        current = self.database.get_job_status(job.id)
        if current is None:
            return
        with self._lock:
            job.status = current.status
            job.error = current.error
            job.failures = current.failures
            job.ended_at = current.ended_at

    def _write_event(self, job: JobStatus, level: EventLevel, text: str) -> None:
        try:
            self.database.add_event(job.id, level, text)
        except sqlite3.Error as exc:
            logger.error(f"[job {job.id}] unable to record {level.name} event: {exc}")

    def _mirror(self, job: JobStatus, level: EventLevel, text: str) -> None:
        logger.log(_LOG_LEVELS[level], f"[job {job.id} {level.name}]: {text}")
