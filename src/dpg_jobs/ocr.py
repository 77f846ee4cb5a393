"""
OCR requests and the registry of jobs waiting for OCR callbacks.

A request registers its job ID, submits the work to the OCR service and then
blocks until the OCR service calls back (``POST /callbacks/{jid}/ocr``) or
the configured timeout passes.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from .http_client import ServiceClient
from .job_manager import JobManager
from .models import JobStatus

logger = logging.getLogger(__name__)


class PendingOcrRegistry:
    """Thread-safe map of job ID to the event its OCR request waits on."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[int, threading.Event] = {}

    def register(self, job_id: int) -> threading.Event:
        with self._lock:
            event = self._pending.get(job_id)
            if event is None:
                event = threading.Event()
                self._pending[job_id] = event
            return event

    def is_pending(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._pending

    def release(self, job_id: int) -> bool:
        """
        Wake the waiter for ``job_id`` and forget it.

        Returns:
            False if no request was pending for the job
        """
        with self._lock:
            event = self._pending.pop(job_id, None)
        if event is None:
            logger.error(f"could not find pending OCR job {job_id}")
            return False
        logger.info(f"remove pending ocr job {job_id}")
        event.set()
        return True

    def discard(self, job_id: int) -> None:
        with self._lock:
            self._pending.pop(job_id, None)

    def wait(self, job_id: int, timeout: float) -> None:
        """
        Block until the callback for ``job_id`` arrives.

        Raises:
            TimeoutError: If no callback arrives within ``timeout`` seconds
        """
        event = self.register(job_id)
        if not event.wait(timeout):
            self.discard(job_id)
            raise TimeoutError(f"no OCR callback for job {job_id} after {timeout:.0f} seconds")


class OcrService:
    def __init__(
        self,
        client: ServiceClient,
        jobs: JobManager,
        registry: PendingOcrRegistry,
        ocr_url: str,
        service_url: str,
        timeout: float,
    ) -> None:
        self.client = client
        self.jobs = jobs
        self.registry = registry
        self.ocr_url = ocr_url.rstrip("/")
        self.service_url = service_url.rstrip("/")
        self.timeout = timeout

    def request(self, job: JobStatus, pid: str, lang: str, unit_id: Optional[int] = None) -> None:
        """
        Submit an OCR request for a metadata record (whole unit) or master file
        and wait for its completion callback.

        Raises:
            RequestError: If the OCR service rejects the request
            TimeoutError: If the callback never arrives
        """
        params = {"lang": lang}
        if unit_id is not None:
            params["unit"] = str(unit_id)
        params["force"] = "true"
        params["callback"] = f"{self.service_url}/callbacks/{job.id}/ocr"

        url = f"{self.ocr_url}/{pid}"
        self.jobs.log_info(job, f"OCR request URL: {url} {params}")

        # register first so a fast callback cannot be lost
        self.registry.register(job.id)
        try:
            self.client.get(url, params=params)
        except Exception:
            self.registry.discard(job.id)
            raise
        self.jobs.log_info(job, "OCR Request successfully submitted. Awaiting results.")

        self.registry.wait(job.id, self.timeout)
        self.jobs.log_info(job, "OCR request finished")

    def handle_callback(self, job: Optional[JobStatus], job_id: int, status: str, message: str) -> None:
        """Record the outcome reported by the OCR service and wake the waiter."""
        try:
            self.jobs.log_info(job, "Received OCR callback")
            if status == "success":
                self.jobs.log_info(job, "OCR request completed successfully")
            else:
                self.jobs.log_error(job, f"OCR request failed: {message}")
        finally:
            self.registry.release(job_id)
