"""
Job registry for the retention system.

Holds the two levels of mutual exclusion (one cleanup per data type, and the
global maintenance lock shared by vacuum and every cleanup) together with the
in-memory records of queued and running cleanup jobs.
"""

import threading
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Set

import structlog

from .retention_errors import ConflictError
from .retention_models import CleanupJob, JobStatus, OperationType

logger = structlog.get_logger(__name__)

# Finished job records kept for inspection
MAX_FINISHED_JOBS = 200


class JobRegistry:
    """Thread-safe lock table and job state."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._lock = threading.Lock()
        self._active_cleanups: Set[str] = set()
        self._maintenance: Optional[str] = None
        self._stop_requests: Set[str] = set()
        self._jobs: "OrderedDict[str, CleanupJob]" = OrderedDict()

    # Locks

    def claim_cleanup(self, data_type: str):
        """Claim the per-data-type slot, or raise ConflictError."""
        with self._lock:
            if self._maintenance is not None:
                raise ConflictError(
                    f"Cannot clean {data_type} while {self._maintenance} is running",
                    data_type=data_type,
                )
            if data_type in self._active_cleanups:
                raise ConflictError(f"Cleanup already running for {data_type}", data_type=data_type)
            self._active_cleanups.add(data_type)
            self._stop_requests.discard(data_type)
        logger.debug("Cleanup slot claimed", data_type=data_type)

    def release_cleanup(self, data_type: str):
        with self._lock:
            self._active_cleanups.discard(data_type)
            self._stop_requests.discard(data_type)
        logger.debug("Cleanup slot released", data_type=data_type)

    def claim_maintenance(self, operation: str = "vacuum"):
        """Claim the global maintenance lock, or raise ConflictError."""
        with self._lock:
            if self._maintenance is not None:
                raise ConflictError(f"{self._maintenance} is already running")
            if self._active_cleanups:
                raise ConflictError(
                    f"Cannot run {operation} while cleanup is active for: "
                    f"{', '.join(sorted(self._active_cleanups))}"
                )
            self._maintenance = operation
        logger.debug("Maintenance lock claimed", operation=operation)

    def release_maintenance(self):
        with self._lock:
            self._maintenance = None
        logger.debug("Maintenance lock released")

    @contextmanager
    def cleanup_slot(self, data_type: str) -> Iterator[None]:
        self.claim_cleanup(data_type)
        try:
            yield
        finally:
            self.release_cleanup(data_type)

    @contextmanager
    def maintenance_slot(self, operation: str = "vacuum") -> Iterator[None]:
        self.claim_maintenance(operation)
        try:
            yield
        finally:
            self.release_maintenance()

    def is_cleaning(self, data_type: str) -> bool:
        with self._lock:
            return data_type in self._active_cleanups

    def maintenance_running(self) -> Optional[str]:
        with self._lock:
            return self._maintenance

    # Cooperative cancellation

    def request_stop(self, data_type: str) -> bool:
        """Ask a running cleanup to stop after its current batch."""
        with self._lock:
            if data_type not in self._active_cleanups:
                return False
            self._stop_requests.add(data_type)
        logger.info("Stop requested", data_type=data_type)
        return True

    def stop_requested(self, data_type: str) -> bool:
        with self._lock:
            return data_type in self._stop_requests

    # Job records

    def create_job(self, data_type: str, operation_type: OperationType) -> CleanupJob:
        job = CleanupJob(
            id=uuid.uuid4().hex,
            data_type=data_type,
            operation_type=operation_type,
            status=JobStatus.QUEUED,
            enqueued_at=self.clock(),
        )
        with self._lock:
            self._jobs[job.id] = job
            self._trim_finished()
        return job

    def mark_running(self, job_id: str) -> CleanupJob:
        with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.RUNNING
            job.started_at = self.clock()
            return job

    def mark_finished(self, job_id: str, status: JobStatus, operation_id: Optional[int] = None,
                      error_message: Optional[str] = None) -> CleanupJob:
        if not status.is_terminal:
            raise ValueError(f"Job cannot finish with non-terminal status {status.value}")
        with self._lock:
            job = self._jobs[job_id]
            job.status = status
            job.finished_at = self.clock()
            job.operation_id = operation_id
            job.error_message = error_message
            return job

    def get_job(self, job_id: str) -> Optional[CleanupJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> List[CleanupJob]:
        with self._lock:
            return list(self._jobs.values())

    def pending_data_types(self) -> List[str]:
        """Data types with a queued or running job, or a cleanup holding its slot."""
        with self._lock:
            pending = {
                job.data_type for job in self._jobs.values() if not job.status.is_terminal
            }
            pending.update(self._active_cleanups)
            return sorted(pending)

    def has_pending(self, data_type: str) -> bool:
        return data_type in self.pending_data_types()

    def _trim_finished(self):
        finished = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        for job_id in finished[:max(0, len(finished) - MAX_FINISHED_JOBS)]:
            del self._jobs[job_id]

    def snapshot(self) -> Dict[str, object]:
        """Counts used by status output and metrics."""
        with self._lock:
            statuses: Dict[str, int] = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                statuses[job.status.value] += 1
            return {
                'active_cleanups': sorted(self._active_cleanups),
                'maintenance': self._maintenance,
                'jobs_by_status': statuses,
            }
