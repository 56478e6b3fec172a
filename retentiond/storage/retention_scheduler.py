"""
Retention scheduler.

Decides which policies are due, queues cleanup jobs by priority (emergency,
then manual, then scheduled) and drains the queue with a single worker task so
the store only ever has one cleanup writer. A periodic loop snapshots usage
and enqueues due work every ``check_interval_minutes``.
"""

import asyncio
import calendar
import itertools
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog

from .retention_cleanup import CleanupEngine
from .retention_config import SchedulerSettings
from .retention_errors import ConflictError, ExecutionError, RetentionError
from .retention_jobs import JobRegistry
from .retention_models import (
    CleanupFrequency, CleanupJob, JobStatus, OperationStatus, OperationType, RetentionPolicy
)
from .retention_monitoring import UsageMetricsCollector
from .retention_policies import RetentionPolicyStore

logger = structlog.get_logger(__name__)

JOB_PRIORITIES = {
    OperationType.EMERGENCY: 0,
    OperationType.MANUAL: 1,
    OperationType.SCHEDULED: 2,
}


@dataclass
class SchedulerStatus:
    """Status information for the scheduler."""
    running: bool
    last_cycle: Optional[datetime]
    queued_jobs: int
    completed_jobs: int
    partial_jobs: int
    failed_jobs: int
    last_error: Optional[str]
    uptime_seconds: float


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_run(policy: RetentionPolicy) -> Optional[datetime]:
    """Earliest time the policy is due again; ``None`` means due now."""
    if policy.last_run is None:
        return None
    if policy.cleanup_frequency == CleanupFrequency.DAILY:
        return policy.last_run + timedelta(days=1)
    if policy.cleanup_frequency == CleanupFrequency.WEEKLY:
        return policy.last_run + timedelta(days=7)
    return add_months(policy.last_run, 1)


def is_due(policy: RetentionPolicy, now: datetime) -> bool:
    if not policy.is_enabled:
        return False
    due_at = next_run(policy)
    return due_at is None or now >= due_at


class JobScheduler:
    """Owns the job queue and the single cleanup worker."""

    def __init__(self, engine: CleanupEngine, policies: RetentionPolicyStore,
                 registry: JobRegistry, collector: Optional[UsageMetricsCollector] = None,
                 settings: Optional[SchedulerSettings] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.engine = engine
        self.policies = policies
        self.registry = registry
        self.collector = collector
        self.settings = settings or SchedulerSettings()
        self.clock = clock

        self._queue: "asyncio.PriorityQueue[Tuple[int, int, str]]" = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._worker: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._start_time: Optional[datetime] = None
        self._last_cycle: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._outcomes = {JobStatus.COMPLETED: 0, JobStatus.PARTIAL: 0, JobStatus.FAILED: 0}

    # Queueing

    def enqueue(self, data_type: str,
                operation_type: OperationType = OperationType.MANUAL) -> CleanupJob:
        """Queue a cleanup job; ConflictError if one is already queued or running."""
        if self.registry.has_pending(data_type):
            raise ConflictError(f"A cleanup job is already pending for {data_type}",
                                data_type=data_type)
        self.policies.get(data_type)

        job = self.registry.create_job(data_type, operation_type)
        self._queue.put_nowait((JOB_PRIORITIES[operation_type], next(self._sequence), job.id))
        logger.info("Cleanup job queued", job_id=job.id, data_type=data_type,
                    operation_type=operation_type.value)
        return job

    def request_emergency(self, data_type: str) -> CleanupJob:
        """Queue a cleanup ahead of every manual and scheduled job."""
        return self.enqueue(data_type, OperationType.EMERGENCY)

    def due_data_types(self) -> List[str]:
        now = self.clock()
        return [policy.data_type for policy in self.policies.list() if is_due(policy, now)]

    def schedule_due(self) -> List[str]:
        """Enqueue every due policy that has no job pending; returns the data types queued."""
        queued = []
        for data_type in self.due_data_types():
            if self.registry.has_pending(data_type):
                continue
            self.enqueue(data_type, OperationType.SCHEDULED)
            queued.append(data_type)
        if queued:
            logger.info("Due cleanups scheduled", data_types=queued)
        return queued

    def active_jobs(self) -> List[str]:
        """Data types with a queued or running cleanup."""
        return self.registry.pending_data_types()

    def jobs(self) -> List[CleanupJob]:
        return self.registry.jobs()

    # Worker

    async def run_job(self, job_id: str) -> CleanupJob:
        """Run one queued job to a terminal state."""
        job = self.registry.mark_running(job_id)
        force = job.operation_type == OperationType.EMERGENCY
        try:
            operation = await self.engine.execute(job.data_type, force=force,
                                                  operation_type=job.operation_type)
        except ExecutionError as e:
            partial = e.operation is not None and e.operation.status == OperationStatus.PARTIAL
            status = JobStatus.PARTIAL if partial else JobStatus.FAILED
            operation_id = e.operation.id if e.operation is not None else None
            job = self.registry.mark_finished(job_id, status, operation_id, e.message)
        except RetentionError as e:
            job = self.registry.mark_finished(job_id, JobStatus.FAILED, error_message=e.message)
        else:
            status = JobStatus.COMPLETED if operation.status == OperationStatus.SUCCESS else JobStatus.PARTIAL
            job = self.registry.mark_finished(job_id, status, operation.id, operation.error_message)

        if job.status in (JobStatus.COMPLETED, JobStatus.PARTIAL):
            self.policies.mark_last_run(job.data_type, job.started_at)
        else:
            self._last_error = job.error_message

        self._outcomes[job.status] += 1
        logger.info("Cleanup job finished", job_id=job.id, data_type=job.data_type,
                    status=job.status.value, error=job.error_message)
        return job

    async def _worker_loop(self):
        while True:
            _, _, job_id = await self._queue.get()
            try:
                await self.run_job(job_id)
            except Exception as e:
                logger.exception("Cleanup job crashed", job_id=job_id, error=str(e))
                self._last_error = str(e)
                job = self.registry.get_job(job_id)
                if job is not None and not job.status.is_terminal:
                    self.registry.mark_finished(job_id, JobStatus.FAILED, error_message=str(e))
                    self._outcomes[JobStatus.FAILED] += 1
            finally:
                self._queue.task_done()

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._worker_loop())

    async def drain(self):
        """Run queued jobs to completion (starts the worker if needed)."""
        self._ensure_worker()
        await self._queue.join()

    async def wait_idle(self):
        await self._queue.join()

    # Periodic loop

    async def run_cycle(self) -> List[str]:
        """One scheduler tick: snapshot usage, then enqueue due cleanups."""
        self._last_cycle = self.clock()
        if self.settings.snapshot_on_cycle and self.collector is not None:
            await self.collector.snapshot()
        return self.schedule_due()

    async def _scheduler_loop(self):
        interval = self.settings.check_interval_minutes * 60
        while self._running:
            try:
                await self.run_cycle()
            except (RetentionError, sqlite3.Error) as e:
                logger.error("Scheduler cycle failed", error=str(e))
                self._last_error = str(e)
            except Exception as e:
                logger.exception("Scheduler cycle crashed", error=str(e))
                self._last_error = str(e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def start(self):
        """Start the worker and, when enabled, the periodic loop."""
        if self._running:
            logger.warning("Retention scheduler is already running")
            return

        self._running = True
        self._start_time = self.clock()
        self._stop_event = asyncio.Event()
        self._ensure_worker()
        if self.settings.enabled:
            self._loop_task = asyncio.create_task(self._scheduler_loop())
            logger.info("Retention scheduler started",
                        check_interval_minutes=self.settings.check_interval_minutes)
        else:
            logger.info("Retention scheduler loop is disabled; worker only")

    async def stop(self):
        """Stop the loop, let the running job finish and drop queued jobs."""
        if not self._running and self._worker is None and self._queue.empty():
            return
        logger.info("Stopping retention scheduler")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        dropped = 0
        while not self._queue.empty():
            _, _, job_id = self._queue.get_nowait()
            job = self.registry.get_job(job_id)
            if job is not None and job.status == JobStatus.QUEUED:
                self.registry.mark_finished(job_id, JobStatus.FAILED,
                                            error_message="Scheduler stopped before the job ran")
                dropped += 1
            self._queue.task_done()

        # The worker is only ever cancelled while it waits for the next job
        await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("Retention scheduler stopped", dropped_jobs=dropped)

    def get_status(self) -> SchedulerStatus:
        uptime = 0.0
        if self._start_time and self._running:
            uptime = (self.clock() - self._start_time).total_seconds()
        return SchedulerStatus(
            running=self._running,
            last_cycle=self._last_cycle,
            queued_jobs=self._queue.qsize(),
            completed_jobs=self._outcomes[JobStatus.COMPLETED],
            partial_jobs=self._outcomes[JobStatus.PARTIAL],
            failed_jobs=self._outcomes[JobStatus.FAILED],
            last_error=self._last_error,
            uptime_seconds=uptime,
        )
