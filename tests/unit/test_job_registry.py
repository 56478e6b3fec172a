"""
Unit tests for the job registry and the error taxonomy.
"""

import pytest

from helpers import FakeClock
from retentiond.storage.retention_errors import (
    ConflictError, ErrorKind, EstimationError, ExecutionError, NotFoundError, RetentionError,
    ValidationError
)
from retentiond.storage.retention_jobs import MAX_FINISHED_JOBS, JobRegistry
from retentiond.storage.retention_models import JobStatus, OperationType


@pytest.fixture
def registry():
    return JobRegistry(FakeClock())


class TestLocks:

    def test_one_cleanup_per_data_type(self, registry):
        registry.claim_cleanup('alerts')

        with pytest.raises(ConflictError):
            registry.claim_cleanup('alerts')
        registry.claim_cleanup('login_attempts')

        assert registry.is_cleaning('alerts')
        registry.release_cleanup('alerts')
        assert not registry.is_cleaning('alerts')

    def test_maintenance_excludes_cleanups(self, registry):
        with registry.maintenance_slot('vacuum'):
            assert registry.maintenance_running() == 'vacuum'
            with pytest.raises(ConflictError):
                registry.claim_cleanup('alerts')
            with pytest.raises(ConflictError):
                registry.claim_maintenance('analyze')

        assert registry.maintenance_running() is None

    def test_cleanup_blocks_maintenance(self, registry):
        with registry.cleanup_slot('alerts'):
            with pytest.raises(ConflictError) as exc_info:
                registry.claim_maintenance()
            assert 'alerts' in exc_info.value.message
        registry.claim_maintenance()

    def test_slot_released_on_error(self, registry):
        with pytest.raises(RuntimeError):
            with registry.cleanup_slot('alerts'):
                raise RuntimeError("boom")
        assert not registry.is_cleaning('alerts')

    def test_stop_requests(self, registry):
        assert registry.request_stop('alerts') is False

        registry.claim_cleanup('alerts')
        assert registry.request_stop('alerts') is True
        assert registry.stop_requested('alerts')

        registry.release_cleanup('alerts')
        assert not registry.stop_requested('alerts')


class TestJobRecords:

    def test_lifecycle(self, registry):
        job = registry.create_job('alerts', OperationType.SCHEDULED)
        assert job.status == JobStatus.QUEUED
        assert registry.pending_data_types() == ['alerts']

        registry.mark_running(job.id)
        registry.clock.advance(seconds=30)
        finished = registry.mark_finished(job.id, JobStatus.COMPLETED, operation_id=7)

        assert finished.operation_id == 7
        assert (finished.finished_at - finished.started_at).total_seconds() == 30
        assert not registry.has_pending('alerts')
        assert registry.snapshot()['jobs_by_status']['completed'] == 1

    def test_cannot_finish_with_running_status(self, registry):
        job = registry.create_job('alerts', OperationType.MANUAL)
        with pytest.raises(ValueError):
            registry.mark_finished(job.id, JobStatus.RUNNING)

    def test_active_cleanup_counts_as_pending(self, registry):
        registry.claim_cleanup('alerts')
        assert registry.has_pending('alerts')

    def test_finished_jobs_are_trimmed(self, registry):
        for _ in range(MAX_FINISHED_JOBS + 5):
            job = registry.create_job('alerts', OperationType.MANUAL)
            registry.mark_finished(job.id, JobStatus.FAILED)
        queued = registry.create_job('alerts', OperationType.MANUAL)

        jobs = registry.jobs()
        assert len(jobs) <= MAX_FINISHED_JOBS + 1
        assert registry.get_job(queued.id) is not None


class TestErrors:

    @pytest.mark.parametrize('error,kind,retryable', [
        (ValidationError("bad"), ErrorKind.VALIDATION, False),
        (NotFoundError("missing"), ErrorKind.NOT_FOUND, False),
        (ConflictError("busy"), ErrorKind.CONFLICT, True),
        (ExecutionError("io"), ErrorKind.EXECUTION, True),
        (EstimationError("stats"), ErrorKind.ESTIMATION, True),
    ])
    def test_kinds(self, error, kind, retryable):
        assert isinstance(error, RetentionError)
        assert error.kind == kind
        assert error.retryable is retryable
        assert error.to_dict()['error'] == kind.value

    def test_validation_error_lists_message(self):
        assert ValidationError("bad input").errors == ["bad input"]
