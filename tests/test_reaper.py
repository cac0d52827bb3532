from __future__ import annotations

from datetime import datetime, timedelta

import allure

from conftest import enqueue_implement, update_job_row
from pipeline_worker.jobs.models import JobStatus, JobView
from pipeline_worker.jobs.reaper import StaleJobReaper
from pipeline_worker.jobs.repository import JobQueueRepository
from pipeline_worker.storage.common import to_db_datetime, utc_now

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Stale Job Recovery"),
]


def _stale_job(
    repository: JobQueueRepository,
    *,
    project_id: str,
    issue_number: int,
    attempt_count: int,
) -> JobView:
    queued = enqueue_implement(repository, project_id=project_id, issue_number=issue_number)
    update_job_row(repository, job_id=queued.job_id, attempt_count=attempt_count - 1)
    claimed = repository.claim_next_job(worker_id="worker-dead")
    assert claimed is not None
    assert claimed.job_id == queued.job_id
    update_job_row(
        repository,
        job_id=queued.job_id,
        locked_at=to_db_datetime(utc_now() - timedelta(minutes=45)),
    )
    return claimed


def test_reaper_resets_stale_job_with_budget_left(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=1)

    summary = StaleJobReaper(store=job_repository).reap()

    assert (summary.reset, summary.failed, summary.skipped, summary.errors) == (1, 0, 0, 0)
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.worker_id is None
    assert stored.locked_at is None
    assert stored.last_error == "Reset by reaper (attempt 1/3)"
    assert stored.attempt_count == 1


def test_reaper_fails_stale_job_with_exhausted_budget(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=3)

    summary = StaleJobReaper(store=job_repository).reap()

    assert summary.failed == 1
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.last_error == "Stale after 3 attempts (locked_at exceeded 30m)"
    assert stored.completed_at is not None

    details = job_repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.events[-1].event_type == "reaped_failed"


def test_reaper_ignores_fresh_locks(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    enqueue_implement(job_repository, project_id=project_id)
    claimed = job_repository.claim_next_job(worker_id="worker-live")
    assert claimed is not None

    summary = StaleJobReaper(store=job_repository).reap()

    assert summary.total == 0
    stored = job_repository.get_job(job_id=claimed.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PROCESSING


def test_reaper_second_pass_is_a_no_op(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=2)
    reaper = StaleJobReaper(store=job_repository)

    first = reaper.reap()
    second = reaper.reap()

    assert first.reset == 1
    assert second.total == 0


def test_reaper_skips_job_finished_between_scan_and_write(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=1)

    class _RacingStore:
        def list_stale_jobs(self, *, cutoff: datetime) -> list[JobView]:
            stale = job_repository.list_stale_jobs(cutoff=cutoff)
            job_repository.mark_done(job_id=job.job_id, worker_id="worker-dead")
            return stale

        def mark_failed(self, **kwargs: object) -> bool:
            return job_repository.mark_failed(**kwargs)

        def mark_pending_for_retry(self, **kwargs: object) -> bool:
            return job_repository.mark_pending_for_retry(**kwargs)

    summary = StaleJobReaper(store=_RacingStore()).reap()

    assert (summary.reset, summary.skipped) == (0, 1)
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE


def test_reaper_isolates_per_job_write_errors(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    first = _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=1)
    second = _stale_job(job_repository, project_id=project_id, issue_number=2, attempt_count=1)

    class _FlakyStore:
        def list_stale_jobs(self, *, cutoff: datetime) -> list[JobView]:
            return job_repository.list_stale_jobs(cutoff=cutoff)

        def mark_failed(self, **kwargs: object) -> bool:
            return job_repository.mark_failed(**kwargs)

        def mark_pending_for_retry(self, **kwargs: object) -> bool:
            if kwargs["job_id"] == first.job_id:
                raise RuntimeError("database is locked")
            return job_repository.mark_pending_for_retry(**kwargs)

    summary = StaleJobReaper(store=_FlakyStore()).reap()

    assert (summary.reset, summary.errors) == (1, 1)
    stored = job_repository.get_job(job_id=second.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING


def test_reaper_threshold_uses_injected_clock(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    enqueue_implement(job_repository, project_id=project_id)
    claimed = job_repository.claim_next_job(worker_id="worker-a")
    assert claimed is not None

    reaper = StaleJobReaper(
        store=job_repository,
        stale_after=timedelta(minutes=10),
        clock=lambda: utc_now() + timedelta(minutes=11),
    )
    summary = reaper.reap()

    assert summary.reset == 1
    stored = job_repository.get_job(job_id=claimed.job_id)
    assert stored is not None
    assert stored.last_error == "Reset by reaper (attempt 1/3)"


def test_reaper_recovers_job_with_unknown_type(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = _stale_job(job_repository, project_id=project_id, issue_number=1, attempt_count=1)
    update_job_row(job_repository, job_id=job.job_id, job_type="review")

    summary = StaleJobReaper(store=job_repository).reap()

    assert (summary.reset, summary.errors) == (1, 0)
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
