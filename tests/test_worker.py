from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from conftest import enqueue_implement, update_job_row
from pipeline_worker.jobs.models import JobStatus, JobView
from pipeline_worker.jobs.reaper import ReapSummary, StaleJobReaper
from pipeline_worker.jobs.repository import JobQueueRepository
from pipeline_worker.jobs.worker import ManagedWorker, WorkerState, compute_backoff_seconds
from pipeline_worker.storage.common import to_db_datetime, utc_now

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Poll Loop"),
]


class _CallLog:
    def __init__(self) -> None:
        self.calls: list[str] = []


class _Reaper:
    def __init__(self, log: _CallLog, *, failures: int = 0) -> None:
        self.log = log
        self.failures = failures

    def reap(self) -> ReapSummary:
        self.log.calls.append("reap")
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return ReapSummary()


class _Dispatcher:
    def __init__(self, log: _CallLog, *, error: Exception | None = None) -> None:
        self.log = log
        self.error = error
        self.jobs: list[JobView] = []

    def dispatch(self, job: JobView) -> None:
        self.log.calls.append("dispatch")
        self.jobs.append(job)
        if self.error is not None:
            raise self.error


class _Credentials:
    def __init__(
        self,
        log: _CallLog,
        *,
        valid: bool = True,
        error: Exception | None = None,
    ) -> None:
        self.log = log
        self.valid = valid
        self.error = error

    def ensure_valid(self) -> bool:
        self.log.calls.append("ensure_valid")
        if self.error is not None:
            raise self.error
        return self.valid


class _SleepRecorder:
    """Records requested delays and stops the worker after ``limit`` sleeps."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.delays: list[float] = []
        self.worker: ManagedWorker | None = None

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if len(self.delays) >= self.limit and self.worker is not None:
            self.worker.request_stop()


def _worker(  # noqa: PLR0913
    repository: JobQueueRepository,
    *,
    log: _CallLog,
    reaper: object | None = None,
    dispatcher: _Dispatcher | None = None,
    credentials: _Credentials | None = None,
    sleep: _SleepRecorder | None = None,
) -> ManagedWorker:
    worker = ManagedWorker(
        repository=repository,
        reaper=reaper or _Reaper(log),
        dispatcher=dispatcher or _Dispatcher(log),
        credential_manager=credentials or _Credentials(log),
        worker_id="worker-test",
        poll_interval_seconds=5,
        max_backoff_seconds=60,
        sleep=sleep,
    )
    if sleep is not None:
        sleep.worker = worker
    return worker


@pytest.mark.parametrize(
    ("errors", "expected"),
    [(0, 5), (1, 5), (2, 10), (3, 20), (4, 40), (5, 60), (6, 60), (100, 60)],
)
def test_compute_backoff_seconds(errors: int, expected: float) -> None:
    assert compute_backoff_seconds(errors, base_seconds=5, max_seconds=60) == expected


def test_run_once_reaps_then_refreshes_before_dispatch(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    log = _CallLog()
    dispatcher = _Dispatcher(log)

    summary = _worker(job_repository, log=log, dispatcher=dispatcher).run_once()

    assert log.calls == ["reap", "ensure_valid", "dispatch"]
    assert (summary.processed, summary.succeeded) == (1, 1)
    assert dispatcher.jobs[0].job_id == job.job_id
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE


def test_run_once_idle_does_not_refresh(job_repository: JobQueueRepository) -> None:
    log = _CallLog()

    summary = _worker(job_repository, log=log).run_once()

    assert log.calls == ["reap"]
    assert summary.idle_polls == 1


def test_stale_credential_still_dispatches(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    enqueue_implement(job_repository, project_id=project_id)
    log = _CallLog()

    summary = _worker(
        job_repository,
        log=log,
        credentials=_Credentials(log, valid=False),
    ).run_once()

    assert "dispatch" in log.calls
    assert summary.succeeded == 1


def test_transient_failure_returns_job_to_queue(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    log = _CallLog()

    summary = _worker(
        job_repository,
        log=log,
        dispatcher=_Dispatcher(log, error=RuntimeError("Agent command exited with code 1")),
    ).run_once()

    assert summary.retried == 1
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.attempt_count == 1
    assert stored.last_error == "Agent command exited with code 1"


def test_auth_failure_is_permanent_and_keeps_attempt_count(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    update_job_row(job_repository, job_id=job.job_id, attempt_count=1)
    log = _CallLog()

    summary = _worker(
        job_repository,
        log=log,
        dispatcher=_Dispatcher(log, error=RuntimeError("Request failed: 401 Unauthorized")),
    ).run_once()

    assert summary.failed == 1
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.last_error == "OAuth error (no retry): Request failed: 401 Unauthorized"
    assert stored.completed_at is not None
    assert stored.attempt_count == 2


def test_refresh_crash_backs_off_without_consuming_attempt(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    log = _CallLog()
    worker = _worker(
        job_repository,
        log=log,
        credentials=_Credentials(log, error=RuntimeError("credential store unavailable")),
    )

    summary = worker.run_once()

    assert summary.errors == 1
    assert worker.consecutive_errors == 1
    assert "dispatch" not in log.calls
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PROCESSING
    assert stored.attempt_count == 1


def test_store_error_on_completion_backs_off_instead_of_failing_job(
    job_repository: JobQueueRepository,
    project_id: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    log = _CallLog()
    worker = _worker(job_repository, log=log)

    def _locked(**_: object) -> bool:
        raise RuntimeError("database is locked")

    monkeypatch.setattr(job_repository, "mark_done", _locked)
    summary = worker.run_once()

    assert log.calls == ["reap", "ensure_valid", "dispatch"]
    assert (summary.errors, summary.succeeded, summary.failed, summary.retried) == (1, 0, 0, 0)
    assert worker.consecutive_errors == 1
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PROCESSING
    assert stored.last_error is None


def test_backoff_grows_and_caps_on_consecutive_errors(
    job_repository: JobQueueRepository,
) -> None:
    log = _CallLog()
    sleep = _SleepRecorder(limit=7)
    worker = _worker(job_repository, log=log, reaper=_Reaper(log, failures=100), sleep=sleep)

    summary = worker.run_loop()

    assert sleep.delays == [5, 10, 20, 40, 60, 60, 60]
    assert summary.errors == 7
    assert worker.state == WorkerState.BACKING_OFF


def test_backoff_resets_after_successful_round_trip(
    job_repository: JobQueueRepository,
) -> None:
    log = _CallLog()
    sleep = _SleepRecorder(limit=5)
    worker = _worker(job_repository, log=log, reaper=_Reaper(log, failures=3), sleep=sleep)

    summary = worker.run_loop()

    assert sleep.delays == [5, 10, 20, 5, 5]
    assert worker.consecutive_errors == 0
    assert summary.errors == 3
    assert summary.idle_polls == 2


def test_loop_processes_queue_without_sleeping_between_jobs(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    first = enqueue_implement(job_repository, project_id=project_id, issue_number=1)
    second = enqueue_implement(job_repository, project_id=project_id, issue_number=2)
    log = _CallLog()
    sleep = _SleepRecorder(limit=1)

    summary = _worker(job_repository, log=log, sleep=sleep).run_loop()

    assert summary.succeeded == 2
    assert sleep.delays == [5]
    for job in (first, second):
        stored = job_repository.get_job(job_id=job.job_id)
        assert stored is not None
        assert stored.status == JobStatus.DONE


def test_max_cycles_bounds_the_loop(job_repository: JobQueueRepository) -> None:
    log = _CallLog()
    sleep = _SleepRecorder(limit=100)

    summary = _worker(job_repository, log=log, sleep=sleep).run_loop(max_cycles=3)

    assert summary.cycles == 3
    assert log.calls == ["reap", "reap", "reap"]
    assert sleep.delays == [5, 5]


def test_worker_recovers_stale_job_from_dead_worker(
    job_repository: JobQueueRepository,
    project_id: str,
) -> None:
    job = enqueue_implement(job_repository, project_id=project_id)
    job_repository.claim_next_job(worker_id="worker-dead")
    update_job_row(
        job_repository,
        job_id=job.job_id,
        locked_at=to_db_datetime(utc_now() - timedelta(hours=1)),
    )
    log = _CallLog()
    dispatcher = _Dispatcher(log)

    summary = _worker(
        job_repository,
        log=log,
        reaper=StaleJobReaper(store=job_repository),
        dispatcher=dispatcher,
    ).run_once()

    assert summary.reaped == 1
    assert summary.succeeded == 1
    stored = job_repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.DONE
    assert stored.attempt_count == 2
