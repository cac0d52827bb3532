"""Poll loop that reaps, claims and executes queued pipeline jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pipeline_worker.jobs.models import JobView
from pipeline_worker.jobs.outcome import MAX_ATTEMPTS, FailureOutcome, record_job_failure
from pipeline_worker.jobs.reaper import ReapSummary
from pipeline_worker.jobs.repository import JobQueueRepository

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """What the poll loop is currently doing."""

    POLLING = "polling"
    PROCESSING_JOB = "processing_job"
    SLEEPING = "sleeping"
    BACKING_OFF = "backing_off"


class Reaper(Protocol):
    def reap(self) -> ReapSummary: ...


class Dispatcher(Protocol):
    def dispatch(self, job: JobView) -> None: ...


class TokenRefresher(Protocol):
    def ensure_valid(self) -> bool: ...


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    cycles: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0
    errors: int = 0
    reaped: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.cycles += other.cycles
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls
        self.errors += other.errors
        self.reaped += other.reaped


def compute_backoff_seconds(
    consecutive_errors: int,
    *,
    base_seconds: float,
    max_seconds: float,
) -> float:
    """Exponential backoff: ``base * 2^(n-1)`` capped at ``max_seconds``."""

    if consecutive_errors <= 0:
        return base_seconds
    # Clamp the exponent; the cap applies long before 2**32.
    exponent = min(consecutive_errors - 1, 32)
    return min(base_seconds * (2**exponent), max_seconds)


class ManagedWorker:
    """Single-threaded consumer of the shared job queue.

    Each cycle recovers stale jobs, claims at most one pending job, refreshes
    the AI credential and dispatches the job. Failures of the job itself are
    recorded on the job; failures of the infrastructure (store, credential
    refresh) back the loop off without touching any attempt budget.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobQueueRepository,
        reaper: Reaper,
        dispatcher: Dispatcher,
        credential_manager: TokenRefresher,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        max_backoff_seconds: float = 60.0,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.repository = repository
        self.reaper = reaper
        self.dispatcher = dispatcher
        self.credential_manager = credential_manager
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.max_attempts = max_attempts
        self.state = WorkerState.POLLING
        self.consecutive_errors = 0
        self._sleep = sleep or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Run one poll cycle without sleeping afterwards."""

        summary = WorkerRunSummary(cycles=1)
        self.state = WorkerState.POLLING
        try:
            reaped = self.reaper.reap()
            summary.reaped = reaped.reset + reaped.failed
            if reaped.total:
                logger.info(
                    "[%s] Reaper: %d reset, %d failed, %d skipped, %d errors",
                    self.worker_id,
                    reaped.reset,
                    reaped.failed,
                    reaped.skipped,
                    reaped.errors,
                )

            job = self.repository.claim_next_job(worker_id=self.worker_id)
            self.consecutive_errors = 0
            if job is None:
                summary.idle_polls = 1
                return summary

            if not self.credential_manager.ensure_valid():
                logger.warning(
                    "[%s] Worker credential is not fresh, dispatching job %s anyway",
                    self.worker_id,
                    job.job_id,
                )
        except Exception:
            self.consecutive_errors += 1
            summary.errors = 1
            logger.exception(
                "[%s] Poll cycle failed (consecutive errors: %d)",
                self.worker_id,
                self.consecutive_errors,
            )
            return summary

        self._process_job(job=job, summary=summary)
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> WorkerRunSummary:
        """Poll until a stop signal arrives or ``max_cycles`` cycles ran."""

        aggregate = WorkerRunSummary()
        logger.info("[%s] Worker started", self.worker_id)
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    break
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                if summary.errors:
                    delay = self.next_backoff_seconds()
                    self.state = WorkerState.BACKING_OFF
                    logger.info("[%s] Backing off for %.1fs", self.worker_id, delay)
                    self._sleep(delay)
                elif summary.processed == 0:
                    self.state = WorkerState.SLEEPING
                    self._sleep(self.poll_interval_seconds)

        if self._stop_requested:
            logger.info(
                "[%s] Worker stopped (%s)",
                self.worker_id,
                self._stop_signal_name or "stop requested",
            )
        return aggregate

    def next_backoff_seconds(self) -> float:
        return compute_backoff_seconds(
            self.consecutive_errors,
            base_seconds=self.poll_interval_seconds,
            max_seconds=self.max_backoff_seconds,
        )

    def request_stop(self, *, signal_name: str = "requested") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _process_job(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        self.state = WorkerState.PROCESSING_JOB
        summary.processed = 1
        logger.info(
            "[%s] Processing job %s (%s, attempt %d)",
            self.worker_id,
            job.job_id,
            job.job_type.value,
            job.attempt_count,
        )
        try:
            self.dispatcher.dispatch(job)
        except Exception as error:
            logger.error("[%s] Job %s failed: %s", self.worker_id, job.job_id, error)
            decision = record_job_failure(
                store=self.repository,
                job=job,
                error=error,
                worker_id=self.worker_id,
                max_attempts=self.max_attempts,
            )
            if decision is not None and decision.outcome == FailureOutcome.TRANSIENT:
                summary.retried = 1
            else:
                summary.failed = 1
            return

        # A store error here is infrastructure, not a job failure; the job
        # stays processing until the reaper picks it up.
        try:
            done = self.repository.mark_done(job_id=job.job_id, worker_id=self.worker_id)
        except Exception:
            self.consecutive_errors += 1
            summary.errors = 1
            logger.exception(
                "[%s] Could not mark job %s done (consecutive errors: %d)",
                self.worker_id,
                job.job_id,
                self.consecutive_errors,
            )
            return
        if done:
            logger.info("[%s] Job %s completed", self.worker_id, job.job_id)
        else:
            logger.warning(
                "[%s] Job %s finished but was no longer held by this worker",
                self.worker_id,
                job.job_id,
            )
        summary.succeeded = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("[%s] %s received, stopping after this cycle", self.worker_id, name)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
