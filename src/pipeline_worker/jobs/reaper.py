"""Recovery of jobs whose lock outlived the stale threshold."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from pipeline_worker.jobs.models import JobView
from pipeline_worker.jobs.outcome import MAX_ATTEMPTS
from pipeline_worker.storage.common import utc_now

logger = logging.getLogger(__name__)

STALE_THRESHOLD = timedelta(minutes=30)


class StaleJobStore(Protocol):
    def list_stale_jobs(self, *, cutoff: datetime) -> list[JobView]: ...

    def mark_failed(
        self,
        *,
        job_id: str,
        reason: str,
        worker_id: str | None = None,
        event_type: str = "failed",
    ) -> bool: ...

    def mark_pending_for_retry(
        self,
        *,
        job_id: str,
        reason: str,
        worker_id: str | None = None,
        event_type: str = "retry_scheduled",
    ) -> bool: ...


@dataclass(slots=True)
class ReapSummary:
    """Per-pass reaper counters."""

    reset: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.reset + self.failed + self.skipped + self.errors


class StaleJobReaper:
    """Resolve stale ``processing`` jobs to pending-for-retry or failed.

    Writes are conditioned on the job still being ``processing``, so a job
    its owner finished between the scan and the write is skipped. Listing
    failures propagate; a failed write for one job does not stop the pass.
    """

    def __init__(
        self,
        *,
        store: StaleJobStore,
        stale_after: timedelta = STALE_THRESHOLD,
        max_attempts: int = MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.stale_after = stale_after
        self.max_attempts = max_attempts
        self._clock = clock

    def reap(self) -> ReapSummary:
        summary = ReapSummary()
        cutoff = self._clock() - self.stale_after
        for job in self.store.list_stale_jobs(cutoff=cutoff):
            try:
                self._reap_one(job=job, summary=summary)
            except Exception:
                summary.errors += 1
                logger.exception("Failed to reap stale job %s", job.job_id)
        return summary

    def _reap_one(self, *, job: JobView, summary: ReapSummary) -> None:
        if job.attempt_count >= self.max_attempts:
            reason = (
                f"Stale after {self.max_attempts} attempts "
                f"(locked_at exceeded {self._threshold_minutes()}m)"
            )
            if self.store.mark_failed(job_id=job.job_id, reason=reason, event_type="reaped_failed"):
                summary.failed += 1
                logger.warning("Reaped stale job %s -> failed (exhausted)", job.job_id)
                return
        else:
            reason = f"Reset by reaper (attempt {job.attempt_count}/{self.max_attempts})"
            if self.store.mark_pending_for_retry(
                job_id=job.job_id,
                reason=reason,
                event_type="reaped_pending",
            ):
                summary.reset += 1
                logger.warning(
                    "Reaped stale job %s -> pending (attempt %d/%d)",
                    job.job_id,
                    job.attempt_count,
                    self.max_attempts,
                )
                return
        summary.skipped += 1
        logger.info("Stale job %s left processing before it could be reaped", job.job_id)

    def _threshold_minutes(self) -> int:
        return int(self.stale_after.total_seconds() // 60)
