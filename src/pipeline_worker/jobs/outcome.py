"""Failure classification and retry policy for dispatched jobs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pipeline_worker.jobs.models import JobView

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

_AUTH_FAILURE_PATTERN = re.compile(
    r"authentication_error|invalid_grant|\b401\b|oauth",
    re.IGNORECASE,
)


class FailureOutcome(str, Enum):
    """Where a failed job goes next."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class FailureDecision:
    """Classifier verdict plus the ``last_error`` text to persist."""

    outcome: FailureOutcome
    last_error: str
    matched_pattern: str | None = None

    @property
    def retries(self) -> bool:
        return self.outcome == FailureOutcome.TRANSIENT


class FailureSink(Protocol):
    """Store operations needed to record an outcome."""

    def mark_failed(self, *, job_id: str, reason: str, worker_id: str | None = None) -> bool: ...

    def mark_pending_for_retry(
        self,
        *,
        job_id: str,
        reason: str,
        worker_id: str | None = None,
    ) -> bool: ...


def classify_job_failure(
    *,
    message: str,
    attempt_count: int,
    max_attempts: int = MAX_ATTEMPTS,
) -> FailureDecision:
    """Decide permanent / transient / exhausted for one failed execution.

    Authentication failures cannot succeed on retry and skip the attempt
    budget entirely. ``attempt_count`` is read, never changed.
    """

    match = _AUTH_FAILURE_PATTERN.search(message)
    if match is not None:
        return FailureDecision(
            outcome=FailureOutcome.PERMANENT,
            last_error=f"OAuth error (no retry): {message}",
            matched_pattern=match.group(0),
        )
    if attempt_count + 1 < max_attempts:
        return FailureDecision(outcome=FailureOutcome.TRANSIENT, last_error=message)
    return FailureDecision(
        outcome=FailureOutcome.EXHAUSTED,
        last_error=f"Failed after {max_attempts} attempts: {message}",
    )


def record_job_failure(
    *,
    store: FailureSink,
    job: JobView,
    error: BaseException,
    worker_id: str | None = None,
    max_attempts: int = MAX_ATTEMPTS,
) -> FailureDecision | None:
    """Classify ``error`` and persist the outcome.

    Returns None when the bookkeeping write itself failed; that error is
    logged and dropped, leaving the job to the stale reaper.
    """

    message = str(error) or error.__class__.__name__
    decision = classify_job_failure(
        message=message,
        attempt_count=job.attempt_count,
        max_attempts=max_attempts,
    )
    try:
        if decision.retries:
            applied = store.mark_pending_for_retry(
                job_id=job.job_id,
                reason=decision.last_error,
                worker_id=worker_id,
            )
        else:
            applied = store.mark_failed(
                job_id=job.job_id,
                reason=decision.last_error,
                worker_id=worker_id,
            )
    except Exception:
        logger.exception("Failed to update job %s status", job.job_id)
        return None

    if not applied:
        logger.warning(
            "Job %s was no longer held by this worker; %s outcome not recorded",
            job.job_id,
            decision.outcome.value,
        )
    elif decision.retries:
        logger.info("Job %s reset to pending for retry", job.job_id)
    else:
        logger.info("Job %s marked failed (%s)", job.job_id, decision.outcome.value)
    return decision
