"""Persistent queue repository for pipeline jobs."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pipeline_worker.jobs.models import (
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobType,
    JobView,
)
from pipeline_worker.storage.alembic_runner import upgrade_head
from pipeline_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from pipeline_worker.storage.sqlmodel_models import JobEvent, QueuedJob


class JobQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status write after the claim is a compare-and-swap on the current
    status: a write whose expectation no longer holds returns ``False`` and
    leaves the row untouched.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = QueuedJob(
                id=job_id,
                project_id=payload.project_id,
                job_type=payload.job_type.value if payload.job_type is not None else None,
                status=JobStatus.PENDING.value,
                attempt_count=0,
                github_issue_number=payload.github_issue_number,
                issue_title=payload.issue_title,
                issue_body=payload.issue_body,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Events reference the job row; insert it first.
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": JobType.from_db(row.job_type).value,
                    "github_issue_number": payload.github_issue_number,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the oldest pending job and increment its attempt count."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueuedJob)
                    .where(QueuedJob.status == JobStatus.PENDING.value)
                    .order_by(col(QueuedJob.created_at).asc(), col(QueuedJob.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedJob)
                    .where(
                        col(QueuedJob.id) == candidate.id,
                        col(QueuedJob.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempt_count=col(QueuedJob.attempt_count) + 1,
                        worker_id=worker_id,
                        locked_at=to_db_datetime(now),
                        completed_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.expire_all()
                claimed = session.exec(
                    select(QueuedJob).where(QueuedJob.id == candidate.id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempt_count": claimed.attempt_count},
                )
                session.commit()
                session.refresh(claimed)
                return _to_job_view(claimed)

    def list_stale_jobs(self, *, cutoff: datetime) -> list[JobView]:
        """Processing jobs locked before the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueuedJob)
                .where(
                    QueuedJob.status == JobStatus.PROCESSING.value,
                    col(QueuedJob.locked_at).is_not(None),
                    col(QueuedJob.locked_at) < to_db_datetime(cutoff),
                )
                .order_by(col(QueuedJob.locked_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def mark_done(self, *, job_id: str, worker_id: str | None = None) -> bool:
        """Mark a processing job as done."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.DONE,
            values={"completed_at": to_db_datetime(now)},
            event_type="done",
            details={},
        )

    def mark_failed(
        self,
        *,
        job_id: str,
        reason: str,
        worker_id: str | None = None,
        event_type: str = "failed",
    ) -> bool:
        """Mark a processing job as permanently failed."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.FAILED,
            values={"last_error": reason, "completed_at": to_db_datetime(now)},
            event_type=event_type,
            details={"last_error": reason},
        )

    def mark_pending_for_retry(
        self,
        *,
        job_id: str,
        reason: str,
        worker_id: str | None = None,
        event_type: str = "retry_scheduled",
    ) -> bool:
        """Release a processing job back to the queue with its lock cleared."""

        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            status_to=JobStatus.PENDING,
            values={"last_error": reason, "worker_id": None, "locked_at": None},
            event_type=event_type,
            details={"last_error": reason},
        )

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueuedJob).where(QueuedJob.id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(QueuedJob).order_by(col(QueuedJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(QueuedJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(QueuedJob).where(QueuedJob.id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            view = _to_job_view(job)

        events: list[JobEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=view, events=events)

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str | None,
        status_to: JobStatus,
        values: dict[str, object],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        now = utc_now()
        conditions = [
            col(QueuedJob.id) == job_id,
            col(QueuedJob.status) == JobStatus.PROCESSING.value,
        ]
        if worker_id is not None:
            conditions.append(col(QueuedJob.worker_id) == worker_id)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedJob)
                .where(*conditions)
                .values(status=status_to.value, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.PROCESSING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_job_view(row: QueuedJob) -> JobView:
    return JobView(
        job_id=row.id,
        project_id=row.project_id,
        job_type=JobType.from_db(row.job_type),
        status=JobStatus(row.status),
        attempt_count=row.attempt_count,
        worker_id=row.worker_id,
        locked_at=to_optional_utc(row.locked_at),
        last_error=row.last_error,
        completed_at=to_optional_utc(row.completed_at),
        github_issue_number=row.github_issue_number,
        issue_title=row.issue_title,
        issue_body=row.issue_body,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
