"""Domain models for the pipeline job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.DONE, JobStatus.FAILED}


class JobType(str, Enum):
    """Execution path selected by the dispatcher."""

    IMPLEMENT = "implement"
    SETUP = "setup"

    @classmethod
    def from_db(cls, value: str | None) -> JobType:
        """Only an explicit ``setup`` selects setup; anything else is implement."""

        if value is not None and value.strip().lower() == cls.SETUP.value:
            return cls.SETUP
        return cls.IMPLEMENT


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a pipeline job."""

    project_id: str
    job_type: JobType | None = None
    github_issue_number: int | None = None
    issue_title: str | None = None
    issue_body: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for worker logic and CLI."""

    job_id: str
    project_id: str
    job_type: JobType
    status: JobStatus
    attempt_count: int
    worker_id: str | None
    locked_at: datetime | None
    last_error: str | None
    completed_at: datetime | None
    github_issue_number: int | None
    issue_title: str | None
    issue_body: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]
