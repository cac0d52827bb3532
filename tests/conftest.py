"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from pipeline_worker.jobs.models import JobCreate, JobStatus, JobType, JobView
from pipeline_worker.jobs.repository import JobQueueRepository
from pipeline_worker.projects.models import ProjectCreate
from pipeline_worker.projects.repository import ProjectRepository
from pipeline_worker.storage.common import utc_now
from pipeline_worker.storage.sqlmodel_models import QueuedJob


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pipeline-worker.db"


@pytest.fixture()
def job_repository(db_path: Path) -> Iterator[JobQueueRepository]:
    repository = JobQueueRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def project_repository(db_path: Path) -> Iterator[ProjectRepository]:
    repository = ProjectRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host credentials and tokens out of every test."""

    for name in (
        "CLAUDE_CREDENTIALS_JSON",
        "ANTHROPIC_API_KEY",
        "GITHUB_TOKEN",
        "GITHUB_APP_ID",
        "GITHUB_APP_PRIVATE_KEY",
        "GITHUB_APP_PRIVATE_KEY_PATH",
        "PIPELINE_WORKER_ID",
        "PIPELINE_WORKER_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(
        "PIPELINE_WORKER_OAUTH_CREDENTIALS_PATH",
        str(tmp_path / "home" / ".claude" / ".credentials.json"),
    )
    monkeypatch.setenv("PIPELINE_WORKER_WORKDIR", str(tmp_path / "work"))


def seed_project(
    repository: ProjectRepository,
    *,
    project_id: str = "proj-1",
    github_repo: str | None = "acme/widgets",
    installation_id: int | None = None,
) -> str:
    project = repository.create_project(
        ProjectCreate(
            name=f"Project {project_id}",
            github_repo=github_repo,
            github_installation_id=installation_id,
            project_id=project_id,
        ),
    )
    return project.project_id


def enqueue_implement(
    repository: JobQueueRepository,
    *,
    project_id: str = "proj-1",
    issue_number: int = 42,
) -> JobView:
    return repository.enqueue_job(
        JobCreate(
            project_id=project_id,
            job_type=JobType.IMPLEMENT,
            github_issue_number=issue_number,
            issue_title="Add widgets",
            issue_body="Please add widgets.",
        ),
    )


@pytest.fixture()
def project_id(project_repository: ProjectRepository) -> str:
    return seed_project(project_repository)


def update_job_row(repository: JobQueueRepository, *, job_id: str, **values: object) -> None:
    """Write raw column values, e.g. to backdate a lock or preset an attempt count."""

    with Session(repository.engine) as session:
        session.exec(sa_update(QueuedJob).where(col(QueuedJob.id) == job_id).values(**values))
        session.commit()


def make_job_view(**overrides: Any) -> JobView:
    """In-memory processing job for tests that do not touch SQLite."""

    now = utc_now()
    values: dict[str, Any] = {
        "job_id": "job-1",
        "project_id": "proj-1",
        "job_type": JobType.IMPLEMENT,
        "status": JobStatus.PROCESSING,
        "attempt_count": 1,
        "worker_id": "worker-test",
        "locked_at": now,
        "last_error": None,
        "completed_at": None,
        "github_issue_number": 42,
        "issue_title": "Add widgets",
        "issue_body": "Please add widgets.",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return JobView(**values)
