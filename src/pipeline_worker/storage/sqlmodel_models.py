"""SQLModel ORM tables for the worker store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    github_repo: str | None = None
    github_installation_id: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectCredential(SQLModel, table=True):
    __tablename__ = "credentials"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "type", name="uq_credentials_project_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str
    encrypted_value: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PipelineRun(SQLModel, table=True):
    __tablename__ = "pipeline_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_pipeline_runs_issue", "project_id", "github_issue_number", "started_at"),
    )

    run_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    github_issue_number: int
    status: str = Field(default="running")
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedJob(SQLModel, table=True):
    __tablename__ = "job_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_queue_claim", "status", "created_at"),
        Index("idx_job_queue_locked", "status", "locked_at"),
    )

    id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_type: str | None = None
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    github_issue_number: int | None = None
    issue_title: str | None = None
    issue_body: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("job_queue.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
