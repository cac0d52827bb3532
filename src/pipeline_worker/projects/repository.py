"""Project, credential and pipeline-run persistence."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, select

from pipeline_worker.projects.models import (
    CredentialType,
    CredentialView,
    PipelineRunView,
    ProjectCreate,
    ProjectView,
)
from pipeline_worker.storage.alembic_runner import upgrade_head
from pipeline_worker.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pipeline_worker.storage.sqlmodel_models import PipelineRun, Project, ProjectCredential


class ProjectRepository:
    """Read side of project records plus the few writes the worker performs."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Project(
                project_id=payload.project_id or str(uuid4()),
                name=payload.name,
                github_repo=payload.github_repo,
                github_installation_id=payload.github_installation_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, *, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(Project.project_id == project_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_project_view(row)

    def set_github_repo(self, *, project_id: str, github_repo: str) -> None:
        """Persist an auto-detected repository on the project."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Project).where(Project.project_id == project_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Project {project_id} not found")
            row.github_repo = github_repo
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def upsert_credential(
        self,
        *,
        project_id: str,
        credential_type: CredentialType,
        value: str,
    ) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(ProjectCredential).where(
                    ProjectCredential.project_id == project_id,
                    ProjectCredential.type == credential_type.value,
                ),
            ).one_or_none()
            if row is None:
                row = ProjectCredential(
                    project_id=project_id,
                    type=credential_type.value,
                    encrypted_value=value,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.encrypted_value = value
                row.updated_at = now
            session.add(row)
            session.commit()

    def find_credential(self, *, project_id: str) -> CredentialView | None:
        """Return the preferred AI credential configured for the project."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProjectCredential).where(
                    ProjectCredential.project_id == project_id,
                    col(ProjectCredential.type).in_([kind.value for kind in CredentialType]),
                ),
            ).all()
        by_type = {row.type: row for row in rows}
        for kind in CredentialType:
            row = by_type.get(kind.value)
            if row is not None:
                return CredentialView(project_id=project_id, type=kind, value=row.encrypted_value)
        return None

    def start_pipeline_run(
        self,
        *,
        project_id: str,
        github_issue_number: int,
        started_at: datetime | None = None,
        run_id: str | None = None,
    ) -> PipelineRunView:
        with Session(self.engine) as session:
            row = PipelineRun(
                run_id=run_id or str(uuid4()),
                project_id=project_id,
                github_issue_number=github_issue_number,
                status="running",
                started_at=to_db_datetime(started_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return PipelineRunView(
                run_id=row.run_id,
                project_id=row.project_id,
                github_issue_number=row.github_issue_number,
                status=row.status,
                started_at=to_utc_aware_datetime(row.started_at),
            )

    def find_latest_run_id(self, *, project_id: str, github_issue_number: int) -> str | None:
        """Most recently started pipeline run for the project and issue."""

        with Session(self.engine) as session:
            row = session.exec(
                select(PipelineRun)
                .where(
                    PipelineRun.project_id == project_id,
                    PipelineRun.github_issue_number == github_issue_number,
                )
                .order_by(col(PipelineRun.started_at).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return row.run_id


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        github_repo=row.github_repo,
        github_installation_id=row.github_installation_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
