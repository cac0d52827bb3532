"""Controllers for project seeding CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pipeline_worker.config import Settings
from pipeline_worker.projects.models import CredentialType, ProjectCreate
from pipeline_worker.projects.repository import ProjectRepository


@dataclass(slots=True)
class AddProjectCommand:
    """CLI input for project registration."""

    db_path: Path | None
    name: str
    github_repo: str | None
    installation_id: int | None
    project_id: str | None


@dataclass(slots=True)
class SetCredentialCommand:
    """CLI input for storing a project AI credential."""

    db_path: Path | None
    project_id: str
    credential_type: str
    value: str


@dataclass(slots=True)
class StartRunCommand:
    """CLI input for recording a pipeline run."""

    db_path: Path | None
    project_id: str
    issue_number: int


class ProjectsCliController:
    """Seeds the project records the dispatcher reads."""

    def add_project(self, command: AddProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.create_project(
                ProjectCreate(
                    name=command.name,
                    github_repo=command.github_repo,
                    github_installation_id=command.installation_id,
                    project_id=command.project_id,
                ),
            )
        return [
            "Project added: "
            f"project_id={project.project_id} name={project.name} "
            f"repo={project.github_repo or '-'} "
            f"installation={project.github_installation_id or '-'}",
        ]

    def set_credential(self, command: SetCredentialCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        credential_type = CredentialType(command.credential_type.strip().lower())
        with _repository(settings) as repository:
            if repository.get_project(project_id=command.project_id) is None:
                raise ValueError(f"Project {command.project_id} not found")
            repository.upsert_credential(
                project_id=command.project_id,
                credential_type=credential_type,
                value=command.value,
            )
        return [f"Credential {credential_type.value} stored for project {command.project_id}"]

    def start_run(self, command: StartRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if repository.get_project(project_id=command.project_id) is None:
                raise ValueError(f"Project {command.project_id} not found")
            run = repository.start_pipeline_run(
                project_id=command.project_id,
                github_issue_number=command.issue_number,
            )
        return [
            f"Pipeline run started: run_id={run.run_id} project_id={run.project_id} "
            f"issue=#{run.github_issue_number}",
        ]


@contextmanager
def _repository(settings: Settings) -> Iterator[ProjectRepository]:
    repository = ProjectRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.worker.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
