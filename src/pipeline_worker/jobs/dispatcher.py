"""Route claimed jobs to their execution path and assemble the inputs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from pipeline_worker.jobs.backend import (
    AgentCredentials,
    GitHubAccess,
    JobRunner,
    ManagedJobRequest,
    SetupJobRequest,
)
from pipeline_worker.jobs.models import JobType, JobView
from pipeline_worker.projects.models import (
    CredentialType,
    CredentialView,
    ProjectView,
)

logger = logging.getLogger(__name__)


class JobConfigurationError(RuntimeError):
    """A job cannot run because project or worker configuration is missing."""


class ProjectStore(Protocol):
    def get_project(self, *, project_id: str) -> ProjectView | None: ...

    def set_github_repo(self, *, project_id: str, github_repo: str) -> None: ...

    def find_credential(self, *, project_id: str) -> CredentialView | None: ...

    def find_latest_run_id(self, *, project_id: str, github_issue_number: int) -> str | None: ...


class GitHubAppTokens(Protocol):
    def is_configured(self) -> bool: ...

    def get_installation_token(self, installation_id: int) -> str: ...

    def get_installation_first_repo(self, installation_id: int) -> str | None: ...


class JobDispatcher:
    """Resolve credentials, repository access and run id, then execute the job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        projects: ProjectStore,
        github_app: GitHubAppTokens,
        runner: JobRunner,
        system_credentials: Callable[[], AgentCredentials | None],
        fallback_github_token: str | None,
    ) -> None:
        self.projects = projects
        self.github_app = github_app
        self.runner = runner
        self.system_credentials = system_credentials
        self.fallback_github_token = fallback_github_token

    def dispatch(self, job: JobView) -> None:
        """Execute ``job``; any exception means the job failed."""

        if job.job_type == JobType.SETUP:
            self._run_setup(job)
        else:
            self._run_implement(job)

    def resolve_credentials(self, project_id: str) -> AgentCredentials:
        credential = self.projects.find_credential(project_id=project_id)
        if credential is not None:
            return AgentCredentials(
                claude_credentials=(
                    credential.value if credential.type == CredentialType.CLAUDE_OAUTH else None
                ),
                anthropic_api_key=(
                    credential.value
                    if credential.type == CredentialType.ANTHROPIC_API_KEY
                    else None
                ),
                source="project",
            )

        system = self.system_credentials()
        if system is None or not (system.claude_credentials or system.anthropic_api_key):
            raise JobConfigurationError(
                f"No credentials for project {project_id} and no system credential configured",
            )
        logger.info("No project credential for %s, using system credential", project_id)
        return system

    def resolve_github_access(self, project: ProjectView) -> GitHubAccess:
        if project.github_installation_id and self.github_app.is_configured():
            token = self.github_app.get_installation_token(project.github_installation_id)
            return GitHubAccess(token=token, repo=project.github_repo)

        if not self.fallback_github_token:
            raise JobConfigurationError("GITHUB_TOKEN must be set on the worker")
        return GitHubAccess(token=self.fallback_github_token, repo=project.github_repo)

    def resolve_run_id(self, *, project_id: str, issue_number: int) -> str:
        run_id = self.projects.find_latest_run_id(
            project_id=project_id,
            github_issue_number=issue_number,
        )
        if run_id is None:
            raise JobConfigurationError(f"No pipeline run found for issue #{issue_number}")
        return run_id

    def _run_implement(self, job: JobView) -> None:
        if job.github_issue_number is None:
            raise JobConfigurationError(f"Implement job {job.job_id} has no GitHub issue number")

        credentials = self.resolve_credentials(job.project_id)
        project = self._require_project(job.project_id)
        github = self.resolve_github_access(project)
        run_id = self.resolve_run_id(
            project_id=job.project_id,
            issue_number=job.github_issue_number,
        )
        self.runner.run_managed_job(
            ManagedJobRequest(
                job_id=job.job_id,
                project_id=job.project_id,
                issue_number=job.github_issue_number,
                issue_title=job.issue_title or "",
                issue_body=job.issue_body or "",
                github=github,
                credentials=credentials,
                run_id=run_id,
            ),
        )

    def _run_setup(self, job: JobView) -> None:
        project = self._require_project(job.project_id)
        installation_id = project.github_installation_id
        if not installation_id:
            raise JobConfigurationError(
                "Setup job requires github_installation_id on the project",
            )

        github_repo = project.github_repo
        if not github_repo:
            logger.info(
                "github_repo missing for project %s, auto-detecting from installation %s",
                project.project_id,
                installation_id,
            )
            github_repo = self.github_app.get_installation_first_repo(installation_id)
            if not github_repo:
                raise JobConfigurationError(
                    "Could not detect GitHub repo from installation. "
                    "Please reconnect the GitHub App.",
                )
            self.projects.set_github_repo(project_id=project.project_id, github_repo=github_repo)
            logger.info("Auto-detected repo %s for project %s", github_repo, project.project_id)

        self.runner.run_setup_job(
            SetupJobRequest(
                job_id=job.job_id,
                project_id=job.project_id,
                github_repo=github_repo,
                installation_id=installation_id,
            ),
        )

    def _require_project(self, project_id: str) -> ProjectView:
        project = self.projects.get_project(project_id=project_id)
        if project is None:
            raise JobConfigurationError(f"Project {project_id} not found")
        return project
