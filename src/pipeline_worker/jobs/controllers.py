"""Controllers for worker, queue and credential CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pipeline_worker.config import Settings
from pipeline_worker.github_app import GitHubAppClient
from pipeline_worker.jobs.backend import AgentCredentials, CliJobRunner
from pipeline_worker.jobs.dispatcher import JobDispatcher
from pipeline_worker.jobs.models import JobCreate, JobStatus, JobType
from pipeline_worker.jobs.reaper import StaleJobReaper
from pipeline_worker.jobs.repository import JobQueueRepository
from pipeline_worker.jobs.worker import ManagedWorker, WorkerRunSummary
from pipeline_worker.oauth import CredentialManager
from pipeline_worker.projects.repository import ProjectRepository
from pipeline_worker.storage.common import utc_now


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_cycles: int | None


@dataclass(slots=True)
class EnqueueJobCommand:
    """CLI input for enqueuing a job."""

    db_path: Path | None
    project_id: str
    job_type: str
    issue_number: int | None
    issue_title: str | None
    issue_body: str | None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class OAuthCommand:
    """CLI input for credential file maintenance."""

    credentials_path: Path | None


@dataclass(slots=True)
class CommandResult:
    lines: list[str]
    success: bool


class JobsCliController:
    """Coordinates worker, queue and credential CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with build_worker(settings) as worker:
            summary = worker.run_once() if command.once else worker.run_loop(
                max_cycles=command.max_cycles,
            )
        return [_summary_line(worker_id=settings.worker.worker_id, summary=summary)]

    def enqueue(self, command: EnqueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        job_type = JobType(command.job_type.strip().lower())
        if job_type == JobType.IMPLEMENT and command.issue_number is None:
            raise ValueError("Implement jobs require --issue-number.")
        with _repository(settings) as repository:
            job = repository.enqueue_job(
                JobCreate(
                    project_id=command.project_id,
                    job_type=job_type,
                    github_issue_number=command.issue_number,
                    issue_title=command.issue_title,
                    issue_body=command.issue_body,
                ),
            )
        return [
            "Job enqueued: "
            f"job_id={job.job_id} type={job.job_type.value} status={job.status.value} "
            f"project_id={job.project_id}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            issue = f"#{job.github_issue_number}" if job.github_issue_number is not None else "-"
            lines.append(
                f"  {job.job_id} type={job.job_type.value} status={job.status.value} "
                f"attempts={job.attempt_count} issue={issue} worker={job.worker_id or '-'}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Project: {job.project_id}",
            f"Type: {job.job_type.value}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempt_count}",
            f"Worker: {job.worker_id or '-'}",
            f"Locked at: {job.locked_at.isoformat() if job.locked_at else '-'}",
            f"Completed at: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"Last error: {job.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def oauth_init(self, command: OAuthCommand) -> CommandResult:
        settings = _oauth_settings(command)
        manager = CredentialManager.from_settings(settings.oauth)
        try:
            written = manager.initialize()
        finally:
            manager.close()
        if not written:
            return CommandResult(
                lines=["No credentials written (CLAUDE_CREDENTIALS_JSON is not set)."],
                success=False,
            )
        return CommandResult(
            lines=[f"Credentials written to {settings.oauth.credentials_path}"],
            success=True,
        )

    def oauth_refresh(self, command: OAuthCommand) -> CommandResult:
        settings = _oauth_settings(command)
        manager = CredentialManager.from_settings(settings.oauth)
        try:
            valid = manager.ensure_valid()
            state = manager.read_token_state()
        finally:
            manager.close()
        if not valid or state is None:
            return CommandResult(
                lines=[f"Credential at {settings.oauth.credentials_path} is not usable."],
                success=False,
            )
        minutes = round(state.remaining(utc_now()).total_seconds() / 60)
        return CommandResult(lines=[f"Token valid ({minutes} min remaining)"], success=True)


@contextmanager
def build_worker(settings: Settings) -> Iterator[ManagedWorker]:
    """Wire a worker with its store, clients and runner; close them on exit.

    The credential file is bootstrapped and refreshed once before the first
    poll, like every later job dispatch.
    """

    repository = JobQueueRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.worker.busy_timeout_ms,
    )
    projects = ProjectRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.worker.busy_timeout_ms,
    )
    credential_manager = CredentialManager.from_settings(settings.oauth)
    github_app = GitHubAppClient.from_settings(settings.github)
    try:
        repository.init_schema()
        credential_manager.initialize()
        credential_manager.ensure_valid()
        dispatcher = JobDispatcher(
            projects=projects,
            github_app=github_app,
            runner=CliJobRunner(
                implement_command_template=settings.agent.implement_command_template,
                setup_command_template=settings.agent.setup_command_template,
                workdir_root=settings.agent.workdir_root,
            ),
            system_credentials=system_credentials_loader(
                settings=settings,
                credential_manager=credential_manager,
            ),
            fallback_github_token=settings.github.token,
        )
        yield ManagedWorker(
            repository=repository,
            reaper=StaleJobReaper(
                store=repository,
                stale_after=timedelta(seconds=settings.worker.stale_after_seconds),
                max_attempts=settings.worker.max_attempts,
            ),
            dispatcher=dispatcher,
            credential_manager=credential_manager,
            worker_id=settings.worker.worker_id,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            max_backoff_seconds=settings.worker.max_backoff_seconds,
            max_attempts=settings.worker.max_attempts,
        )
    finally:
        github_app.close()
        credential_manager.close()
        projects.close()
        repository.close()


def system_credentials_loader(
    *,
    settings: Settings,
    credential_manager: CredentialManager,
) -> Callable[[], AgentCredentials | None]:
    """Worker-wide AI credentials, read fresh on every call.

    The refreshed credential file wins over the bootstrap blob it was written
    from.
    """

    def _load() -> AgentCredentials | None:
        claude_credentials = (
            credential_manager.current_credentials_json()
            or settings.system_credentials.claude_credentials_json
        )
        api_key = settings.system_credentials.anthropic_api_key
        if not claude_credentials and not api_key:
            return None
        return AgentCredentials(
            claude_credentials=claude_credentials,
            anthropic_api_key=api_key,
            source="system",
        )

    return _load


def _summary_line(*, worker_id: str, summary: WorkerRunSummary) -> str:
    return (
        f"Worker summary ({worker_id}): "
        f"cycles={summary.cycles} processed={summary.processed} "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"retried={summary.retried} idle_polls={summary.idle_polls} "
        f"errors={summary.errors} reaped={summary.reaped}"
    )


def _oauth_settings(command: OAuthCommand) -> Settings:
    settings = Settings.from_env()
    if command.credentials_path is not None:
        settings.oauth.credentials_path = command.credentials_path
    return settings


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[JobQueueRepository]:
    repository = JobQueueRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.worker.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
