"""CLI entrypoint for pipeline-worker."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from pipeline_worker import __version__
from pipeline_worker.jobs.controllers import (
    CommandResult,
    EnqueueJobCommand,
    InspectJobCommand,
    JobsCliController,
    ListJobsCommand,
    OAuthCommand,
    WorkerCommand,
)
from pipeline_worker.projects.controllers import (
    AddProjectCommand,
    ProjectsCliController,
    SetCredentialCommand,
    StartRunCommand,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
PROJECTS_CONTROLLER = ProjectsCliController()
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="pipeline-worker")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def pipeline_worker(log_level: str) -> None:
    """Job queue worker for issue-driven agent pipelines."""

    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@pipeline_worker.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one reap-claim-execute cycle or poll until stopped.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll cycles in loop mode.",
)
def worker_run(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Run the job worker. SIGINT/SIGTERM stop it after the current cycle."""

    _emit_lines(
        _checked(
            lambda: JOBS_CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, once=once, max_cycles=max_cycles),
            ),
        ),
    )


@pipeline_worker.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--job-type",
    type=click.Choice(["implement", "setup"], case_sensitive=False),
    default="implement",
    show_default=True,
    help="Execution path.",
)
@click.option("--issue-number", type=click.IntRange(min=1), default=None, help="GitHub issue.")
@click.option("--issue-title", default=None, help="Issue title.")
@click.option("--issue-body", default=None, help="Issue body.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    job_type: str,
    issue_number: int | None,
    issue_title: str | None,
    issue_body: str | None,
) -> None:
    """Add a pending job to the queue."""

    _emit_lines(
        _checked(
            lambda: JOBS_CONTROLLER.enqueue(
                EnqueueJobCommand(
                    db_path=db_path,
                    project_id=project_id,
                    job_type=job_type,
                    issue_number=issue_number,
                    issue_title=issue_title,
                    issue_body=issue_body,
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "done", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(ListJobsCommand(db_path=db_path, status=status, limit=limit)),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(JOBS_CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)))


@pipeline_worker.group()
def oauth() -> None:
    """AI credential file commands."""


@oauth.command("init")
@click.option(
    "--credentials-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Credential file path.",
)
def oauth_init(credentials_path: Path | None) -> None:
    """Write CLAUDE_CREDENTIALS_JSON to the credential file."""

    _emit_result(JOBS_CONTROLLER.oauth_init(OAuthCommand(credentials_path=credentials_path)))


@oauth.command("refresh")
@click.option(
    "--credentials-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Credential file path.",
)
def oauth_refresh(credentials_path: Path | None) -> None:
    """Refresh the access token when it is about to expire."""

    _emit_result(JOBS_CONTROLLER.oauth_refresh(OAuthCommand(credentials_path=credentials_path)))


@pipeline_worker.group()
def projects() -> None:
    """Project seeding commands."""


@projects.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project name.")
@click.option("--github-repo", default=None, help="Repository as owner/name.")
@click.option(
    "--installation-id",
    type=click.IntRange(min=1),
    default=None,
    help="GitHub App installation id.",
)
@click.option("--project-id", default=None, help="Explicit project id (default: random UUID).")
def projects_add(
    db_path: Path | None,
    name: str,
    github_repo: str | None,
    installation_id: int | None,
    project_id: str | None,
) -> None:
    """Register a project."""

    _emit_lines(
        PROJECTS_CONTROLLER.add_project(
            AddProjectCommand(
                db_path=db_path,
                name=name,
                github_repo=github_repo,
                installation_id=installation_id,
                project_id=project_id,
            ),
        ),
    )


@projects.command("credential")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project id.")
@click.option(
    "--type",
    "credential_type",
    type=click.Choice(["claude_oauth", "anthropic_api_key"], case_sensitive=False),
    required=True,
    help="Credential kind.",
)
@click.option("--value", required=True, help="Credential value.")
def projects_credential(
    db_path: Path | None,
    project_id: str,
    credential_type: str,
    value: str,
) -> None:
    """Store an AI credential for a project."""

    _emit_lines(
        _checked(
            lambda: PROJECTS_CONTROLLER.set_credential(
                SetCredentialCommand(
                    db_path=db_path,
                    project_id=project_id,
                    credential_type=credential_type,
                    value=value,
                ),
            ),
        ),
    )


@projects.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project id.")
@click.option("--issue-number", type=click.IntRange(min=1), required=True, help="GitHub issue.")
def projects_run(db_path: Path | None, project_id: str, issue_number: int) -> None:
    """Record a pipeline run for an issue."""

    _emit_lines(
        _checked(
            lambda: PROJECTS_CONTROLLER.start_run(
                StartRunCommand(db_path=db_path, project_id=project_id, issue_number=issue_number),
            ),
        ),
    )


def _checked(action: Callable[[], T]) -> T:
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Credential check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pipeline_worker()
