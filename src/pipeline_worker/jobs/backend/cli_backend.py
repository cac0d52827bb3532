"""Subprocess-based runner for the agent and setup CLIs."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from dataclasses import asdict
from pathlib import Path

from pipeline_worker.jobs.backend.base import ManagedJobRequest, SetupJobRequest

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2_000


class JobRunError(RuntimeError):
    """Agent or setup command failed."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class CliJobRunner:
    """Execute implement/setup jobs through configured command templates.

    Each job gets a work directory holding ``job.json`` (non-secret inputs)
    and the captured ``stdout.log`` / ``stderr.log``. Secrets are passed only
    through the child environment.
    """

    def __init__(
        self,
        *,
        implement_command_template: str,
        setup_command_template: str,
        workdir_root: Path,
    ) -> None:
        self.implement_command_template = implement_command_template
        self.setup_command_template = setup_command_template
        self.workdir_root = workdir_root

    def run_managed_job(self, request: ManagedJobRequest) -> None:
        workdir = self._prepare_workdir(request.job_id)
        job_file = workdir / "job.json"
        job_file.write_text(
            json.dumps(
                {
                    "job_type": "implement",
                    "job_id": request.job_id,
                    "project_id": request.project_id,
                    "run_id": request.run_id,
                    "issue_number": request.issue_number,
                    "issue_title": request.issue_title,
                    "issue_body": request.issue_body,
                    "github_repo": request.github.repo,
                    "credential_source": request.credentials.source,
                },
                ensure_ascii=False,
                indent=2,
            ),
            "utf-8",
        )
        env = {
            "PIPELINE_JOB_ID": request.job_id,
            "PIPELINE_PROJECT_ID": request.project_id,
            "PIPELINE_RUN_ID": request.run_id,
            "GITHUB_TOKEN": request.github.token,
            "GITHUB_REPOSITORY": request.github.repo or "",
        }
        if request.credentials.claude_credentials:
            env["CLAUDE_CREDENTIALS_JSON"] = request.credentials.claude_credentials
        if request.credentials.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = request.credentials.anthropic_api_key
        self._run(
            label="Agent",
            command_template=self.implement_command_template,
            values={
                "job_file": str(job_file),
                "issue_number": str(request.issue_number),
                "repo": request.github.repo or "",
                "workdir": str(workdir),
            },
            workdir=workdir,
            extra_env=env,
        )

    def run_setup_job(self, request: SetupJobRequest) -> None:
        workdir = self._prepare_workdir(request.job_id)
        job_file = workdir / "job.json"
        job_file.write_text(
            json.dumps({"job_type": "setup", **asdict(request)}, ensure_ascii=False, indent=2),
            "utf-8",
        )
        self._run(
            label="Setup",
            command_template=self.setup_command_template,
            values={
                "job_file": str(job_file),
                "issue_number": "",
                "repo": request.github_repo,
                "workdir": str(workdir),
            },
            workdir=workdir,
            extra_env={
                "PIPELINE_JOB_ID": request.job_id,
                "PIPELINE_PROJECT_ID": request.project_id,
                "GITHUB_REPOSITORY": request.github_repo,
                "GITHUB_INSTALLATION_ID": str(request.installation_id),
            },
        )

    def _prepare_workdir(self, job_id: str) -> Path:
        workdir = (self.workdir_root / job_id).resolve()
        workdir.mkdir(parents=True, exist_ok=True)
        return workdir

    def _run(  # noqa: PLR0913
        self,
        *,
        label: str,
        command_template: str,
        values: dict[str, str],
        workdir: Path,
        extra_env: dict[str, str],
    ) -> None:
        argv = _build_run_args(command_template=command_template, values=values)
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"
        env = os.environ.copy()
        env.update(extra_env)

        logger.info("%s command starting: %s (workdir=%s)", label, argv[0], workdir)
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                completed = subprocess.run(  # noqa: S603
                    argv,
                    cwd=workdir,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    check=False,
                )
        except FileNotFoundError as error:
            raise JobRunError(f"{label} command not found: {argv[0]}") from error
        except OSError as error:
            raise JobRunError(f"{label} command failed to start: {error}") from error

        if completed.returncode != 0:
            message = f"{label} command exited with code {completed.returncode}"
            tail = _read_tail(stderr_path) or _read_tail(stdout_path)
            if tail:
                message = f"{message}: {tail}"
            raise JobRunError(message, exit_code=completed.returncode)
        logger.info("%s command finished (workdir=%s)", label, workdir)


def _build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise JobRunError("Command template is empty.")
    try:
        rendered = stripped.format(
            **{name: shlex.quote(value) for name, value in values.items()},
        )
    except KeyError as error:
        raise JobRunError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise JobRunError("Command template rendered empty command.")
    return argv


def _read_tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace")
    except OSError:
        return ""
    return text.strip()[-STDERR_TAIL_CHARS:]
