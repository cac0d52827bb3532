"""Job execution backends."""

from pipeline_worker.jobs.backend.base import (
    AgentCredentials,
    GitHubAccess,
    JobRunner,
    ManagedJobRequest,
    SetupJobRequest,
)
from pipeline_worker.jobs.backend.cli_backend import CliJobRunner, JobRunError

__all__ = [
    "AgentCredentials",
    "CliJobRunner",
    "GitHubAccess",
    "JobRunError",
    "JobRunner",
    "ManagedJobRequest",
    "SetupJobRequest",
]
