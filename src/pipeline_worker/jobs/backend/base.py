"""Runner interface for agent and setup execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class GitHubAccess:
    """Repository access descriptor handed to the agent."""

    token: str
    repo: str | None


@dataclass(slots=True)
class AgentCredentials:
    """AI credentials resolved for one job."""

    claude_credentials: str | None
    anthropic_api_key: str | None
    source: str


@dataclass(slots=True)
class ManagedJobRequest:
    """Inputs required to execute one implement job."""

    job_id: str
    project_id: str
    issue_number: int
    issue_title: str
    issue_body: str
    github: GitHubAccess
    credentials: AgentCredentials
    run_id: str


@dataclass(slots=True)
class SetupJobRequest:
    """Inputs required to execute one setup job."""

    job_id: str
    project_id: str
    github_repo: str
    installation_id: int


class JobRunner(Protocol):
    """Protocol implemented by execution backends.

    Both calls may take arbitrarily long and signal failure by raising.
    """

    def run_managed_job(self, request: ManagedJobRequest) -> None:
        """Run the agent for an implement job."""

    def run_setup_job(self, request: SetupJobRequest) -> None:
        """Run repository setup for a setup job."""
