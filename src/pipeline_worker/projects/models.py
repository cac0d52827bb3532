"""Domain models for projects and their credentials."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CredentialType(str, Enum):
    """Project-scoped AI credential kinds, in lookup preference order."""

    CLAUDE_OAUTH = "claude_oauth"
    ANTHROPIC_API_KEY = "anthropic_api_key"


@dataclass(slots=True)
class ProjectCreate:
    """Input payload for registering a project."""

    name: str
    github_repo: str | None = None
    github_installation_id: int | None = None
    project_id: str | None = None


@dataclass(slots=True)
class ProjectView:
    project_id: str
    name: str
    github_repo: str | None
    github_installation_id: int | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CredentialView:
    project_id: str
    type: CredentialType
    value: str


@dataclass(slots=True)
class PipelineRunView:
    run_id: str
    project_id: str
    github_issue_number: int
    status: str
    started_at: datetime
