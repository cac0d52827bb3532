from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from conftest import seed_project
from pipeline_worker.projects.models import CredentialType
from pipeline_worker.projects.repository import ProjectRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Project Records"),
]


def test_create_and_get_project(project_repository: ProjectRepository) -> None:
    project_id = seed_project(project_repository, installation_id=99)

    project = project_repository.get_project(project_id=project_id)

    assert project is not None
    assert project.github_repo == "acme/widgets"
    assert project.github_installation_id == 99
    assert project_repository.get_project(project_id="missing") is None


def test_set_github_repo_persists(project_repository: ProjectRepository) -> None:
    project_id = seed_project(project_repository, github_repo=None, installation_id=5)

    project_repository.set_github_repo(project_id=project_id, github_repo="acme/detected")

    project = project_repository.get_project(project_id=project_id)
    assert project is not None
    assert project.github_repo == "acme/detected"


def test_set_github_repo_rejects_unknown_project(project_repository: ProjectRepository) -> None:
    with pytest.raises(RuntimeError, match="Project ghost not found"):
        project_repository.set_github_repo(project_id="ghost", github_repo="acme/x")


def test_find_credential_prefers_oauth_over_api_key(project_repository: ProjectRepository) -> None:
    project_id = seed_project(project_repository)
    assert project_repository.find_credential(project_id=project_id) is None

    project_repository.upsert_credential(
        project_id=project_id,
        credential_type=CredentialType.ANTHROPIC_API_KEY,
        value="sk-project",
    )
    credential = project_repository.find_credential(project_id=project_id)
    assert credential is not None
    assert credential.type == CredentialType.ANTHROPIC_API_KEY

    project_repository.upsert_credential(
        project_id=project_id,
        credential_type=CredentialType.CLAUDE_OAUTH,
        value='{"claudeAiOauth": {}}',
    )
    credential = project_repository.find_credential(project_id=project_id)
    assert credential is not None
    assert credential.type == CredentialType.CLAUDE_OAUTH
    assert credential.value == '{"claudeAiOauth": {}}'


def test_upsert_credential_replaces_value(project_repository: ProjectRepository) -> None:
    project_id = seed_project(project_repository)
    for value in ("sk-old", "sk-new"):
        project_repository.upsert_credential(
            project_id=project_id,
            credential_type=CredentialType.ANTHROPIC_API_KEY,
            value=value,
        )

    credential = project_repository.find_credential(project_id=project_id)
    assert credential is not None
    assert credential.value == "sk-new"


def test_find_latest_run_id_picks_most_recent_for_issue(
    project_repository: ProjectRepository,
) -> None:
    project_id = seed_project(project_repository)
    project_repository.start_pipeline_run(
        project_id=project_id,
        github_issue_number=42,
        started_at=datetime(2026, 1, 1, tzinfo=UTC),
        run_id="run-old",
    )
    project_repository.start_pipeline_run(
        project_id=project_id,
        github_issue_number=42,
        started_at=datetime(2026, 2, 1, tzinfo=UTC),
        run_id="run-new",
    )
    project_repository.start_pipeline_run(
        project_id=project_id,
        github_issue_number=7,
        started_at=datetime(2026, 3, 1, tzinfo=UTC),
        run_id="run-other-issue",
    )

    assert (
        project_repository.find_latest_run_id(project_id=project_id, github_issue_number=42)
        == "run-new"
    )
    missing = project_repository.find_latest_run_id(project_id=project_id, github_issue_number=1)
    assert missing is None
