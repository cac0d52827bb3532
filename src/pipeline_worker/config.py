"""Runtime configuration for the job queue worker."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
DEFAULT_IMPLEMENT_COMMAND = "pipeline-agent implement --job-file {job_file}"
DEFAULT_SETUP_COMMAND = "pipeline-agent setup --job-file {job_file}"


def default_worker_id() -> str:
    """Process-lifetime lock-holder identity."""

    return f"worker-{os.getpid()}-{int(time.time() * 1000)}"


def default_credentials_path() -> Path:
    return Path.home() / ".claude" / ".credentials.json"


@dataclass(slots=True)
class WorkerSettings:
    """Poll loop, retry and reaper settings."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    stale_after_seconds: int = 1_800
    max_attempts: int = 3
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class OAuthSettings:
    """Local AI OAuth credential file and refresh endpoint."""

    credentials_path: Path = field(default_factory=default_credentials_path)
    token_url: str = DEFAULT_TOKEN_URL
    client_id: str = DEFAULT_OAUTH_CLIENT_ID
    refresh_margin_seconds: int = 300
    request_timeout_seconds: float = 30.0
    bootstrap_credentials_json: str | None = None


@dataclass(slots=True)
class SystemCredentialSettings:
    """Process-wide AI credentials used when a project has none."""

    claude_credentials_json: str | None = None
    anthropic_api_key: str | None = None


@dataclass(slots=True)
class GitHubSettings:
    """GitHub App and static token settings."""

    api_url: str = "https://api.github.com"
    token: str | None = None
    app_id: str | None = None
    app_private_key: str | None = None
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class AgentSettings:
    """Command templates for the external agent and setup executors."""

    implement_command_template: str = DEFAULT_IMPLEMENT_COMMAND
    setup_command_template: str = DEFAULT_SETUP_COMMAND
    workdir_root: Path = Path(".pipeline_worker/work")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pipeline_worker.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    system_credentials: SystemCredentialSettings = field(
        default_factory=SystemCredentialSettings,
    )
    github: GitHubSettings = field(default_factory=GitHubSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        claude_credentials_json = _env_optional("CLAUDE_CREDENTIALS_JSON")
        return cls(
            db_path=db_path or Path(os.getenv("PIPELINE_WORKER_DB_PATH", ".pipeline_worker.db")),
            worker=WorkerSettings(
                worker_id=_env_optional("PIPELINE_WORKER_ID") or default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("PIPELINE_WORKER_POLL_INTERVAL_SECONDS", "5"),
                ),
                max_backoff_seconds=float(os.getenv("PIPELINE_WORKER_MAX_BACKOFF_SECONDS", "60")),
                stale_after_seconds=int(os.getenv("PIPELINE_WORKER_STALE_AFTER_SECONDS", "1800")),
                max_attempts=int(os.getenv("PIPELINE_WORKER_MAX_ATTEMPTS", "3")),
                busy_timeout_ms=int(os.getenv("PIPELINE_WORKER_BUSY_TIMEOUT_MS", "5000")),
            ),
            oauth=OAuthSettings(
                credentials_path=Path(
                    os.getenv(
                        "PIPELINE_WORKER_OAUTH_CREDENTIALS_PATH",
                        str(default_credentials_path()),
                    ),
                ).expanduser(),
                token_url=os.getenv("PIPELINE_WORKER_OAUTH_TOKEN_URL", DEFAULT_TOKEN_URL),
                client_id=os.getenv("PIPELINE_WORKER_OAUTH_CLIENT_ID", DEFAULT_OAUTH_CLIENT_ID),
                refresh_margin_seconds=int(
                    os.getenv("PIPELINE_WORKER_OAUTH_REFRESH_MARGIN_SECONDS", "300"),
                ),
                request_timeout_seconds=float(
                    os.getenv("PIPELINE_WORKER_OAUTH_TIMEOUT_SECONDS", "30"),
                ),
                bootstrap_credentials_json=claude_credentials_json,
            ),
            system_credentials=SystemCredentialSettings(
                claude_credentials_json=claude_credentials_json,
                anthropic_api_key=_env_optional("ANTHROPIC_API_KEY"),
            ),
            github=GitHubSettings(
                api_url=os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/"),
                token=_env_optional("GITHUB_TOKEN"),
                app_id=_env_optional("GITHUB_APP_ID"),
                app_private_key=_load_private_key(),
                request_timeout_seconds=float(
                    os.getenv("PIPELINE_WORKER_GITHUB_TIMEOUT_SECONDS", "30"),
                ),
            ),
            agent=AgentSettings(
                implement_command_template=os.getenv(
                    "PIPELINE_WORKER_IMPLEMENT_COMMAND",
                    DEFAULT_IMPLEMENT_COMMAND,
                ),
                setup_command_template=os.getenv(
                    "PIPELINE_WORKER_SETUP_COMMAND",
                    DEFAULT_SETUP_COMMAND,
                ),
                workdir_root=Path(os.getenv("PIPELINE_WORKER_WORKDIR", ".pipeline_worker/work")),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are out of range."""

        if not self.worker.worker_id.strip():
            raise ValueError("PIPELINE_WORKER_ID must not be empty.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("PIPELINE_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.max_backoff_seconds < self.worker.poll_interval_seconds:
            raise ValueError(
                "PIPELINE_WORKER_MAX_BACKOFF_SECONDS must be >= "
                "PIPELINE_WORKER_POLL_INTERVAL_SECONDS.",
            )
        if self.worker.stale_after_seconds <= 0:
            raise ValueError("PIPELINE_WORKER_STALE_AFTER_SECONDS must be > 0.")
        if self.worker.max_attempts < 1:
            raise ValueError("PIPELINE_WORKER_MAX_ATTEMPTS must be >= 1.")
        if self.oauth.refresh_margin_seconds < 0:
            raise ValueError("PIPELINE_WORKER_OAUTH_REFRESH_MARGIN_SECONDS must be >= 0.")
        _validate_http_url(self.oauth.token_url, name="PIPELINE_WORKER_OAUTH_TOKEN_URL")
        _validate_http_url(self.github.api_url, name="GITHUB_API_URL")
        if bool(self.github.app_id) != bool(self.github.app_private_key):
            raise ValueError(
                "GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY must be configured together.",
            )
        for name, template in (
            ("PIPELINE_WORKER_IMPLEMENT_COMMAND", self.agent.implement_command_template),
            ("PIPELINE_WORKER_SETUP_COMMAND", self.agent.setup_command_template),
        ):
            if not template.strip():
                raise ValueError(f"{name} must not be empty.")


def _load_private_key() -> str | None:
    inline = _env_optional("GITHUB_APP_PRIVATE_KEY")
    if inline is not None:
        return inline.replace("\\n", "\n")
    key_path = _env_optional("GITHUB_APP_PRIVATE_KEY_PATH")
    if key_path is None:
        return None
    return Path(key_path).expanduser().read_text("utf-8")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
