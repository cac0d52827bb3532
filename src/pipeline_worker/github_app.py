"""GitHub App installation tokens over the REST API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx
import jwt

from pipeline_worker.config import GitHubSettings

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
APP_JWT_TTL_SECONDS = 540
APP_JWT_CLOCK_SKEW_SECONDS = 60


class GitHubAppError(RuntimeError):
    """GitHub REST call answered with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubAppClient:
    """Mints installation access tokens and inspects installation repositories."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        app_id: str | None,
        private_key: str | None,
        api_url: str = "https://api.github.com",
        request_timeout_seconds: float = 30.0,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id
        self.private_key = private_key
        self.api_url = api_url.rstrip("/")
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(request_timeout_seconds, connect=10.0),
        )
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: GitHubSettings,
        *,
        http_client: httpx.Client | None = None,
    ) -> GitHubAppClient:
        return cls(
            app_id=settings.app_id,
            private_key=settings.app_private_key,
            api_url=settings.api_url,
            request_timeout_seconds=settings.request_timeout_seconds,
            http_client=http_client,
        )

    def close(self) -> None:
        self._client.close()

    def is_configured(self) -> bool:
        return bool(self.app_id and self.private_key)

    def get_installation_token(self, installation_id: int) -> str:
        """Exchange the app JWT for a short-lived installation access token."""

        response = self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            token=self._app_jwt(),
        )
        token = response.json().get("token")
        if not isinstance(token, str) or not token:
            raise GitHubAppError(
                f"GitHub returned no token for installation {installation_id}",
                status_code=response.status_code,
            )
        logger.info("Minted installation token for installation %s", installation_id)
        return token

    def get_installation_first_repo(self, installation_id: int) -> str | None:
        """Full name of the first repository the installation can access."""

        token = self.get_installation_token(installation_id)
        response = self._request(
            "GET",
            "/installation/repositories",
            token=token,
            params={"per_page": 1},
        )
        repositories = response.json().get("repositories") or []
        for repository in repositories:
            full_name = repository.get("full_name") if isinstance(repository, dict) else None
            if isinstance(full_name, str) and full_name:
                return full_name
        return None

    def _app_jwt(self) -> str:
        if not self.is_configured():
            raise GitHubAppError("GitHub App is not configured (GITHUB_APP_ID / private key).")
        now = int(self._clock())
        return jwt.encode(
            {
                "iat": now - APP_JWT_CLOCK_SKEW_SECONDS,
                "exp": now + APP_JWT_TTL_SECONDS,
                "iss": str(self.app_id),
            },
            self.private_key,
            algorithm="RS256",
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, object] | None = None,
    ) -> httpx.Response:
        response = self._client.request(
            method,
            f"{self.api_url}{path}",
            params=params,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        if not response.is_success:
            logger.warning("GitHub %s %s failed with %s", method, path, response.status_code)
            raise GitHubAppError(
                f"GitHub {method} {path} failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        return response
