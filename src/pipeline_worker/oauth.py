"""Local AI OAuth credential file with refresh-before-expiry."""

from __future__ import annotations

import json
import logging
import math
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from pipeline_worker.config import OAuthSettings
from pipeline_worker.storage.common import utc_now

logger = logging.getLogger(__name__)

OAUTH_SECTION = "claudeAiOauth"

# 9999-12-31T23:59:59.999Z; later values do not fit a datetime.
_MAX_EXPIRES_AT_MS = 253_402_300_799_999


@dataclass(slots=True)
class OAuthTokenState:
    """Typed view of the token part of the credential file."""

    access_token: str
    refresh_token: str
    expires_at_ms: int

    def remaining(self, now: datetime) -> timedelta:
        return timedelta(milliseconds=self.expires_at_ms - _epoch_ms(now))


class CredentialManager:
    """Maintains the single AI credential record on this host.

    Nothing raised while reading, refreshing or writing the record escapes:
    failures are logged and reported through a ``False`` return.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        credentials_path: Path,
        token_url: str,
        client_id: str,
        refresh_margin_seconds: int = 300,
        bootstrap_json: str | None = None,
        http_client: httpx.Client | None = None,
        request_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.credentials_path = credentials_path
        self.token_url = token_url
        self.client_id = client_id
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.bootstrap_json = bootstrap_json
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(request_timeout_seconds, connect=10.0),
        )
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: OAuthSettings,
        *,
        http_client: httpx.Client | None = None,
    ) -> CredentialManager:
        return cls(
            credentials_path=settings.credentials_path,
            token_url=settings.token_url,
            client_id=settings.client_id,
            refresh_margin_seconds=settings.refresh_margin_seconds,
            bootstrap_json=settings.bootstrap_credentials_json,
            http_client=http_client,
            request_timeout_seconds=settings.request_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def initialize(self) -> bool:
        """Write the bootstrap credential blob, overwriting any existing file."""

        if not self.bootstrap_json:
            logger.info("[oauth] No bootstrap credentials configured")
            return False
        try:
            self._write_text(self.bootstrap_json)
        except OSError as error:
            logger.error(
                "[oauth] Could not write credentials to %s: %s",
                self.credentials_path,
                error,
            )
            return False
        logger.info("[oauth] Wrote initial credentials to %s", self.credentials_path)
        return True

    def ensure_valid(self) -> bool:
        """Return True when the access token is usable, refreshing it if needed."""

        record = self._read_record()
        if record is None:
            logger.warning("[oauth] No credentials file found at %s", self.credentials_path)
            return False

        state = _token_state(record)
        if state is None:
            logger.warning("[oauth] Credentials file %s is malformed", self.credentials_path)
            return False

        now = self._clock()
        remaining = state.remaining(now)
        if remaining > self.refresh_margin:
            logger.info(
                "[oauth] Token valid (%d min remaining)",
                round(remaining.total_seconds() / 60),
            )
            return True

        logger.info("[oauth] Token expired or expiring soon, refreshing...")
        return self._refresh(record=record, state=state, now=now)

    def read_token_state(self) -> OAuthTokenState | None:
        record = self._read_record()
        if record is None:
            return None
        return _token_state(record)

    def current_credentials_json(self) -> str | None:
        """Current credential file contents, or None when absent."""

        try:
            return self.credentials_path.read_text("utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def _refresh(self, *, record: dict[str, Any], state: OAuthTokenState, now: datetime) -> bool:
        try:
            response = self._client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "refresh_token": state.refresh_token,
                },
            )
        except httpx.HTTPError as error:
            logger.error("[oauth] Refresh request failed: %s", error)
            return False

        if not response.is_success:
            logger.error("[oauth] Refresh failed (%s): %s", response.status_code, response.text)
            return False

        try:
            payload = response.json()
            access_token = str(payload["access_token"])
            refresh_token = str(payload.get("refresh_token") or state.refresh_token)
            expires_in = int(payload["expires_in"])
        except (ValueError, KeyError, TypeError, OverflowError) as error:
            logger.error("[oauth] Refresh response was not understood: %s", error)
            return False

        oauth = dict(record[OAUTH_SECTION])
        oauth.update(
            {
                "accessToken": access_token,
                "refreshToken": refresh_token,
                "expiresAt": _epoch_ms(now) + expires_in * 1000,
            },
        )
        updated = {**record, OAUTH_SECTION: oauth}
        try:
            self._write_text(json.dumps(updated))
        except OSError as error:
            logger.error("[oauth] Could not persist refreshed credentials: %s", error)
            return False

        logger.info("[oauth] Token refreshed, valid for %d min", round(expires_in / 60))
        return True

    def _read_record(self) -> dict[str, Any] | None:
        try:
            raw = self.credentials_path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("[oauth] Could not read %s: %s", self.credentials_path, error)
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    def _write_text(self, text: str) -> None:
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.credentials_path.with_name(f"{self.credentials_path.name}.tmp")
        tmp_path.write_text(text, "utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.credentials_path)


def _token_state(record: dict[str, Any]) -> OAuthTokenState | None:
    oauth = record.get(OAUTH_SECTION)
    if not isinstance(oauth, dict):
        return None
    access_token = oauth.get("accessToken")
    refresh_token = oauth.get("refreshToken")
    expires_at = oauth.get("expiresAt")
    if not isinstance(access_token, str) or not isinstance(refresh_token, str):
        return None
    if isinstance(expires_at, bool) or not isinstance(expires_at, int | float):
        return None
    if not math.isfinite(expires_at) or abs(expires_at) > _MAX_EXPIRES_AT_MS:
        return None
    return OAuthTokenState(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at_ms=int(expires_at),
    )


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
