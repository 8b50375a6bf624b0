from __future__ import annotations

import logging
from typing import Any

import requests

from .config import Settings
from .errors import (
    ActivityFetchFailedError,
    ExternalUpdateFailedError,
    TokenExchangeFailedError,
    TokenRefreshFailedError,
)
from .models import ActivityRecord, TokenGrant


logger = logging.getLogger(__name__)

BASE_URL = "https://www.strava.com"
API_URL = f"{BASE_URL}/api/v3"
TOKEN_URL = f"{API_URL}/oauth/token"
AUTHORIZE_URL = f"{BASE_URL}/oauth/authorize"
TIMEOUT_SECONDS = 30


class StravaClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        session: requests.Session | None = None,
        timeout: int = TIMEOUT_SECONDS,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "StravaClient":
        return cls(
            settings.strava_client_id,
            settings.strava_client_secret,
            timeout=settings.http_timeout_seconds,
        )

    def _token_request(self, data: dict[str, Any]) -> TokenGrant:
        response = self.session.post(
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **data,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return TokenGrant.from_response(response.json())

    def exchange_code(self, code: str) -> TokenGrant:
        try:
            grant = self._token_request({"code": code, "grant_type": "authorization_code"})
        except (requests.RequestException, ValueError) as exc:
            raise TokenExchangeFailedError(f"Authorization code exchange failed: {type(exc).__name__}") from exc
        logger.info("Exchanged authorization code for athlete %s.", grant.athlete_id)
        return grant

    def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        try:
            grant = self._token_request({"refresh_token": refresh_token, "grant_type": "refresh_token"})
        except (requests.RequestException, ValueError) as exc:
            raise TokenRefreshFailedError(f"Strava token refresh failed: {type(exc).__name__}") from exc
        logger.info("Strava access token refreshed.")
        return grant

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> requests.Response:
        response = self.session.request(
            method,
            f"{API_URL}{path}",
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
            data=data,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response

    def get_activity(self, access_token: str, activity_id: int) -> ActivityRecord:
        try:
            response = self._request("GET", f"/activities/{activity_id}", access_token)
            return ActivityRecord.from_strava(response.json())
        except (requests.RequestException, ValueError, KeyError, TypeError) as exc:
            raise ActivityFetchFailedError(f"Fetching activity {activity_id} failed: {exc}") from exc

    def update_activity(self, access_token: str, activity_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._request("PUT", f"/activities/{activity_id}", access_token, data=payload)
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalUpdateFailedError(f"Updating activity {activity_id} failed: {exc}") from exc
