from __future__ import annotations

import logging
import time
from typing import Callable

from .errors import CredentialNotFoundError
from .logging_utils import redact_token
from .models import TokenGrant, UserCredential
from .strava_client import StravaClient
from .token_store import TokenStore


logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 3600


def needs_refresh(expires_at: int, now: float, margin: int = DEFAULT_REFRESH_MARGIN_SECONDS) -> bool:
    return int(expires_at) <= int(now) + int(margin)


class TokenManager:
    """Hands out access tokens, refreshing them shortly before they expire.

    Two workers may refresh the same credential concurrently; the last
    write wins and both resulting tokens stay valid with the provider.
    """

    def __init__(
        self,
        store: TokenStore,
        client: StravaClient,
        *,
        refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.refresh_margin_seconds = refresh_margin_seconds
        self.clock = clock

    def get_valid_access_token(self, athlete_id: int) -> str:
        credential = self.store.get(athlete_id)
        if credential is None:
            raise CredentialNotFoundError(f"No credentials stored for athlete {athlete_id}.")
        if not needs_refresh(credential.expires_at, self.clock(), self.refresh_margin_seconds):
            return credential.access_token
        logger.info("Access token for athlete %s expires at %s, refreshing.", athlete_id, credential.expires_at)
        return self.refresh(credential).access_token

    def refresh(self, credential: UserCredential) -> TokenGrant:
        grant = self.client.refresh_access_token(credential.refresh_token)
        self.store.update_tokens(
            credential.athlete_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        logger.info(
            "Refreshed access token for athlete %s: %s (expires at %s).",
            credential.athlete_id,
            redact_token(grant.access_token),
            grant.expires_at,
        )
        return grant
