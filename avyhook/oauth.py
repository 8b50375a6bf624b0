from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from .config import DEFAULT_OAUTH_SCOPE
from .errors import AuthStateInvalidError, StoreUnavailableError, TokenExchangeFailedError
from .models import UserCredential
from .oauth_state import OAuthStateStore
from .strava_client import AUTHORIZE_URL, StravaClient
from .token_store import TokenStore


logger = logging.getLogger(__name__)

OUTCOME_CONNECTED = "connected"
OUTCOME_DENIED = "denied"
OUTCOME_MISSING_CODE = "missing_code"
OUTCOME_INVALID_STATE = "invalid_state"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    status: str
    http_status: int
    message: str
    athlete_id: int | None = None
    athlete_name: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == OUTCOME_CONNECTED


def build_authorize_url(
    client_id: str,
    redirect_uri: str,
    state: str,
    scope: str = DEFAULT_OAUTH_SCOPE,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "approval_prompt": "auto",
        "scope": scope,
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def start_authorization(
    state_store: OAuthStateStore,
    *,
    client_id: str,
    redirect_uri: str,
    scope: str = DEFAULT_OAUTH_SCOPE,
    now: int | None = None,
) -> str:
    auth_state = state_store.create(now)
    return build_authorize_url(client_id, redirect_uri, auth_state.state, scope)


def validate_state(state_store: OAuthStateStore, state: str | None, now: int | None = None) -> None:
    """Consume the callback state or raise `AuthStateInvalidError`."""
    if not state_store.consume(state, now):
        raise AuthStateInvalidError("Authorization request expired or is invalid.")


def _display_name(athlete: dict) -> str | None:
    parts = [str(athlete.get(key) or "").strip() for key in ("firstname", "lastname")]
    name = " ".join(part for part in parts if part)
    return name or None


def complete_authorization(
    code: str | None,
    state: str | None,
    error: str | None,
    *,
    state_store: OAuthStateStore,
    token_store: TokenStore,
    client: StravaClient,
    now: int | None = None,
) -> CallbackOutcome:
    if error:
        logger.info("Authorization denied by user: %s", error)
        return CallbackOutcome(OUTCOME_DENIED, 400, "Authorization was denied.")
    if not code:
        return CallbackOutcome(OUTCOME_MISSING_CODE, 400, "Authorization code is missing.")

    try:
        validate_state(state_store, state, now)
    except AuthStateInvalidError as exc:
        logger.warning("Rejected callback with unknown, expired or reused state.")
        return CallbackOutcome(OUTCOME_INVALID_STATE, exc.http_status, str(exc))
    except StoreUnavailableError:
        logger.exception("Could not consume authorization state.")
        return CallbackOutcome(OUTCOME_FAILED, 500, "Authorization could not be completed.")

    try:
        grant = client.exchange_code(code)
    except TokenExchangeFailedError:
        logger.exception("Token exchange failed.")
        return CallbackOutcome(OUTCOME_FAILED, 500, "Token exchange with Strava failed.")

    athlete_id = grant.athlete_id
    if athlete_id is None:
        logger.error("Token exchange response carried no athlete id.")
        return CallbackOutcome(OUTCOME_FAILED, 500, "Token exchange with Strava failed.")

    credential = UserCredential(
        athlete_id=athlete_id,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
        username=grant.athlete.get("username"),
        firstname=grant.athlete.get("firstname"),
        lastname=grant.athlete.get("lastname"),
    )
    try:
        token_store.save(credential)
    except StoreUnavailableError:
        logger.exception("Could not persist credentials for athlete %s.", athlete_id)
        return CallbackOutcome(OUTCOME_FAILED, 500, "Credentials could not be saved.")

    return CallbackOutcome(
        OUTCOME_CONNECTED,
        200,
        "Your Strava account is connected.",
        athlete_id=athlete_id,
        athlete_name=_display_name(grant.athlete),
    )
