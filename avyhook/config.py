from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv


load_dotenv()


EnvGetter = Callable[[str], str | None]

DEFAULT_OAUTH_SCOPE = "read,activity:read_all,activity:write"
DEFAULT_FORECAST_ATTRIBUTION = "Powered by Strava"


def _bool_env(name: str, default: bool, *, getenv: EnvGetter = os.getenv) -> bool:
    value = getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _str_env(*names: str, default: str = "", getenv: EnvGetter = os.getenv) -> str:
    for name in names:
        value = getenv(name)
        if value is not None:
            return value.strip()
    return default


def _optional_str_env(*names: str, getenv: EnvGetter = os.getenv) -> str | None:
    value = _str_env(*names, default="", getenv=getenv)
    return value or None


def _int_env(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> int:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = int(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


def _state_file(state_dir: Path, name: str, default: str, *, getenv: EnvGetter = os.getenv) -> Path:
    configured = Path(_str_env(name, default=default, getenv=getenv) or default)
    if configured.is_absolute():
        return configured
    return state_dir / configured


@dataclass(frozen=True)
class Settings:
    strava_client_id: str
    strava_client_secret: str
    strava_verify_token: str
    oauth_redirect_uri: str | None
    oauth_scope: str

    log_level: str
    api_port: int
    http_timeout_seconds: int
    worker_poll_interval_seconds: int
    worker_health_max_age_seconds: int
    queue_visibility_timeout_seconds: int
    queue_max_attempts: int
    queue_retry_base_seconds: int
    queue_retry_max_seconds: int
    token_refresh_margin_seconds: int
    oauth_state_ttl_seconds: int

    state_dir: Path
    runtime_db_file: Path
    zones_file: Path

    forecast_attribution: str
    enable_forecast_cache: bool
    enable_relaxed_forecast_match: bool

    @classmethod
    def from_env(cls) -> "Settings":
        state_dir = Path(os.getenv("STATE_DIR", "state")).resolve()

        return cls(
            strava_client_id=_str_env("STRAVA_CLIENT_ID", "CLIENT_ID"),
            strava_client_secret=_str_env("STRAVA_CLIENT_SECRET", "CLIENT_SECRET"),
            strava_verify_token=_str_env("STRAVA_VERIFY_TOKEN", "VERIFY_TOKEN"),
            oauth_redirect_uri=_optional_str_env("OAUTH_REDIRECT_URI"),
            oauth_scope=_str_env("OAUTH_SCOPE", default=DEFAULT_OAUTH_SCOPE) or DEFAULT_OAUTH_SCOPE,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            api_port=_int_env("API_PORT", 1610, minimum=1, maximum=65535),
            http_timeout_seconds=_int_env("HTTP_TIMEOUT_SECONDS", 30, minimum=1, maximum=120),
            worker_poll_interval_seconds=_int_env("WORKER_POLL_INTERVAL_SECONDS", 5, minimum=1, maximum=3600),
            worker_health_max_age_seconds=_int_env("WORKER_HEALTH_MAX_AGE_SECONDS", 300, minimum=30, maximum=86400),
            queue_visibility_timeout_seconds=_int_env(
                "QUEUE_VISIBILITY_TIMEOUT_SECONDS", 120, minimum=30, maximum=3600
            ),
            queue_max_attempts=_int_env("QUEUE_MAX_ATTEMPTS", 5, minimum=1, maximum=20),
            queue_retry_base_seconds=_int_env("QUEUE_RETRY_BASE_SECONDS", 30, minimum=1, maximum=3600),
            queue_retry_max_seconds=_int_env("QUEUE_RETRY_MAX_SECONDS", 900, minimum=30, maximum=86400),
            token_refresh_margin_seconds=_int_env("TOKEN_REFRESH_MARGIN_SECONDS", 3600, minimum=0, maximum=21600),
            oauth_state_ttl_seconds=_int_env("OAUTH_STATE_TTL_SECONDS", 300, minimum=30, maximum=3600),
            state_dir=state_dir,
            runtime_db_file=_state_file(state_dir, "RUNTIME_DB_FILE", "runtime_state.db"),
            zones_file=_state_file(state_dir, "ZONES_FILE", "nwac_zones.geojson"),
            forecast_attribution=_str_env("FORECAST_ATTRIBUTION", default=DEFAULT_FORECAST_ATTRIBUTION),
            enable_forecast_cache=_bool_env("ENABLE_FORECAST_CACHE", True),
            enable_relaxed_forecast_match=_bool_env("ENABLE_RELAXED_FORECAST_MATCH", False),
        )

    def validate(self) -> None:
        missing = []
        if not self.strava_client_id:
            missing.append("STRAVA_CLIENT_ID (or CLIENT_ID)")
        if not self.strava_client_secret:
            missing.append("STRAVA_CLIENT_SECRET (or CLIENT_SECRET)")
        if not self.strava_verify_token:
            missing.append("STRAVA_VERIFY_TOKEN")
        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required environment variables: {missing_str}")

    def ensure_state_paths(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.runtime_db_file.parent.mkdir(parents=True, exist_ok=True)
