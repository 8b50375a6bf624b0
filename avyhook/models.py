from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import MalformedPayloadError


OBJECT_TYPE_ACTIVITY = "activity"
OBJECT_TYPE_ATHLETE = "athlete"
ASPECT_CREATE = "create"
ASPECT_UPDATE = "update"
ASPECT_DELETE = "delete"

ENQUEUED_ASPECT_TYPES = {ASPECT_CREATE, ASPECT_UPDATE}


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise MalformedPayloadError(f"Field '{key}' must be an integer.")
    try:
        return int(value)
    except ValueError as exc:
        raise MalformedPayloadError(f"Field '{key}' must be an integer.") from exc


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedPayloadError(f"Field '{key}' must be a non-empty string.")
    return value.strip()


@dataclass(frozen=True)
class WebhookNotification:
    object_type: str
    object_id: int
    aspect_type: str
    owner_id: int
    event_time: int
    subscription_id: int | None = None
    updates: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookNotification":
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body must be a JSON object.")
        subscription_raw = payload.get("subscription_id")
        updates_raw = payload.get("updates")
        return cls(
            object_type=_require_str(payload, "object_type"),
            object_id=_require_int(payload, "object_id"),
            aspect_type=_require_str(payload, "aspect_type"),
            owner_id=_require_int(payload, "owner_id"),
            event_time=_require_int(payload, "event_time") if "event_time" in payload else 0,
            subscription_id=_require_int(payload, "subscription_id") if subscription_raw is not None else None,
            updates=dict(updates_raw) if isinstance(updates_raw, dict) else {},
        )

    @property
    def is_enqueueable(self) -> bool:
        return self.object_type == OBJECT_TYPE_ACTIVITY and self.aspect_type in ENQUEUED_ASPECT_TYPES


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


def _coordinate_from(raw: Any) -> Coordinate | None:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return None
    latitude, longitude = raw
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        return None
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        return None
    return Coordinate(latitude=float(latitude), longitude=float(longitude))


@dataclass(frozen=True)
class ActivityRecord:
    id: int
    activity_type: str
    title: str
    description: str
    start_date_utc: str
    start_date_local: str | None = None
    start_coordinate: Coordinate | None = None

    @classmethod
    def from_strava(cls, payload: dict[str, Any]) -> "ActivityRecord":
        local_raw = payload.get("start_date_local")
        return cls(
            id=int(payload["id"]),
            activity_type=str(payload.get("sport_type") or payload.get("type") or ""),
            title=str(payload.get("name") or ""),
            description=str(payload.get("description") or ""),
            start_date_utc=str(payload.get("start_date") or ""),
            start_date_local=str(local_raw) if isinstance(local_raw, str) and local_raw.strip() else None,
            start_coordinate=_coordinate_from(payload.get("start_latlng")),
        )


@dataclass(frozen=True)
class UserCredential:
    athlete_id: int
    access_token: str
    refresh_token: str
    expires_at: int
    username: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def __repr__(self) -> str:
        return (
            f"UserCredential(athlete_id={self.athlete_id}, expires_at={self.expires_at}, "
            f"username={self.username!r}, updated_at={self.updated_at!r})"
        )


@dataclass(frozen=True)
class TokenGrant:
    """Token pair returned by the identity provider for a code or refresh exchange."""

    access_token: str
    refresh_token: str
    expires_at: int
    athlete: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: Any) -> "TokenGrant":
        if not isinstance(payload, dict):
            raise ValueError("Token response is not a JSON object.")
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise ValueError("Token response is missing access_token.")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise ValueError("Token response is missing refresh_token.")
        try:
            expires_at = int(payload.get("expires_at"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Token response is missing expires_at.") from exc
        athlete = payload.get("athlete")
        return cls(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip(),
            expires_at=expires_at,
            athlete=dict(athlete) if isinstance(athlete, dict) else {},
        )

    @property
    def athlete_id(self) -> int | None:
        raw = self.athlete.get("id")
        if isinstance(raw, bool):
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    def __repr__(self) -> str:
        return f"TokenGrant(expires_at={self.expires_at}, athlete_id={self.athlete_id})"


@dataclass(frozen=True)
class AuthorizationState:
    state: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class ProcessingDecision:
    should_process: bool
    has_manual_command: bool
    has_existing_forecast_marker: bool
    target_date: str
    branch: str
