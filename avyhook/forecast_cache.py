from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from .storage import connect_runtime_db


RECENT_THRESHOLD_HOURS = 72
RECENT_TTL_MINUTES = 60


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _forecast_datetime(forecast_date: str) -> datetime:
    return datetime.fromisoformat(forecast_date).replace(tzinfo=timezone.utc)


def calculate_expiration(forecast_date: str, now: datetime | None = None) -> datetime | None:
    """Forecasts up to 72 hours old expire after an hour; older ones never expire."""
    current = now or _utc_now()
    age_hours = (current - _forecast_datetime(forecast_date)).total_seconds() / 3600
    if age_hours <= RECENT_THRESHOLD_HOURS:
        return current + timedelta(minutes=RECENT_TTL_MINUTES)
    return None


def ttl_reason(forecast_date: str, now: datetime | None = None) -> str:
    current = now or _utc_now()
    age_hours = int((current - _forecast_datetime(forecast_date)).total_seconds() // 3600)
    if age_hours <= RECENT_THRESHOLD_HOURS:
        return f"Recent forecast ({age_hours}h old) - cached for {RECENT_TTL_MINUTES} minutes"
    return f"Old forecast ({age_hours}h old) - cached permanently"


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return False
    return (now or _utc_now()) > expires_at


def cache_key(zone_id: int, forecast_date: str) -> str:
    return f"zone-{zone_id}-date-{forecast_date}"


@dataclass(frozen=True)
class CacheEntry:
    product: dict[str, Any] | None
    cached_at: datetime
    expires_at: datetime | None
    reason: str


class ForecastCache(Protocol):
    def get(self, zone_id: int, forecast_date: str) -> CacheEntry | None:
        ...

    def set(self, zone_id: int, forecast_date: str, product: dict[str, Any] | None) -> None:
        ...


class SqliteForecastCache:
    """Forecast products keyed by zone and date; `None` products record a confirmed miss."""

    def __init__(self, db_path: Path, clock=_utc_now):
        self.db_path = db_path
        self.clock = clock

    def get(self, zone_id: int, forecast_date: str) -> CacheEntry | None:
        with connect_runtime_db(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT forecast_json, cached_at_utc, expires_at_utc, reason
                FROM forecast_cache
                WHERE cache_key = ?
                LIMIT 1
                """,
                (cache_key(zone_id, forecast_date),),
            ).fetchone()
        if row is None:
            return None

        expires_at = datetime.fromisoformat(row["expires_at_utc"]) if row["expires_at_utc"] else None
        if is_expired(expires_at, self.clock()):
            return None
        forecast_json = row["forecast_json"]
        return CacheEntry(
            product=json.loads(forecast_json) if forecast_json else None,
            cached_at=datetime.fromisoformat(row["cached_at_utc"]),
            expires_at=expires_at,
            reason=str(row["reason"] or ""),
        )

    def set(self, zone_id: int, forecast_date: str, product: dict[str, Any] | None) -> None:
        now = self.clock()
        expires_at = calculate_expiration(forecast_date, now)
        with connect_runtime_db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO forecast_cache (cache_key, forecast_json, cached_at_utc, expires_at_utc, reason)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    forecast_json = excluded.forecast_json,
                    cached_at_utc = excluded.cached_at_utc,
                    expires_at_utc = excluded.expires_at_utc,
                    reason = excluded.reason
                """,
                (
                    cache_key(zone_id, forecast_date),
                    json.dumps(product, sort_keys=True) if product is not None else None,
                    now.isoformat(),
                    expires_at.isoformat() if expires_at else None,
                    ttl_reason(forecast_date, now),
                ),
            )
