from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Protocol, Union

import requests

from .forecast_cache import ForecastCache
from .models import Coordinate
from .zones import GeoJsonZoneLocator, Zone


logger = logging.getLogger(__name__)

AVALANCHE_API_URL = "https://api.avalanche.org/v2/public"
AVALANCHE_CENTER_ID = "NWAC"
FORECAST_PERMALINK_BASE = "https://nwac.us/avalanche-forecast/#/forecast"
OUTSIDE_COVERAGE_REASON = "Coordinate is outside all NWAC forecast zones"

_DANGER_SQUARES = {
    -1: "⬜",
    0: "⬜",
    1: "🟩",
    2: "🟨",
    3: "🟧",
    4: "🟥",
    5: "⬛",
}


@dataclass(frozen=True)
class Forecast:
    zone_name: str
    formatted_summary: str
    permalink_url: str
    product_id: int


@dataclass(frozen=True)
class ForecastUnavailable:
    reason: str


@dataclass(frozen=True)
class OutsideCoverage:
    reason: str = OUTSIDE_COVERAGE_REASON


ForecastResult = Union[Forecast, ForecastUnavailable, OutsideCoverage]


class ForecastProvider(Protocol):
    def lookup(self, coordinate: Coordinate, target_date: str) -> ForecastResult:
        ...


def _danger_level(value: Any) -> int:
    if isinstance(value, bool):
        return -1
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def danger_square(level: Any) -> str:
    return _DANGER_SQUARES.get(_danger_level(level), "⬜")


def format_danger_ratings(danger: dict[str, Any]) -> str:
    """Upper/middle/lower elevation bands, e.g. ``3🟧/3🟧/2🟨``."""
    parts = []
    for band in ("upper", "middle", "lower"):
        level = _danger_level(danger.get(band))
        parts.append(f"{level}{danger_square(level)}")
    return "/".join(parts)


def _primary_zone(product: dict[str, Any]) -> dict[str, Any]:
    zones = product.get("forecast_zone")
    if not isinstance(zones, list) or not zones or not isinstance(zones[0], dict):
        raise ValueError("Forecast product has no zone information")
    return zones[0]


def build_forecast_url(product: dict[str, Any]) -> str:
    zone = _primary_zone(product)
    return f"{FORECAST_PERMALINK_BASE}/{zone.get('zone_id')}/{product.get('id')}"


def format_forecast(product: dict[str, Any], *, include_nwac: bool = True, day: str = "current") -> str:
    zone = _primary_zone(product)
    danger = product.get("danger")
    if not isinstance(danger, list) or not danger:
        raise ValueError("Forecast product has no danger rating information")
    danger_for_day = next(
        (item for item in danger if isinstance(item, dict) and item.get("valid_day") == day),
        None,
    )
    if danger_for_day is None:
        raise ValueError(f"No danger ratings found for day: {day}")

    prefix = "NWAC " if include_nwac else ""
    return (
        f"{prefix}{zone.get('name')} Zone forecast: "
        f"{format_danger_ratings(danger_for_day)} ({build_forecast_url(product)})"
    )


def _product_date(product: dict[str, Any]) -> str:
    return str(product.get("start_date") or "").split("T")[0]


def _covers_zone(product: dict[str, Any], zone_key: int) -> bool:
    zones = product.get("forecast_zone")
    if not isinstance(zones, list):
        return False
    return any(isinstance(zone, dict) and zone.get("id") == zone_key for zone in zones)


class AvalancheForecastClient:
    """Looks up the NWAC forecast covering a coordinate on a given day."""

    def __init__(
        self,
        zone_locator: GeoJsonZoneLocator,
        *,
        cache: ForecastCache | None = None,
        session: requests.Session | None = None,
        timeout: int = 30,
        center_id: str = AVALANCHE_CENTER_ID,
    ):
        self.zone_locator = zone_locator
        self.cache = cache
        self.session = session or requests.Session()
        self.timeout = timeout
        self.center_id = center_id

    def fetch_products(self, date_start: str, date_end: str) -> list[dict[str, Any]]:
        response = self.session.get(
            f"{AVALANCHE_API_URL}/products",
            params={
                "avalanche_center_id": self.center_id,
                "date_start": date_start,
                "date_end": date_end,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            raise ValueError("API response is not an array")
        return [item for item in payload if isinstance(item, dict)]

    def fetch_forecasts_for_date(self, target_date: str) -> list[dict[str, Any]]:
        # The products endpoint returns nothing for a zero-length range.
        day = date.fromisoformat(target_date)
        products = self.fetch_products(
            (day - timedelta(days=1)).isoformat(),
            (day + timedelta(days=1)).isoformat(),
        )
        return [
            product
            for product in products
            if product.get("product_type") == "forecast" and _product_date(product) == target_date
        ]

    def fetch_forecast_for_zone(self, zone_key: int, target_date: str) -> dict[str, Any] | None:
        for product in self.fetch_forecasts_for_date(target_date):
            if _covers_zone(product, zone_key):
                return product
        return None

    def _cached_product(self, zone: Zone, target_date: str) -> tuple[bool, dict[str, Any] | None]:
        if self.cache is None:
            return False, None
        try:
            entry = self.cache.get(zone.id, target_date)
        except Exception:
            logger.exception("Forecast cache read failed for zone %s on %s.", zone.id, target_date)
            return False, None
        if entry is None:
            logger.debug("Cache miss for zone %s on %s.", zone.id, target_date)
            return False, None
        logger.debug("Cache hit for zone %s on %s (%s).", zone.id, target_date, entry.reason)
        return True, entry.product

    def _store_product(self, zone: Zone, target_date: str, product: dict[str, Any] | None) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(zone.id, target_date, product)
        except Exception:
            logger.exception("Forecast cache write failed for zone %s on %s.", zone.id, target_date)

    def lookup(self, coordinate: Coordinate, target_date: str) -> ForecastResult:
        try:
            zone = self.zone_locator.find_zone(coordinate)
        except (OSError, ValueError):
            logger.exception("Forecast zone catalogue could not be loaded.")
            return ForecastUnavailable("Forecast zones are unavailable")
        if zone is None:
            return OutsideCoverage()

        hit, product = self._cached_product(zone, target_date)
        if not hit:
            try:
                product = self.fetch_forecast_for_zone(zone.id, target_date)
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Forecast fetch failed for zone %s on %s: %s", zone.id, target_date, exc)
                return ForecastUnavailable(f"Failed to fetch products: {exc}")
            self._store_product(zone, target_date, product)

        if product is None:
            return ForecastUnavailable(f"No forecast available for {zone.name}")
        try:
            summary = format_forecast(product)
            url = build_forecast_url(product)
        except ValueError as exc:
            return ForecastUnavailable(str(exc))
        return Forecast(
            zone_name=zone.name,
            formatted_summary=summary,
            permalink_url=url,
            product_id=int(product.get("id") or 0),
        )
