from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import Coordinate


logger = logging.getLogger(__name__)

BBox = tuple[float, float, float, float]
Ring = list[tuple[float, float]]
Polygon = list[Ring]


@dataclass(frozen=True)
class Zone:
    """A forecast zone. `id` is the avalanche.org zone id, `zone_id` the one used in NWAC links."""

    id: int
    zone_id: str
    name: str
    polygons: tuple[Polygon, ...]
    bbox: BBox

    def contains(self, coordinate: Coordinate) -> bool:
        lng, lat = coordinate.longitude, coordinate.latitude
        min_lng, min_lat, max_lng, max_lat = self.bbox
        if not (min_lng <= lng <= max_lng and min_lat <= lat <= max_lat):
            return False
        return any(_point_in_polygon(lng, lat, polygon) for polygon in self.polygons)


def _point_in_ring(lng: float, lat: float, ring: Ring) -> bool:
    inside = False
    count = len(ring)
    if count < 3:
        return False
    j = count - 1
    for i in range(count):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            crossing = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < crossing:
                inside = not inside
        j = i
    return inside


def _point_in_polygon(lng: float, lat: float, polygon: Polygon) -> bool:
    if not polygon or not _point_in_ring(lng, lat, polygon[0]):
        return False
    # Remaining rings are holes.
    return not any(_point_in_ring(lng, lat, hole) for hole in polygon[1:])


def _parse_ring(raw: Any) -> Ring:
    ring: Ring = []
    if not isinstance(raw, list):
        return ring
    for point in raw:
        if isinstance(point, (list, tuple)) and len(point) >= 2:
            ring.append((float(point[0]), float(point[1])))
    return ring


def _parse_polygons(geometry: dict[str, Any]) -> list[Polygon]:
    geometry_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if not isinstance(coords, list):
        return []
    if geometry_type == "Polygon":
        return [[_parse_ring(ring) for ring in coords]]
    if geometry_type == "MultiPolygon":
        return [[_parse_ring(ring) for ring in polygon] for polygon in coords if isinstance(polygon, list)]
    return []


def _bbox_of_polygons(polygons: list[Polygon]) -> BBox | None:
    points = [point for polygon in polygons for ring in polygon[:1] for point in ring]
    if not points:
        return None
    lngs = [point[0] for point in points]
    lats = [point[1] for point in points]
    return (min(lngs), min(lats), max(lngs), max(lats))


def zones_from_geojson(payload: Any) -> list[Zone]:
    if not isinstance(payload, dict) or not isinstance(payload.get("features"), list):
        raise ValueError("Zone catalogue is not a GeoJSON FeatureCollection.")

    zones: list[Zone] = []
    for feature in payload["features"]:
        if not isinstance(feature, dict):
            continue
        properties = feature.get("properties") or {}
        geometry = feature.get("geometry") or {}
        try:
            zone_key = int(properties["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping zone feature without a numeric id: %s", properties.get("name"))
            continue
        polygons = _parse_polygons(geometry) if isinstance(geometry, dict) else []
        bbox = _bbox_of_polygons(polygons)
        if bbox is None:
            logger.warning("Skipping zone %s without polygon geometry.", zone_key)
            continue
        zones.append(
            Zone(
                id=zone_key,
                zone_id=str(properties.get("zone_id") or ""),
                name=str(properties.get("name") or f"Zone {zone_key}"),
                polygons=tuple(polygons),
                bbox=bbox,
            )
        )
    return zones


class GeoJsonZoneLocator:
    def __init__(self, zones_file: Path | None = None, zones: list[Zone] | None = None):
        self.zones_file = zones_file
        self._zones = list(zones) if zones is not None else None

    def zones(self) -> list[Zone]:
        if self._zones is None:
            if self.zones_file is None:
                raise ValueError("No zone catalogue configured.")
            with self.zones_file.open("r", encoding="utf-8") as handle:
                self._zones = zones_from_geojson(json.load(handle))
            logger.info("Loaded %s forecast zones from %s.", len(self._zones), self.zones_file)
        return self._zones

    def find_zone(self, coordinate: Coordinate) -> Zone | None:
        for zone in self.zones():
            if zone.contains(coordinate):
                return zone
        return None
