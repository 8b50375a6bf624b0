from __future__ import annotations

import logging
import re
from dataclasses import dataclass


logger = logging.getLogger(__name__)

MANUAL_COMMAND = "#avy_forecast"
FORECAST_PERMALINK_PREFIX = "https://nwac.us/avalanche-forecast/#/forecast/"
NO_LOCATION_REASON = "Activity has no location data"
DEFAULT_UNAVAILABLE_REASON = "No forecast available for this location/date"

_MARKER_PATTERN = re.compile(
    r"(?:https?://)?nwac\.us/avalanche-forecast/#/forecast/"
    r"(?P<zone_id>[^/\s)]*)/?(?P<product_id>[^/\s)]*)"
)
# Deprecated: matches the rendered forecast text rather than the permalink.
_RELAXED_PATTERN = re.compile(r"NWAC [^\n]*Zone forecast:")
_BLANK_RUN_PATTERN = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class EnrichmentMarker:
    zone_id: str
    product_id: str
    url: str
    line_number: int


def find_enrichment_markers(description: str | None) -> list[EnrichmentMarker]:
    markers: list[EnrichmentMarker] = []
    for line_number, line in enumerate((description or "").splitlines()):
        for match in _MARKER_PATTERN.finditer(line):
            markers.append(
                EnrichmentMarker(
                    zone_id=match.group("zone_id"),
                    product_id=match.group("product_id"),
                    url=match.group(0),
                    line_number=line_number,
                )
            )
    return markers


def has_existing_forecast_marker(description: str | None, *, relaxed: bool = False) -> bool:
    if find_enrichment_markers(description):
        return True
    if relaxed and _RELAXED_PATTERN.search(description or ""):
        logger.warning("Forecast marker detected by the deprecated text match only.")
        return True
    return False


def has_manual_command(title: str | None) -> bool:
    return MANUAL_COMMAND in (title or "")


def strip_manual_command(title: str | None) -> str:
    return (title or "").replace(MANUAL_COMMAND, "").strip()


def resolve_target_date(start_date_local: str | None, start_date_utc: str | None) -> str:
    # Local calendar date wins over UTC.
    source = start_date_local or start_date_utc or ""
    return source.split("T")[0]


def unavailable_note(reason: str | None) -> str:
    return f"[No avalanche forecast available: {reason or DEFAULT_UNAVAILABLE_REASON}]"


def append_paragraph(description: str | None, text: str) -> str:
    base = (description or "").rstrip()
    if not base:
        return text
    return f"{base}\n\n{text}"


def strip_forecast_blocks(
    description: str | None,
    attribution: str | None = None,
    *,
    relaxed: bool = False,
) -> str:
    """Remove every forecast line and the attribution line directly after it.

    With `relaxed`, lines that only match the rendered forecast text count too.
    """
    lines = (description or "").splitlines()
    attribution_text = (attribution or "").strip()
    kept: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if not (_MARKER_PATTERN.search(line) or (relaxed and _RELAXED_PATTERN.search(line))):
            kept.append(line)
            index += 1
            continue

        index += 1
        lookahead = index
        while lookahead < len(lines) and not lines[lookahead].strip():
            lookahead += 1
        if attribution_text and lookahead < len(lines) and lines[lookahead].strip() == attribution_text:
            index = lookahead + 1

    text = "\n".join(kept)
    return _BLANK_RUN_PATTERN.sub("\n\n", text).strip()
