from __future__ import annotations

import json
import logging
from typing import Any

from .enrichment import (
    NO_LOCATION_REASON,
    append_paragraph,
    has_existing_forecast_marker,
    has_manual_command,
    resolve_target_date,
    strip_forecast_blocks,
    strip_manual_command,
    unavailable_note,
)
from .errors import AvyhookError, MalformedPayloadError, ProcessResult
from .forecast import Forecast, ForecastProvider
from .models import ASPECT_CREATE, ASPECT_UPDATE, ActivityRecord, ProcessingDecision, WebhookNotification
from .strava_client import StravaClient
from .tokens import TokenManager


logger = logging.getLogger(__name__)

AUTO_ACTIVITY_TYPE = "BackcountrySki"

BRANCH_FETCH = "fetch"
BRANCH_SKIP = "skip"
BRANCH_AUTO_ENRICH = "auto_enrich"
BRANCH_MANUAL_ENRICH = "manual_enrich"
BRANCH_MANUAL_REFRESH = "manual_refresh"
BRANCH_MANUAL_NO_LOCATION = "manual_no_location"


def decide(
    notification: WebhookNotification,
    activity: ActivityRecord,
    *,
    relaxed_marker_match: bool = False,
) -> ProcessingDecision:
    manual = has_manual_command(activity.title)
    automatic = notification.aspect_type == ASPECT_CREATE and activity.activity_type == AUTO_ACTIVITY_TYPE
    should_process = automatic or (notification.aspect_type == ASPECT_UPDATE and manual)
    has_marker = has_existing_forecast_marker(activity.description, relaxed=relaxed_marker_match)
    target_date = resolve_target_date(activity.start_date_local, activity.start_date_utc)

    if not should_process:
        branch = BRANCH_SKIP
    elif activity.start_coordinate is None:
        branch = BRANCH_MANUAL_NO_LOCATION if manual else BRANCH_SKIP
    elif has_marker:
        branch = BRANCH_MANUAL_REFRESH if manual else BRANCH_SKIP
    else:
        branch = BRANCH_MANUAL_ENRICH if manual else BRANCH_AUTO_ENRICH

    return ProcessingDecision(
        should_process=should_process,
        has_manual_command=manual,
        has_existing_forecast_marker=has_marker,
        target_date=target_date,
        branch=branch,
    )


def _skip_reason(decision: ProcessingDecision, activity: ActivityRecord) -> str:
    if not decision.should_process:
        return "Activity does not meet processing criteria"
    if activity.start_coordinate is None:
        return "Activity has no start location"
    return "Activity description already contains a forecast"


class EnrichmentProcessor:
    def __init__(
        self,
        tokens: TokenManager,
        client: StravaClient,
        forecasts: ForecastProvider,
        *,
        attribution: str = "",
        relaxed_marker_match: bool = False,
    ):
        self.tokens = tokens
        self.client = client
        self.forecasts = forecasts
        self.attribution = attribution
        self.relaxed_marker_match = relaxed_marker_match

    def process_payload(self, payload: str) -> ProcessResult:
        try:
            notification = WebhookNotification.from_payload(json.loads(payload))
        except (TypeError, ValueError) as exc:
            return ProcessResult.failed(BRANCH_FETCH, None, MalformedPayloadError(f"Queued payload is invalid: {exc}"))
        except MalformedPayloadError as exc:
            return ProcessResult.failed(BRANCH_FETCH, None, exc)
        return self.process(notification)

    def process(self, notification: WebhookNotification) -> ProcessResult:
        activity_id = notification.object_id
        try:
            access_token = self.tokens.get_valid_access_token(notification.owner_id)
            activity = self.client.get_activity(access_token, activity_id)
        except AvyhookError as exc:
            logger.warning("Could not load activity %s: %s", activity_id, exc)
            return ProcessResult.failed(BRANCH_FETCH, activity_id, exc)

        decision = decide(notification, activity, relaxed_marker_match=self.relaxed_marker_match)
        logger.info(
            "Activity %s (%s, %s event): branch=%s manual=%s marker=%s date=%s",
            activity_id,
            activity.activity_type,
            notification.aspect_type,
            decision.branch,
            decision.has_manual_command,
            decision.has_existing_forecast_marker,
            decision.target_date,
        )

        if decision.branch == BRANCH_SKIP:
            return ProcessResult.skipped(BRANCH_SKIP, activity_id, _skip_reason(decision, activity))

        if decision.branch == BRANCH_MANUAL_NO_LOCATION:
            updates = {
                "name": strip_manual_command(activity.title),
                "description": append_paragraph(activity.description, unavailable_note(NO_LOCATION_REASON)),
            }
            return self._apply(access_token, activity_id, decision.branch, updates)

        description = activity.description
        if decision.branch == BRANCH_MANUAL_REFRESH:
            description = strip_forecast_blocks(description, self.attribution, relaxed=self.relaxed_marker_match)

        result = self.forecasts.lookup(activity.start_coordinate, decision.target_date)
        if isinstance(result, Forecast):
            logger.info("Found forecast %s for zone %s.", result.product_id, result.zone_name)
            description = append_paragraph(description, result.formatted_summary)
            if self.attribution:
                description = append_paragraph(description, self.attribution)
        elif decision.has_manual_command:
            description = append_paragraph(description, unavailable_note(result.reason))
        else:
            logger.info("No forecast for activity %s: %s", activity_id, result.reason)
            return ProcessResult.skipped(decision.branch, activity_id, result.reason)

        updates: dict[str, Any] = {"description": description}
        if decision.has_manual_command:
            updates["name"] = strip_manual_command(activity.title)
        return self._apply(access_token, activity_id, decision.branch, updates)

    def _apply(self, access_token: str, activity_id: int, branch: str, updates: dict[str, Any]) -> ProcessResult:
        try:
            self.client.update_activity(access_token, activity_id, updates)
        except AvyhookError as exc:
            logger.warning("Update of activity %s failed: %s", activity_id, exc)
            return ProcessResult.failed(branch, activity_id, exc)
        logger.info("Updated activity %s via %s.", activity_id, branch)
        return ProcessResult.updated(branch, activity_id)
