import json
import unittest

from avyhook.errors import (
    RESULT_ERROR,
    RESULT_SKIPPED,
    RESULT_UPDATED,
    ActivityFetchFailedError,
    CredentialNotFoundError,
    ExternalUpdateFailedError,
)
from avyhook.forecast import Forecast, ForecastUnavailable, OutsideCoverage
from avyhook.models import ActivityRecord, Coordinate, WebhookNotification
from avyhook.processor import (
    BRANCH_AUTO_ENRICH,
    BRANCH_MANUAL_ENRICH,
    BRANCH_MANUAL_NO_LOCATION,
    BRANCH_MANUAL_REFRESH,
    BRANCH_SKIP,
    EnrichmentProcessor,
)


ATTRIBUTION = "Powered by Strava"
MT_HOOD = Coordinate(latitude=45.37, longitude=-121.7)


def _forecast(product_id: int) -> Forecast:
    url = f"https://nwac.us/avalanche-forecast/#/forecast/10/{product_id}"
    return Forecast(
        zone_name="Mt Hood",
        formatted_summary=f"NWAC Mt Hood Zone forecast: 3🟧/3🟧/2🟨 ({url})",
        permalink_url=url,
        product_id=product_id,
    )


def _activity(**overrides) -> ActivityRecord:
    values = {
        "id": 42,
        "activity_type": "BackcountrySki",
        "title": "Mt Hood tour",
        "description": "Great day on Mt Hood!",
        "start_date_utc": "2025-04-10T14:30:00Z",
        "start_date_local": "2025-04-10T07:30:00Z",
        "start_coordinate": MT_HOOD,
    }
    values.update(overrides)
    return ActivityRecord(**values)


def _notification(aspect_type: str = "create") -> WebhookNotification:
    return WebhookNotification(
        object_type="activity",
        object_id=42,
        aspect_type=aspect_type,
        owner_id=7,
        event_time=1_700_000_000,
    )


class _FakeTokens:
    def __init__(self, error=None):
        self.error = error

    def get_valid_access_token(self, athlete_id):
        if self.error is not None:
            raise self.error
        return "access-abc"


class _FakeStrava:
    """Applies updates to its in-memory activity, like the real API would."""

    def __init__(self, activity: ActivityRecord, update_error=None):
        self.activity = activity
        self.update_error = update_error
        self.updates = []

    def get_activity(self, access_token, activity_id):
        return self.activity

    def update_activity(self, access_token, activity_id, payload):
        self.updates.append(payload)
        if self.update_error is not None:
            raise self.update_error
        self.activity = ActivityRecord(
            id=self.activity.id,
            activity_type=self.activity.activity_type,
            title=payload.get("name", self.activity.title),
            description=payload["description"],
            start_date_utc=self.activity.start_date_utc,
            start_date_local=self.activity.start_date_local,
            start_coordinate=self.activity.start_coordinate,
        )
        return {"id": activity_id}


class _FakeForecasts:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def lookup(self, coordinate, target_date):
        self.calls.append((coordinate, target_date))
        return self.result


def _processor(strava, forecasts, tokens=None, relaxed: bool = False) -> EnrichmentProcessor:
    return EnrichmentProcessor(
        tokens or _FakeTokens(), strava, forecasts, attribution=ATTRIBUTION, relaxed_marker_match=relaxed
    )


class TestEnrichmentProcessor(unittest.TestCase):
    def test_auto_enrich_appends_forecast_and_attribution(self) -> None:
        strava = _FakeStrava(_activity())
        forecasts = _FakeForecasts(_forecast(166378))
        result = _processor(strava, forecasts).process(_notification())

        self.assertEqual(result.status, RESULT_UPDATED)
        self.assertEqual(result.branch, BRANCH_AUTO_ENRICH)
        self.assertEqual(
            strava.updates,
            [
                {
                    "description": (
                        "Great day on Mt Hood!\n\n"
                        f"{_forecast(166378).formatted_summary}\n\n"
                        "Powered by Strava"
                    )
                }
            ],
        )
        self.assertEqual(forecasts.calls, [(MT_HOOD, "2025-04-10")])

    def test_redelivery_updates_only_once(self) -> None:
        strava = _FakeStrava(_activity())
        processor = _processor(strava, _FakeForecasts(_forecast(166378)))
        first = processor.process(_notification())
        second = processor.process(_notification())
        self.assertEqual(first.status, RESULT_UPDATED)
        self.assertEqual(second.status, RESULT_SKIPPED)
        self.assertEqual(len(strava.updates), 1)

    def test_non_ski_create_is_skipped(self) -> None:
        strava = _FakeStrava(_activity(activity_type="Run"))
        forecasts = _FakeForecasts(_forecast(166378))
        result = _processor(strava, forecasts).process(_notification())
        self.assertEqual(result.branch, BRANCH_SKIP)
        self.assertEqual(strava.updates, [])
        self.assertEqual(forecasts.calls, [])

    def test_update_without_command_is_skipped(self) -> None:
        strava = _FakeStrava(_activity())
        result = _processor(strava, _FakeForecasts(_forecast(1))).process(_notification("update"))
        self.assertEqual(result.status, RESULT_SKIPPED)
        self.assertEqual(strava.updates, [])

    def test_manual_enrich_any_type_strips_title(self) -> None:
        strava = _FakeStrava(_activity(activity_type="Hike", title="Hood hike #avy_forecast"))
        result = _processor(strava, _FakeForecasts(_forecast(166378))).process(_notification("update"))
        self.assertEqual(result.branch, BRANCH_MANUAL_ENRICH)
        self.assertEqual(strava.updates[0]["name"], "Hood hike")
        self.assertIn("166378", strava.updates[0]["description"])

    def test_manual_refresh_replaces_previous_forecast(self) -> None:
        old = f"Great day on Mt Hood!\n\n{_forecast(166377).formatted_summary}\n\nPowered by Strava"
        strava = _FakeStrava(_activity(title="Tour #avy_forecast", description=old))
        result = _processor(strava, _FakeForecasts(_forecast(166378))).process(_notification("update"))

        self.assertEqual(result.branch, BRANCH_MANUAL_REFRESH)
        description = strava.updates[0]["description"]
        self.assertNotIn("166377", description)
        self.assertIn("166378", description)
        self.assertEqual(description.count("Powered by Strava"), 1)
        self.assertEqual(strava.updates[0]["name"], "Tour")

    def test_relaxed_refresh_replaces_text_only_forecast(self) -> None:
        old = "Nice day\n\nNWAC Mt Hood Zone forecast: 3/3/2 (bit.ly/abc)\n\nPowered by Strava"
        strava = _FakeStrava(_activity(title="Tour #avy_forecast", description=old))
        result = _processor(strava, _FakeForecasts(_forecast(166378)), relaxed=True).process(_notification("update"))

        self.assertEqual(result.branch, BRANCH_MANUAL_REFRESH)
        description = strava.updates[0]["description"]
        self.assertNotIn("bit.ly/abc", description)
        self.assertEqual(description.count("Zone forecast:"), 1)
        self.assertEqual(description.count("Powered by Strava"), 1)
        self.assertTrue(description.startswith("Nice day\n\n"))

    def test_marker_without_command_skips(self) -> None:
        old = f"Great day\n\n{_forecast(166377).formatted_summary}"
        strava = _FakeStrava(_activity(description=old))
        forecasts = _FakeForecasts(_forecast(166378))
        result = _processor(strava, forecasts).process(_notification())
        self.assertEqual(result.status, RESULT_SKIPPED)
        self.assertEqual(forecasts.calls, [])

    def test_manual_without_location_never_looks_up_forecast(self) -> None:
        strava = _FakeStrava(_activity(title="Indoor #avy_forecast", start_coordinate=None, description="Treadmill"))
        forecasts = _FakeForecasts(_forecast(166378))
        result = _processor(strava, forecasts).process(_notification("update"))

        self.assertEqual(result.branch, BRANCH_MANUAL_NO_LOCATION)
        self.assertEqual(forecasts.calls, [])
        self.assertEqual(
            strava.updates,
            [
                {
                    "name": "Indoor",
                    "description": "Treadmill\n\n[No avalanche forecast available: Activity has no location data]",
                }
            ],
        )

    def test_auto_without_location_is_silent(self) -> None:
        strava = _FakeStrava(_activity(start_coordinate=None))
        forecasts = _FakeForecasts(_forecast(166378))
        result = _processor(strava, forecasts).process(_notification())
        self.assertEqual(result.status, RESULT_SKIPPED)
        self.assertEqual(strava.updates, [])
        self.assertEqual(forecasts.calls, [])

    def test_manual_unavailable_appends_reason(self) -> None:
        strava = _FakeStrava(_activity(title="Tour #avy_forecast"))
        _processor(strava, _FakeForecasts(OutsideCoverage())).process(_notification("update"))
        self.assertTrue(
            strava.updates[0]["description"].endswith(
                "[No avalanche forecast available: Coordinate is outside all NWAC forecast zones]"
            )
        )

    def test_auto_unavailable_is_silent(self) -> None:
        strava = _FakeStrava(_activity())
        result = _processor(strava, _FakeForecasts(ForecastUnavailable("No forecast available for Mt Hood"))).process(
            _notification()
        )
        self.assertEqual(result.status, RESULT_SKIPPED)
        self.assertEqual(strava.updates, [])

    def test_local_date_used_for_lookup(self) -> None:
        strava = _FakeStrava(_activity(start_date_local="2025-04-09T23:30:00", start_date_utc="2025-04-10T06:30:00Z"))
        forecasts = _FakeForecasts(_forecast(1))
        _processor(strava, forecasts).process(_notification())
        self.assertEqual(forecasts.calls[0][1], "2025-04-09")

    def test_fetch_failure_is_retryable(self) -> None:
        tokens = _FakeTokens(error=ActivityFetchFailedError("boom"))
        result = _processor(_FakeStrava(_activity()), _FakeForecasts(_forecast(1)), tokens=tokens).process(
            _notification()
        )
        self.assertEqual(result.status, RESULT_ERROR)
        self.assertTrue(result.retryable)

    def test_missing_credential_is_terminal(self) -> None:
        tokens = _FakeTokens(error=CredentialNotFoundError("no user"))
        result = _processor(_FakeStrava(_activity()), _FakeForecasts(_forecast(1)), tokens=tokens).process(
            _notification()
        )
        self.assertEqual(result.status, RESULT_ERROR)
        self.assertFalse(result.retryable)

    def test_update_failure_is_retryable(self) -> None:
        strava = _FakeStrava(_activity(), update_error=ExternalUpdateFailedError("503"))
        result = _processor(strava, _FakeForecasts(_forecast(1))).process(_notification())
        self.assertEqual(result.status, RESULT_ERROR)
        self.assertTrue(result.retryable)
        self.assertEqual(result.as_dict()["error_code"], "external_update_failed")

    def test_process_payload_rejects_bad_json(self) -> None:
        processor = _processor(_FakeStrava(_activity()), _FakeForecasts(_forecast(1)))
        result = processor.process_payload("{oops")
        self.assertEqual(result.status, RESULT_ERROR)
        self.assertFalse(result.retryable)

    def test_process_payload_parses_notification(self) -> None:
        strava = _FakeStrava(_activity())
        processor = _processor(strava, _FakeForecasts(_forecast(1)))
        payload = json.dumps({"object_type": "activity", "object_id": 42, "aspect_type": "create", "owner_id": 7})
        self.assertEqual(processor.process_payload(payload).status, RESULT_UPDATED)


if __name__ == "__main__":
    unittest.main()
