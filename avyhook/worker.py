from __future__ import annotations

import logging
import os
import socket
import time
from datetime import datetime, timezone
from typing import Any

from .config import Settings
from .errors import ProcessResult
from .forecast import AvalancheForecastClient
from .forecast_cache import SqliteForecastCache
from .logging_utils import configure_logging
from .oauth_state import OAuthStateStore
from .processor import EnrichmentProcessor
from .storage import (
    JOB_STATUS_FAILED_PERMANENT,
    JOB_STATUS_RETRY_WAIT,
    JOB_STATUS_SUCCEEDED,
    claim_next_job,
    complete_job,
    requeue_expired_jobs,
    set_runtime_values,
    set_worker_heartbeat,
)
from .strava_client import StravaClient
from .token_store import TokenStore
from .tokens import TokenManager
from .zones import GeoJsonZoneLocator


logger = logging.getLogger(__name__)

STATE_PURGE_INTERVAL_SECONDS = 300


def retry_delay_seconds(attempt: int, base_seconds: int, max_seconds: int) -> int:
    exponent = max(0, int(attempt) - 1)
    return int(min(max_seconds, base_seconds * (2 ** exponent)))


def outcome_for(result: ProcessResult) -> str:
    if result.ok:
        return JOB_STATUS_SUCCEEDED
    if result.retryable:
        return JOB_STATUS_RETRY_WAIT
    return JOB_STATUS_FAILED_PERMANENT


def worker_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def build_processor(settings: Settings) -> EnrichmentProcessor:
    client = StravaClient.from_settings(settings)
    tokens = TokenManager(
        TokenStore(settings.runtime_db_file),
        client,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
    )
    cache = SqliteForecastCache(settings.runtime_db_file) if settings.enable_forecast_cache else None
    forecasts = AvalancheForecastClient(
        GeoJsonZoneLocator(settings.zones_file),
        cache=cache,
        timeout=settings.http_timeout_seconds,
    )
    return EnrichmentProcessor(
        tokens,
        client,
        forecasts,
        attribution=settings.forecast_attribution,
        relaxed_marker_match=settings.enable_relaxed_forecast_match,
    )


def run_cycle(
    settings: Settings,
    processor: EnrichmentProcessor,
    *,
    owner: str,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    db_path = settings.runtime_db_file
    requeued = requeue_expired_jobs(db_path, now_utc=now_utc)
    if requeued:
        logger.warning("Requeued %s job(s) whose lease expired.", requeued)

    job = claim_next_job(
        db_path,
        owner=owner,
        lease_seconds=settings.queue_visibility_timeout_seconds,
        now_utc=now_utc,
    )
    if job is None:
        return {"status": "idle"}

    job_id = job["job_id"]
    attempt = job["attempt_count"]
    try:
        result = processor.process_payload(job["payload"])
    except Exception as exc:
        logger.exception("Job %s raised during processing.", job_id)
        outcome = JOB_STATUS_RETRY_WAIT
        error_text = f"{type(exc).__name__}: {exc}"
        result_payload: dict[str, Any] = {"status": "error", "error": error_text}
    else:
        outcome = outcome_for(result)
        error_text = result.reason if not result.ok else None
        result_payload = result.as_dict()

    final = complete_job(
        db_path,
        job_id,
        owner=owner,
        outcome=outcome,
        error=error_text,
        result=result_payload,
        retry_delay_seconds=retry_delay_seconds(
            attempt,
            settings.queue_retry_base_seconds,
            settings.queue_retry_max_seconds,
        ),
        now_utc=now_utc,
    )
    if final == JOB_STATUS_FAILED_PERMANENT:
        logger.error("Job %s dead-lettered after %s attempt(s): %s", job_id, attempt, error_text)
    elif final == JOB_STATUS_RETRY_WAIT:
        logger.warning("Job %s scheduled for retry after attempt %s: %s", job_id, attempt, error_text)
    elif final is None:
        logger.warning("Job %s lease was lost before completion.", job_id)

    return {"status": final or "lease_lost", "job_id": job_id, "attempt": attempt, "result": result_payload}


def main() -> None:
    settings = Settings.from_env()
    settings.ensure_state_paths()
    configure_logging(settings.log_level)
    settings.validate()

    processor = build_processor(settings)
    state_store = OAuthStateStore(settings.runtime_db_file, settings.oauth_state_ttl_seconds)
    owner = worker_owner_id()
    interval = settings.worker_poll_interval_seconds
    last_purge = 0.0

    logger.info("Worker %s started with poll interval: %ss", owner, interval)

    while True:
        set_worker_heartbeat(settings.runtime_db_file)
        try:
            if time.monotonic() - last_purge >= STATE_PURGE_INTERVAL_SECONDS:
                purged = state_store.purge_expired()
                if purged:
                    logger.info("Purged %s expired authorization state(s).", purged)
                last_purge = time.monotonic()

            result = run_cycle(settings, processor, owner=owner)
            set_runtime_values(
                settings.runtime_db_file,
                {
                    "cycle.last_status": result["status"],
                    "cycle.last_finished_utc": datetime.now(timezone.utc).isoformat(),
                },
            )
        except Exception:
            logger.exception("Worker cycle failed.")
            time.sleep(interval)
            continue

        if result["status"] == "idle":
            time.sleep(interval)
        else:
            logger.info("Cycle result: %s", result)


if __name__ == "__main__":
    main()
