from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, redirect, render_template, request

from .config import Settings
from .errors import AvyhookError, StoreUnavailableError, SubscriptionRejectedError
from .logging_utils import configure_logging
from .oauth import complete_authorization, start_authorization
from .oauth_state import OAuthStateStore
from .storage import (
    count_jobs_by_status,
    enqueue_job,
    get_runtime_value,
    get_worker_heartbeat,
    is_worker_healthy,
)
from .strava_client import StravaClient
from .token_store import TokenStore
from .webhook import SIGNATURE_HEADER, accept_notification, verify_subscription


logger = logging.getLogger(__name__)

app = Flask(__name__)
settings = Settings.from_env()
settings.ensure_state_paths()
configure_logging(settings.log_level)


def _strava_client() -> StravaClient:
    return StravaClient.from_settings(settings)


def _state_store() -> OAuthStateStore:
    return OAuthStateStore(settings.runtime_db_file, settings.oauth_state_ttl_seconds)


def _default_callback_url() -> str:
    return request.url_root.rstrip("/") + "/callback"


def _state_path_writable(state_dir: Path) -> bool:
    probe = state_dir / ".ready_probe"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
        probe.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _error_payload(exc: AvyhookError) -> tuple[dict, int]:
    return {"status": "error", "error": exc.code, "message": str(exc)}, exc.http_status


def _enqueue(body: str) -> str | None:
    return enqueue_job(settings.runtime_db_file, body, max_attempts=settings.queue_max_attempts)


@app.get("/health")
def health() -> tuple[dict, int]:
    heartbeat = get_worker_heartbeat(settings.runtime_db_file)
    return (
        {
            "status": "ok",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "worker_last_heartbeat_utc": heartbeat.isoformat() if heartbeat else None,
        },
        200,
    )


@app.get("/ready")
def ready() -> tuple[dict, int]:
    checks = {
        "state_path_writable": _state_path_writable(settings.state_dir),
        "credentials_configured": bool(
            settings.strava_client_id and settings.strava_client_secret and settings.strava_verify_token
        ),
        "worker_heartbeat_healthy": is_worker_healthy(
            settings.runtime_db_file,
            max_age_seconds=settings.worker_health_max_age_seconds,
        ),
    }
    ready_ok = all(checks.values())
    return (
        {
            "status": "ready" if ready_ok else "not_ready",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "jobs": count_jobs_by_status(settings.runtime_db_file),
            "cycle_last_status": get_runtime_value(settings.runtime_db_file, "cycle.last_status"),
        },
        200 if ready_ok else 503,
    )


@app.get("/webhook")
def webhook_verify() -> tuple[dict, int]:
    try:
        payload = verify_subscription(
            request.args.get("hub.mode"),
            request.args.get("hub.verify_token"),
            request.args.get("hub.challenge"),
            settings.strava_verify_token,
        )
    except SubscriptionRejectedError as exc:
        logger.warning("Webhook subscription verification rejected.")
        return _error_payload(exc)
    logger.info("Webhook subscription verified.")
    return payload, 200


@app.post("/webhook")
def webhook_receive() -> tuple[dict, int]:
    try:
        result = accept_notification(
            request.get_data(),
            request.headers.get(SIGNATURE_HEADER),
            secret=settings.strava_client_secret,
            enqueue=_enqueue,
        )
    except AvyhookError as exc:
        if exc.retryable:
            logger.error("Webhook delivery not stored: %s", exc)
        else:
            logger.warning("Webhook delivery rejected: %s", exc)
        return _error_payload(exc)
    return result.as_dict(), 200


@app.get("/connect")
def connect():
    if not settings.strava_client_id:
        return {"status": "error", "error": "STRAVA_CLIENT_ID is not configured."}, 500
    redirect_uri = settings.oauth_redirect_uri or _default_callback_url()
    try:
        authorize_url = start_authorization(
            _state_store(),
            client_id=settings.strava_client_id,
            redirect_uri=redirect_uri,
            scope=settings.oauth_scope,
        )
    except StoreUnavailableError as exc:
        logger.exception("Could not start authorization.")
        return _error_payload(exc)
    return redirect(authorize_url, 302)


@app.get("/callback")
def callback() -> tuple[str, int]:
    outcome = complete_authorization(
        request.args.get("code"),
        request.args.get("state"),
        request.args.get("error"),
        state_store=_state_store(),
        token_store=TokenStore(settings.runtime_db_file),
        client=_strava_client(),
    )
    return render_template("callback.html", outcome=outcome), outcome.http_status


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=settings.api_port)
