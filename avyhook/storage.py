from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_CLAIMED = "claimed"
JOB_STATUS_RETRY_WAIT = "retry_wait"
JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED_PERMANENT = "failed_permanent"

JOB_STATUS_NON_TERMINAL = {
    JOB_STATUS_QUEUED,
    JOB_STATUS_CLAIMED,
    JOB_STATUS_RETRY_WAIT,
}
JOB_STATUS_TERMINAL = {
    JOB_STATUS_SUCCEEDED,
    JOB_STATUS_FAILED_PERMANENT,
}
JOB_STATUS_ALL = JOB_STATUS_NON_TERMINAL | JOB_STATUS_TERMINAL

WORKER_HEARTBEAT_KEY = "worker.last_heartbeat_utc"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _parse_utc(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def connect_runtime_db(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runtime_kv (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            athlete_id INTEGER PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            expires_at INTEGER NOT NULL,
            username TEXT,
            firstname TEXT,
            lastname TEXT,
            created_at_utc TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS oauth_states (
            state TEXT PRIMARY KEY,
            issued_at INTEGER NOT NULL,
            expires_at INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            status TEXT NOT NULL,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 5,
            requested_at_utc TEXT NOT NULL,
            available_at_utc TEXT NOT NULL,
            lease_owner TEXT,
            lease_expires_at_utc TEXT,
            finished_at_utc TEXT,
            last_error TEXT,
            last_result_json TEXT,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS forecast_cache (
            cache_key TEXT PRIMARY KEY,
            forecast_json TEXT,
            cached_at_utc TEXT NOT NULL,
            expires_at_utc TEXT,
            reason TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_status_available
        ON jobs (status, available_at_utc, requested_at_utc)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_oauth_states_expires
        ON oauth_states (expires_at)
        """
    )
    return conn


def _to_json_string(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _from_json_string(value_json: str) -> Any:
    return json.loads(value_json)


def set_runtime_value(db_path: Path, key: str, value: Any) -> None:
    set_runtime_values(db_path, {key: value})


def set_runtime_values(db_path: Path, values: dict[str, Any]) -> None:
    if not values:
        return
    now_iso = _utc_now_iso()
    try:
        with connect_runtime_db(db_path) as conn:
            conn.executemany(
                """
                INSERT INTO runtime_kv (key, value_json, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                [(key, _to_json_string(value), now_iso) for key, value in values.items()],
            )
    except sqlite3.Error:
        return


def get_runtime_value(db_path: Path, key: str, default: Any = None) -> Any:
    try:
        with connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT value_json FROM runtime_kv WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
    except sqlite3.Error:
        return default

    if row is None:
        return default
    try:
        return _from_json_string(str(row[0]))
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def set_worker_heartbeat(db_path: Path, heartbeat_utc: datetime | None = None) -> None:
    now = heartbeat_utc.astimezone(timezone.utc) if heartbeat_utc else _utc_now()
    set_runtime_value(db_path, WORKER_HEARTBEAT_KEY, now.isoformat())


def get_worker_heartbeat(db_path: Path) -> datetime | None:
    raw = get_runtime_value(db_path, WORKER_HEARTBEAT_KEY)
    return _parse_utc(raw)


def is_worker_healthy(
    db_path: Path,
    max_age_seconds: int,
    now_utc: datetime | None = None,
) -> bool:
    heartbeat = get_worker_heartbeat(db_path)
    if heartbeat is None:
        return False
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    age = (now - heartbeat).total_seconds()
    return age <= max(30, int(max_age_seconds))


def _status_value(value: Any) -> str:
    return str(value or "").strip().lower()


def _to_job_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    result_raw = row["last_result_json"]
    try:
        last_result = _from_json_string(result_raw) if result_raw else None
    except (json.JSONDecodeError, TypeError, ValueError):
        last_result = None
    return {
        "job_id": str(row["job_id"]),
        "payload": str(row["payload_json"]),
        "status": _status_value(row["status"]),
        "attempt_count": int(row["attempt_count"]),
        "max_attempts": int(row["max_attempts"]),
        "requested_at_utc": row["requested_at_utc"],
        "available_at_utc": row["available_at_utc"],
        "lease_owner": row["lease_owner"],
        "lease_expires_at_utc": row["lease_expires_at_utc"],
        "finished_at_utc": row["finished_at_utc"],
        "last_error": row["last_error"],
        "last_result": last_result,
    }


def enqueue_job(
    db_path: Path,
    payload: str,
    *,
    max_attempts: int = 5,
    available_at_utc: datetime | None = None,
) -> str | None:
    payload_value = str(payload or "")
    if not payload_value.strip():
        return None

    job_id = uuid.uuid4().hex
    now_iso = _utc_now_iso()
    available_iso = available_at_utc.astimezone(timezone.utc).isoformat() if available_at_utc else now_iso

    try:
        with connect_runtime_db(db_path) as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    job_id,
                    payload_json,
                    status,
                    attempt_count,
                    max_attempts,
                    requested_at_utc,
                    available_at_utc,
                    updated_at_utc
                )
                VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    payload_value,
                    JOB_STATUS_QUEUED,
                    max(1, int(max_attempts)),
                    now_iso,
                    available_iso,
                    now_iso,
                ),
            )
        return job_id
    except sqlite3.Error:
        return None


def claim_next_job(
    db_path: Path,
    *,
    owner: str,
    lease_seconds: int,
    now_utc: datetime | None = None,
) -> dict[str, Any] | None:
    owner_value = str(owner).strip()
    if not owner_value:
        return None

    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    lease_expires_iso = (now + timedelta(seconds=max(30, int(lease_seconds)))).isoformat()

    try:
        with connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT job_id
                FROM jobs
                WHERE status IN (?, ?)
                  AND available_at_utc <= ?
                ORDER BY available_at_utc ASC, requested_at_utc ASC
                LIMIT 1
                """,
                (JOB_STATUS_QUEUED, JOB_STATUS_RETRY_WAIT, now_iso),
            ).fetchone()
            if row is None:
                return None

            job_id = str(row["job_id"])
            conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    attempt_count = attempt_count + 1,
                    lease_owner = ?,
                    lease_expires_at_utc = ?,
                    updated_at_utc = ?
                WHERE job_id = ?
                """,
                (
                    JOB_STATUS_CLAIMED,
                    owner_value,
                    lease_expires_iso,
                    now_iso,
                    job_id,
                ),
            )
            claimed = conn.execute("SELECT * FROM jobs WHERE job_id = ? LIMIT 1", (job_id,)).fetchone()
            return _to_job_dict(claimed)
    except sqlite3.Error:
        return None


def complete_job(
    db_path: Path,
    job_id: str,
    *,
    owner: str,
    outcome: str,
    error: str | None = None,
    result: Any = None,
    retry_delay_seconds: int = 60,
    now_utc: datetime | None = None,
) -> str | None:
    job_id_value = str(job_id).strip()
    owner_value = str(owner).strip()
    if not job_id_value or not owner_value:
        return None

    normalized_outcome = _status_value(outcome)
    if normalized_outcome not in {JOB_STATUS_SUCCEEDED, JOB_STATUS_RETRY_WAIT, JOB_STATUS_FAILED_PERMANENT}:
        normalized_outcome = JOB_STATUS_FAILED_PERMANENT

    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    retry_at_iso = (now + timedelta(seconds=max(1, int(retry_delay_seconds)))).isoformat()

    result_json: str | None = None
    if result is not None:
        try:
            result_json = _to_json_string(result)
        except (TypeError, ValueError):
            result_json = _to_json_string({"value": str(result)})

    try:
        with connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT status, attempt_count, max_attempts, lease_owner
                FROM jobs
                WHERE job_id = ?
                LIMIT 1
                """,
                (job_id_value,),
            ).fetchone()
            if row is None:
                return None
            if _status_value(row["status"]) != JOB_STATUS_CLAIMED:
                return None
            if str(row["lease_owner"] or "").strip() != owner_value:
                return None

            attempts = int(row["attempt_count"])
            max_attempts = max(1, int(row["max_attempts"]))
            final_outcome = normalized_outcome
            if final_outcome == JOB_STATUS_RETRY_WAIT and attempts >= max_attempts:
                final_outcome = JOB_STATUS_FAILED_PERMANENT

            finished_at_value = now_iso if final_outcome in JOB_STATUS_TERMINAL else None
            available_at_value = retry_at_iso if final_outcome == JOB_STATUS_RETRY_WAIT else now_iso

            conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    lease_owner = NULL,
                    lease_expires_at_utc = NULL,
                    finished_at_utc = COALESCE(?, finished_at_utc),
                    available_at_utc = ?,
                    last_error = ?,
                    last_result_json = COALESCE(?, last_result_json),
                    updated_at_utc = ?
                WHERE job_id = ?
                """,
                (
                    final_outcome,
                    finished_at_value,
                    available_at_value,
                    error,
                    result_json,
                    now_iso,
                    job_id_value,
                ),
            )
            return final_outcome
    except sqlite3.Error:
        return None


def requeue_expired_jobs(db_path: Path, *, now_utc: datetime | None = None) -> int:
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    try:
        with connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE jobs
                SET
                    status = CASE WHEN attempt_count >= max_attempts THEN ? ELSE ? END,
                    finished_at_utc = CASE WHEN attempt_count >= max_attempts THEN ? ELSE finished_at_utc END,
                    last_error = COALESCE(last_error, 'lease expired'),
                    lease_owner = NULL,
                    lease_expires_at_utc = NULL,
                    available_at_utc = ?,
                    updated_at_utc = ?
                WHERE status = ?
                  AND lease_expires_at_utc IS NOT NULL
                  AND lease_expires_at_utc <= ?
                """,
                (
                    JOB_STATUS_FAILED_PERMANENT,
                    JOB_STATUS_QUEUED,
                    now_iso,
                    now_iso,
                    now_iso,
                    JOB_STATUS_CLAIMED,
                    now_iso,
                ),
            )
            return max(0, int(cursor.rowcount))
    except sqlite3.Error:
        return 0


def get_job(db_path: Path, job_id: str) -> dict[str, Any] | None:
    try:
        with connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ? LIMIT 1",
                (str(job_id).strip(),),
            ).fetchone()
    except sqlite3.Error:
        return None
    return _to_job_dict(row)


def count_jobs_by_status(db_path: Path) -> dict[str, int]:
    counts = {status: 0 for status in sorted(JOB_STATUS_ALL)}
    try:
        with connect_runtime_db(db_path) as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status").fetchall()
    except sqlite3.Error:
        return counts
    for row in rows:
        counts[_status_value(row["status"])] = int(row["total"])
    return counts
