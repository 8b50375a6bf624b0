from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .errors import CredentialNotFoundError, StoreUnavailableError
from .models import UserCredential
from .storage import connect_runtime_db


logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_credential(row: sqlite3.Row) -> UserCredential:
    return UserCredential(
        athlete_id=int(row["athlete_id"]),
        access_token=str(row["access_token"]),
        refresh_token=str(row["refresh_token"]),
        expires_at=int(row["expires_at"]),
        username=row["username"],
        firstname=row["firstname"],
        lastname=row["lastname"],
        created_at=row["created_at_utc"],
        updated_at=row["updated_at_utc"],
    )


class TokenStore:
    """Per-athlete OAuth credentials kept in the runtime database."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def get(self, athlete_id: int) -> UserCredential | None:
        try:
            with connect_runtime_db(self.db_path) as conn:
                row = conn.execute(
                    "SELECT * FROM users WHERE athlete_id = ? LIMIT 1",
                    (int(athlete_id),),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Token store read failed: {exc}") from exc
        if row is None:
            return None
        return _row_to_credential(row)

    def save(self, credential: UserCredential) -> UserCredential:
        now_iso = _utc_now_iso()
        try:
            with connect_runtime_db(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        athlete_id,
                        access_token,
                        refresh_token,
                        expires_at,
                        username,
                        firstname,
                        lastname,
                        created_at_utc,
                        updated_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(athlete_id) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at = excluded.expires_at,
                        username = excluded.username,
                        firstname = excluded.firstname,
                        lastname = excluded.lastname,
                        updated_at_utc = excluded.updated_at_utc
                    """,
                    (
                        int(credential.athlete_id),
                        credential.access_token,
                        credential.refresh_token,
                        int(credential.expires_at),
                        credential.username,
                        credential.firstname,
                        credential.lastname,
                        now_iso,
                        now_iso,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM users WHERE athlete_id = ? LIMIT 1",
                    (int(credential.athlete_id),),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Token store write failed: {exc}") from exc
        logger.info("Stored credentials for athlete %s.", credential.athlete_id)
        return _row_to_credential(row)

    def update_tokens(
        self,
        athlete_id: int,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: int,
    ) -> None:
        # Single statement: the old refresh token is dead once the provider answers.
        try:
            with connect_runtime_db(self.db_path) as conn:
                cursor = conn.execute(
                    """
                    UPDATE users
                    SET
                        access_token = ?,
                        refresh_token = ?,
                        expires_at = ?,
                        updated_at_utc = ?
                    WHERE athlete_id = ?
                    """,
                    (access_token, refresh_token, int(expires_at), _utc_now_iso(), int(athlete_id)),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Token store write failed: {exc}") from exc
        if cursor.rowcount == 0:
            raise CredentialNotFoundError(f"No credentials stored for athlete {athlete_id}.")
