from __future__ import annotations

import secrets
import sqlite3
import time
from pathlib import Path

from .errors import StoreUnavailableError
from .models import AuthorizationState
from .storage import connect_runtime_db


STATE_BYTES = 32
DEFAULT_STATE_TTL_SECONDS = 300


class OAuthStateStore:
    """Single-use CSRF state tokens for the authorization redirect."""

    def __init__(self, db_path: Path, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS):
        self.db_path = db_path
        self.ttl_seconds = int(ttl_seconds)

    def create(self, now: int | None = None) -> AuthorizationState:
        issued_at = int(time.time() if now is None else now)
        state = AuthorizationState(
            state=secrets.token_hex(STATE_BYTES),
            issued_at=issued_at,
            expires_at=issued_at + self.ttl_seconds,
        )
        try:
            with connect_runtime_db(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO oauth_states (state, issued_at, expires_at) VALUES (?, ?, ?)",
                    (state.state, state.issued_at, state.expires_at),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"State store write failed: {exc}") from exc
        return state

    def consume(self, state: str | None, now: int | None = None) -> bool:
        value = str(state or "").strip()
        if not value:
            return False
        current = int(time.time() if now is None else now)
        try:
            with connect_runtime_db(self.db_path) as conn:
                cursor = conn.execute(
                    "DELETE FROM oauth_states WHERE state = ? AND expires_at > ?",
                    (value, current),
                )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"State store write failed: {exc}") from exc
        return cursor.rowcount == 1

    def purge_expired(self, now: int | None = None) -> int:
        current = int(time.time() if now is None else now)
        try:
            with connect_runtime_db(self.db_path) as conn:
                cursor = conn.execute("DELETE FROM oauth_states WHERE expires_at <= ?", (current,))
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"State store write failed: {exc}") from exc
        return max(0, int(cursor.rowcount))
