import tempfile
import unittest
from pathlib import Path

from avyhook.errors import CredentialNotFoundError
from avyhook.models import UserCredential
from avyhook.oauth_state import OAuthStateStore
from avyhook.token_store import TokenStore


def _credential(**overrides) -> UserCredential:
    values = {
        "athlete_id": 7,
        "access_token": "access-one",
        "refresh_token": "refresh-one",
        "expires_at": 1_800_000_000,
        "username": "skier",
        "firstname": "Sam",
        "lastname": "Skier",
    }
    values.update(overrides)
    return UserCredential(**values)


class TestTokenStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = TokenStore(Path(self._tmpdir.name) / "runtime_state.db")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_get_missing_returns_none(self) -> None:
        self.assertIsNone(self.store.get(99))

    def test_save_and_get(self) -> None:
        saved = self.store.save(_credential())
        self.assertEqual(saved.access_token, "access-one")
        self.assertIsNotNone(saved.created_at)
        loaded = self.store.get(7)
        self.assertEqual(loaded.refresh_token, "refresh-one")
        self.assertEqual(loaded.firstname, "Sam")

    def test_reconnect_keeps_created_at(self) -> None:
        first = self.store.save(_credential())
        second = self.store.save(_credential(access_token="access-two", refresh_token="refresh-two"))
        self.assertEqual(second.created_at, first.created_at)
        self.assertEqual(second.access_token, "access-two")

    def test_update_tokens_replaces_all_three_fields(self) -> None:
        self.store.save(_credential())
        self.store.update_tokens(7, access_token="access-new", refresh_token="refresh-new", expires_at=1_900_000_000)
        loaded = self.store.get(7)
        self.assertEqual(
            (loaded.access_token, loaded.refresh_token, loaded.expires_at),
            ("access-new", "refresh-new", 1_900_000_000),
        )

    def test_update_tokens_for_unknown_athlete(self) -> None:
        with self.assertRaises(CredentialNotFoundError):
            self.store.update_tokens(8, access_token="a", refresh_token="r", expires_at=1)

    def test_repr_hides_tokens(self) -> None:
        text = repr(_credential())
        self.assertNotIn("access-one", text)
        self.assertNotIn("refresh-one", text)


class TestOAuthStateStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = OAuthStateStore(Path(self._tmpdir.name) / "runtime_state.db", ttl_seconds=300)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_state_is_64_hex_chars(self) -> None:
        state = self.store.create(now=1_000)
        self.assertEqual(len(state.state), 64)
        int(state.state, 16)
        self.assertEqual(state.expires_at, 1_300)

    def test_state_is_single_use(self) -> None:
        state = self.store.create(now=1_000)
        self.assertTrue(self.store.consume(state.state, now=1_010))
        self.assertFalse(self.store.consume(state.state, now=1_011))

    def test_expired_state_rejected(self) -> None:
        state = self.store.create(now=1_000)
        self.assertFalse(self.store.consume(state.state, now=1_300))

    def test_unknown_and_empty_state_rejected(self) -> None:
        self.assertFalse(self.store.consume("deadbeef", now=1_000))
        self.assertFalse(self.store.consume("", now=1_000))
        self.assertFalse(self.store.consume(None, now=1_000))

    def test_purge_expired(self) -> None:
        self.store.create(now=1_000)
        live = self.store.create(now=2_000)
        self.assertEqual(self.store.purge_expired(now=1_500), 1)
        self.assertTrue(self.store.consume(live.state, now=2_001))


if __name__ == "__main__":
    unittest.main()
