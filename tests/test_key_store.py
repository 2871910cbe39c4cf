"""Tests for persistence of the user key list."""

from key_pool import KeyPoolManager, KeySource
from key_store import STORAGE_KEY, UserKeyStore
from models import get_setting, set_setting


class TestUserKeyStore:
    """Tests for UserKeyStore over the settings table."""

    def test_load_empty(self, memory_db):
        assert UserKeyStore(memory_db).load() == []

    def test_save_and_load(self, memory_db):
        store = UserKeyStore(memory_db)

        store.save(["a", "b"])

        assert store.load() == ["a", "b"]

    def test_stored_as_json_array(self, memory_db):
        UserKeyStore(memory_db).save(["a", "b"])

        with memory_db() as db:
            assert get_setting(db, STORAGE_KEY) == '["a", "b"]'

    def test_save_empty_removes_entry(self, memory_db):
        store = UserKeyStore(memory_db)
        store.save(["a"])

        store.save([])

        with memory_db() as db:
            assert get_setting(db, STORAGE_KEY) is None
        assert store.load() == []

    def test_malformed_json_fails_soft(self, memory_db):
        """Corrupted JSON reads as empty and the entry is cleared."""
        with memory_db() as db:
            set_setting(db, STORAGE_KEY, "[not json")

        assert UserKeyStore(memory_db).load() == []
        with memory_db() as db:
            assert get_setting(db, STORAGE_KEY) is None

    def test_wrong_shape_fails_soft(self, memory_db):
        with memory_db() as db:
            set_setting(db, STORAGE_KEY, '{"key": "a"}')

        assert UserKeyStore(memory_db).load() == []

    def test_non_string_items_fail_soft(self, memory_db):
        with memory_db() as db:
            set_setting(db, STORAGE_KEY, '["a", 3]')

        assert UserKeyStore(memory_db).load() == []


class TestPoolPersistence:
    """Round trip of user keys through the database."""

    def test_round_trip_across_restart(self, memory_db):
        pool = KeyPoolManager(store=UserKeyStore(memory_db), system_keys_loader=lambda: ["sys"])
        pool.set_user_credentials(["a", "b"])

        # Simulated restart: new pool, same database
        restarted = KeyPoolManager(store=UserKeyStore(memory_db), system_keys_loader=lambda: ["sys"])

        assert restarted.get_user_credentials() == ["a", "b"]
        assert restarted.source == KeySource.USER

    def test_clearing_falls_back_to_system(self, memory_db):
        pool = KeyPoolManager(store=UserKeyStore(memory_db), system_keys_loader=lambda: ["sys"])
        pool.set_user_credentials(["a"])

        pool.set_user_credentials([])

        assert pool.get_user_credentials() == []
        assert [c.key for c in pool.credentials()] == ["sys"]
