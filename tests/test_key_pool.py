"""Tests for the key pool: initialization, round-robin and invalidation."""

import threading

import pytest

from key_pool import Credential, KeyPoolManager, KeySource, KeyStatus, mask_key
from key_store import MemoryKeyStore


class TestInitialize:
    """Tests for building the pool from user and system sources."""

    def test_user_keys_take_precedence(self, make_pool):
        """Saved user keys are used instead of system keys."""
        pool = make_pool(user_keys=["u1", "u2"], system_keys=["s1"])

        assert pool.source == KeySource.USER
        assert [c.key for c in pool.credentials()] == ["u1", "u2"]

    def test_falls_back_to_system_keys(self, make_pool):
        """With no user keys the system keys are used."""
        pool = make_pool(system_keys=["s1", "s2"])

        assert pool.source == KeySource.SYSTEM
        assert pool.total_count == 2
        assert not pool.is_user_supplied

    def test_all_keys_start_active(self, make_pool):
        pool = make_pool(user_keys=["a", "b", "c"])
        assert all(c.status == KeyStatus.ACTIVE for c in pool.credentials())

    def test_duplicates_and_blanks_dropped(self, make_pool):
        """Keys are trimmed and de-duplicated in first-seen order."""
        pool = make_pool(system_keys=[" a ", "b", "", "a"])
        assert [c.key for c in pool.credentials()] == ["a", "b"]

    def test_empty_pool(self, make_pool):
        pool = make_pool()
        assert pool.total_count == 0
        assert pool.next_candidate() is None

    def test_reinitialize_reactivates_keys(self, make_pool):
        """A rebuild is the only way back from invalid."""
        pool = make_pool(user_keys=["a", "b"])
        pool.mark_invalid("a")

        pool.initialize()

        assert pool.active_count == 2

    def test_reinitialize_resets_cursor(self, make_pool):
        pool = make_pool(user_keys=["a", "b", "c"])
        pool.next_candidate()
        pool.next_candidate()

        pool.initialize()

        assert pool.next_candidate().key == "a"


class TestUserCredentials:
    """Tests for set/get of the user key list."""

    def test_set_trims_and_drops_empty(self, make_pool):
        pool = make_pool(system_keys=["s1"])

        pool.set_user_credentials(["  a ", "", "   ", "b"])

        assert pool.get_user_credentials() == ["a", "b"]
        assert pool.source == KeySource.USER
        assert [c.key for c in pool.credentials()] == ["a", "b"]

    def test_set_empty_falls_back_to_system(self, make_pool):
        pool = make_pool(user_keys=["u1"], system_keys=["s1", "s2"])

        pool.set_user_credentials([])

        assert pool.get_user_credentials() == []
        assert pool.source == KeySource.SYSTEM
        assert [c.key for c in pool.credentials()] == ["s1", "s2"]

    def test_survives_restart(self):
        """A new pool over the same store sees the saved keys."""
        store = MemoryKeyStore()
        KeyPoolManager(store=store, system_keys_loader=list).set_user_credentials(["a", "b"])

        restarted = KeyPoolManager(store=store, system_keys_loader=list)

        assert restarted.get_user_credentials() == ["a", "b"]
        assert restarted.source == KeySource.USER

    def test_initialize_reads_persisted_list(self):
        """The pool is only ever built from what the store holds."""
        store = MemoryKeyStore()
        pool = KeyPoolManager(store=store, system_keys_loader=lambda: ["s1"])
        store.save(["u1"])

        pool.initialize()

        assert pool.source == KeySource.USER
        assert [c.key for c in pool.credentials()] == pool.get_user_credentials() == ["u1"]

    def test_without_store_keeps_keys_in_memory(self):
        pool = KeyPoolManager(system_keys_loader=lambda: ["s1"])

        pool.set_user_credentials(["x"])

        assert pool.get_user_credentials() == ["x"]
        assert pool.source == KeySource.USER


class TestNextCandidate:
    """Tests for round-robin selection."""

    def test_round_robin_order(self, make_pool):
        pool = make_pool(user_keys=["a", "b", "c"])
        picked = [pool.next_candidate().key for _ in range(6)]
        assert picked == ["a", "b", "c", "a", "b", "c"]

    @pytest.mark.parametrize("invalid", [["a"], ["b"], ["a", "c"], ["b", "c", "d"]])
    def test_visits_each_active_once_per_cycle(self, make_pool, invalid):
        """N-K calls visit every active key exactly once."""
        keys = ["a", "b", "c", "d"]
        pool = make_pool(user_keys=keys)
        for key in invalid:
            pool.mark_invalid(key)
        active = [k for k in keys if k not in invalid]

        first_cycle = [pool.next_candidate().key for _ in active]
        second_cycle = [pool.next_candidate().key for _ in active]

        assert sorted(first_cycle) == sorted(active)
        assert second_cycle == first_cycle

    def test_skipping_invalid_keeps_relative_order(self, make_pool):
        pool = make_pool(user_keys=["a", "b", "c", "d"])
        pool.next_candidate()  # a

        pool.mark_invalid("c")

        assert [pool.next_candidate().key for _ in range(4)] == ["b", "d", "a", "b"]

    def test_never_returns_invalid(self, make_pool):
        pool = make_pool(user_keys=["a", "b"])
        pool.mark_invalid("b")
        assert {pool.next_candidate().key for _ in range(5)} == {"a"}

    def test_only_active_marked_invalid_returns_none(self, make_pool):
        pool = make_pool(user_keys=["a"])

        pool.mark_invalid("a")

        assert pool.next_candidate() is None

    def test_exclude_skips_without_consuming(self, make_pool):
        pool = make_pool(user_keys=["a", "b", "c"])

        assert pool.next_candidate(exclude={"a"}).key == "b"
        assert pool.next_candidate(exclude={"a", "b", "c"}) is None
        assert pool.next_candidate().key == "c"


class TestMarkInvalid:
    """Tests for the active -> invalid transition."""

    def test_idempotent(self, make_pool):
        pool = make_pool(user_keys=["a", "b"])

        assert pool.mark_invalid("a") is True
        assert pool.mark_invalid("a") is False

        statuses = [c.status for c in pool.credentials()]
        assert statuses.count(KeyStatus.INVALID) == 1

    def test_unknown_key_is_noop(self, make_pool):
        pool = make_pool(user_keys=["a"])
        assert pool.mark_invalid("zzz") is False
        assert pool.active_count == 1

    def test_concurrent_marks_lose_no_updates(self, make_pool):
        """Threads marking and selecting leave a consistent partition."""
        keys = [f"key-{i}" for i in range(50)]
        pool = make_pool(user_keys=keys)
        to_invalidate = keys[::2]

        def worker(chunk):
            for key in chunk:
                pool.next_candidate()
                pool.mark_invalid(key)

        threads = [threading.Thread(target=worker, args=(to_invalidate[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        invalid = {c.key for c in pool.credentials() if c.status == KeyStatus.INVALID}
        assert invalid == set(to_invalidate)
        assert pool.active_count == 25


class TestStatus:
    """Tests for status reporting and masking."""

    def test_get_status_counts(self, make_pool):
        pool = make_pool(user_keys=["AIzaSyAAAAAAAAAAAA1234", "AIzaSyBBBBBBBBBBBB5678"])
        pool.mark_invalid("AIzaSyBBBBBBBBBBBB5678")

        status = pool.get_status()

        assert status["source"] == "user"
        assert status["total"] == 2
        assert status["active"] == 1
        assert status["invalid"] == 1
        assert status["keys"][1] == {"masked": "AIza...5678", "status": "invalid"}

    def test_mask_never_shows_whole_key(self):
        assert mask_key("AIzaSyAAAAAAAAAAAA1234") == "AIza...1234"
        assert mask_key("short") == "...ort"
        assert mask_key("") == "?"

    def test_credential_suffix(self):
        assert Credential(key="abcdefghij").suffix == "efghij"
