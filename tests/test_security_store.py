"""Tests for the in-memory security store and what is built on it."""

import time

from app import security_store
from app.rate_limiter import check_rate_limit
from app.security_store import InMemoryStore
from app.security_utils import TokenBlacklist


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_set_if_absent(self) -> None:
        store = InMemoryStore()
        assert store.set_if_absent("used:abc", "1", ex=60)
        assert not store.set_if_absent("used:abc", "1", ex=60)
        store.delete("used:abc")
        assert store.set_if_absent("used:abc", "1")

    def test_expiry(self, monkeypatch) -> None:
        clock = FakeClock()
        monkeypatch.setattr(security_store.time, "monotonic", clock)
        store = InMemoryStore()
        store.set("k", "v", ex=10)
        assert store.ttl("k") == 10

        clock.now += 11
        assert store.get("k") is None
        assert store.ttl("k") == -2

    def test_incr_keeps_first_expiry(self, monkeypatch) -> None:
        clock = FakeClock()
        monkeypatch.setattr(security_store.time, "monotonic", clock)
        store = InMemoryStore()
        assert store.incr("hits", ex=60) == 1
        clock.now += 30
        assert store.incr("hits", ex=60) == 2
        assert store.ttl("hits") == 30

        clock.now += 31
        assert store.incr("hits", ex=60) == 1

    def test_no_expiry(self) -> None:
        store = InMemoryStore()
        store.set("k", "v")
        assert store.ttl("k") == -1
        assert store.exists("k")


class TestBuiltOnStore:
    """Tests for the blacklist and rate limit counters."""

    def test_token_blacklist(self, store) -> None:
        blacklist = TokenBlacklist(store)
        blacklist.revoke("header.payload.signature", int(time.time()) + 60)
        assert blacklist.is_revoked("header.payload.signature")
        assert not blacklist.is_revoked("other.token.value")

    def test_already_expired_token_is_not_stored(self, store) -> None:
        blacklist = TokenBlacklist(store)
        blacklist.revoke("header.payload.signature", int(time.time()) - 5)
        assert not blacklist.is_revoked("header.payload.signature")

    def test_rate_limit_window(self, store) -> None:
        results = [check_rate_limit("login:10.0.0.1", limit=2, window_seconds=60)[0] for _ in range(3)]
        assert results == [True, True, False]
        # Other clients have their own counter
        assert check_rate_limit("login:10.0.0.2", limit=2, window_seconds=60)[0]
