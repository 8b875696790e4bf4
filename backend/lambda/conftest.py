"""Shared pytest fixtures for the rentals Lambdas and the shared layer.

``MemoryKV`` mirrors ``rentals_shared.kv.KVClient`` in memory, with TTLs
driven by an injectable clock and per-operation failure injection.
"""

from __future__ import annotations

import datetime as dt
import os
import sys
from typing import Callable, Dict, List, Optional, Set, Tuple

import jwt
import pytest

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "shared_layer", "python"))

from rentals_shared import config  # noqa: E402
from rentals_shared.errors import StoreUnavailable  # noqa: E402

TEST_JWT_SECRET = "test-admin-secret-0123456789abcdef012"


class FrozenClock:
    def __init__(self, now: dt.datetime):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class MemoryKV:
    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.values: Dict[str, bytes] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.counters: Dict[str, int] = {}
        self.expires: Dict[str, float] = {}
        self.clock = clock or (lambda: dt.datetime.now(dt.timezone.utc).timestamp())
        self.calls: List[Tuple[str, str]] = []
        self._failures: List[Tuple[str, Callable[[str], bool]]] = []

    # -- test helpers ------------------------------------------------------

    def fail(self, operation: str, key_predicate: Optional[Callable[[str], bool]] = None) -> None:
        """Make ``operation`` raise StoreUnavailable for matching keys."""
        self._failures.append((operation, key_predicate or (lambda key: True)))

    def heal(self) -> None:
        self._failures.clear()

    def writes(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in {"set", "delete", "expire", "incr", "set_add", "set_remove"}]

    def _call(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        for failing, predicate in self._failures:
            if failing == operation and predicate(key):
                raise StoreUnavailable(f"Store {operation} failed for '{key}'", {"key": key})
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.values.pop(key, None)
            self.sets.pop(key, None)
            self.counters.pop(key, None)
            self.expires.pop(key, None)

    def _exists(self, key: str) -> bool:
        return key in self.values or key in self.sets or key in self.counters

    # -- KVClient surface --------------------------------------------------

    def get(self, key: str) -> Optional[bytes]:
        self._call("get", key)
        return self.values.get(key)

    def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        self._call("set", key)
        self.values[key] = bytes(value)
        if ttl is not None:
            self.expires[key] = self.clock() + ttl
        else:
            self.expires.pop(key, None)

    def delete(self, key: str) -> None:
        self._call("delete", key)
        self.values.pop(key, None)
        self.sets.pop(key, None)
        self.counters.pop(key, None)
        self.expires.pop(key, None)

    def expire(self, key: str, ttl: int) -> bool:
        self._call("expire", key)
        if not self._exists(key):
            return False
        self.expires[key] = self.clock() + ttl
        return True

    def incr(self, key: str, amount: int = 1) -> int:
        self._call("incr", key)
        self.counters[key] = self.counters.get(key, 0) + amount
        return self.counters[key]

    def set_add(self, set_key: str, member: str) -> None:
        self._call("set_add", set_key)
        self.sets.setdefault(set_key, set()).add(str(member))

    def set_remove(self, set_key: str, member: str) -> None:
        self._call("set_remove", set_key)
        members = self.sets.get(set_key)
        if members is not None:
            members.discard(str(member))
            if not members:
                del self.sets[set_key]

    def set_members(self, set_key: str) -> Set[str]:
        self._call("set_members", set_key)
        return set(self.sets.get(set_key, set()))

    def set_card(self, set_key: str) -> int:
        self._call("set_card", set_key)
        return len(self.sets.get(set_key, set()))

    def keys_matching(self, pattern: str) -> List[str]:
        import fnmatch

        self._call("keys_matching", pattern)
        keys = set(self.values) | set(self.sets) | set(self.counters)
        return sorted(k for k in keys if fnmatch.fnmatchcase(k, pattern))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(dt.datetime(2026, 3, 1, 12, 0, 0, tzinfo=dt.timezone.utc))


@pytest.fixture
def kv(clock) -> MemoryKV:
    return MemoryKV(clock=lambda: clock().timestamp())


@pytest.fixture
def admin_token(monkeypatch) -> str:
    monkeypatch.setattr(config, "ADMIN_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(config, "ADMIN_JWT_AUDIENCE", "")
    now = dt.datetime.now(dt.timezone.utc)
    return jwt.encode(
        {"sub": "admin-1", "email": "admin@example.com", "iat": now, "exp": now + dt.timedelta(hours=1)},
        TEST_JWT_SECRET,
        algorithm="HS256",
    )


@pytest.fixture
def configured_store(monkeypatch):
    monkeypatch.setattr(config, "CONTENT_TABLE", "rentals-content-test")
