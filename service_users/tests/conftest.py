"""
Shared fixtures for Users Service tests.

The in-memory store and cache mirror the behaviour the repository relies
on: active-only reads, newest-first pages, a unique email among active
rows, and glob key enumeration.
"""

import itertools
from dataclasses import replace
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

import pytest

from shared.errors import ConflictError, UpstreamUnavailableError
from service_users.app.cache.key_enumeration import ScanEnumeration
from service_users.app.models import NewUser, User
from service_users.app.repository.user_repository import CachedUserRepository


class FakeUserStore:
    """In-memory stand-in for UserStore."""

    def __init__(self):
        self.rows: Dict[UUID, User] = {}
        self.calls: List[str] = []
        self.down = False
        self._order: Dict[UUID, int] = {}
        self._seq = itertools.count()

    def _check(self, operation: str):
        self.calls.append(operation)
        if self.down:
            raise UpstreamUnavailableError("postgres", f"{operation} failed")

    async def insert(self, user: User) -> None:
        self._check("insert")
        if any(row.is_active and row.email == user.email for row in self.rows.values()):
            raise ConflictError("User with this email already exists")
        self.rows[user.id] = user
        self._order[user.id] = next(self._seq)

    async def get_active_by_id(self, user_id: UUID) -> Optional[User]:
        self._check("select_active_by_id")
        row = self.rows.get(user_id)
        return row if row and row.is_active else None

    async def get_active_by_email(self, email: str) -> Optional[User]:
        self._check("select_active_by_email")
        for row in self.rows.values():
            if row.is_active and row.email == email:
                return row
        return None

    async def list_active(self, limit: int, offset: int) -> List[User]:
        self._check("select_active_page")
        active = [row for row in self.rows.values() if row.is_active]
        active.sort(key=lambda row: (row.created_at, self._order[row.id]), reverse=True)
        return active[offset:offset + limit]

    async def update_active(self, user_id: UUID, fields: Mapping[str, Any]) -> bool:
        self._check("update_active")
        row = self.rows.get(user_id)
        if row is None or not row.is_active:
            return False
        self.rows[user_id] = replace(row, updated_at=datetime.now(timezone.utc), **fields)
        return True

    async def soft_delete(self, user_id: UUID) -> bool:
        self._check("soft_delete")
        row = self.rows.get(user_id)
        if row is None or not row.is_active:
            return False
        self.rows[user_id] = replace(row, is_active=False, updated_at=datetime.now(timezone.utc))
        return True

    async def count_active(self) -> int:
        self._check("count_active")
        return sum(1 for row in self.rows.values() if row.is_active)

    async def ping(self) -> None:
        self._check("ping")


class FakeCache:
    """In-memory stand-in for RedisCache. Set ``down`` to fail every call."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.calls: List[str] = []
        self.down = False
        self.failing: set = set()
        self.enumeration = ScanEnumeration()

    def _check(self, operation: str):
        self.calls.append(operation)
        if self.down or operation in self.failing:
            raise UpstreamUnavailableError("redis", f"{operation} failed")

    async def get(self, key: str) -> Optional[bytes]:
        self._check("get")
        return self.data.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._check("set")
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
        return deleted

    async def increment(self, key: str, window_seconds: int) -> int:
        self._check("increment")
        count = int(self.data.get(key, b"0")) + 1
        self.data[key] = str(count).encode()
        if count == 1:
            self.ttls[key] = window_seconds
        return count

    async def keys_matching(self, pattern: str) -> List[str]:
        self._check("keys_matching")
        return sorted(key for key in self.data if fnmatchcase(key, pattern))

    async def ping(self) -> None:
        self._check("ping")

    async def info(self) -> dict:
        self._check("info")
        return {"redis_version": "7.2.0", "used_memory": "1M", "connected_clients": 1, "hit_rate": 0.0}


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def count(self, metric_name: str, **labels) -> int:
        return sum(
            1 for name, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


def _draft(index: int = 1, **overrides) -> NewUser:
    values = {
        "email": f"user{index}@example.com",
        "username": f"user{index}",
        "first_name": "Test",
        "last_name": f"User{index}",
    }
    values.update(overrides)
    return NewUser(**values)


@pytest.fixture
def store():
    return FakeUserStore()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def repository(store, cache, metrics):
    return CachedUserRepository(store, cache, user_ttl=3600, list_ttl=1800, metrics=metrics)


@pytest.fixture
def make_draft():
    """Factory for NewUser drafts with distinct emails."""
    return _draft
