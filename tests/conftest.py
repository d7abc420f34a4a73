"""
Shared fixtures: failure-injecting stores, a fake redis client, SQLite URLs.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict, defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from errors import StoreUnavailableError
from stores.base import PREFERENCE_ORDER, ProfileStore, StoreWrite
from stores.memory_store import InMemoryProfileStore


class FlakyStore(ProfileStore):
    """
    In-memory store with switchable failures.

    - down: every call raises and ping() returns False
    - fail_reads: get_profile raises
    - fail_writes: the next N write_profile calls raise
    - delay: seconds to sleep inside every call
    """

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.inner = InMemoryProfileStore(name)
        self.down = False
        self.fail_reads = False
        self.fail_writes = 0
        self.delay = 0.0
        self.write_attempts = 0
        self.writes: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def _check(self, operation: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.down:
            raise StoreUnavailableError(self.name, "simulated outage", operation)

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._check("get_profile")
        if self.fail_reads:
            raise StoreUnavailableError(self.name, "simulated read failure", "get_profile")
        return self.inner.get_profile(user_id)

    def write_profile(self, user_id: str, profile: Dict[str, Any]) -> StoreWrite:
        with self._lock:
            self.write_attempts += 1
            failing = self.fail_writes > 0
            if failing:
                self.fail_writes -= 1
        self._check("write_profile")
        if failing:
            raise StoreUnavailableError(self.name, "simulated write failure", "write_profile")
        written = self.inner.write_profile(user_id, profile)
        with self._lock:
            self.writes.append((user_id, written.profile))
        return written

    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Dict[str, Any]]:
        self._check("list_feed_candidates")
        return self.inner.list_feed_candidates(exclude_user_id, limit)

    def list_user_ids(self) -> List[str]:
        self._check("list_user_ids")
        return self.inner.list_user_ids()

    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        self._check("upsert_many")
        return self.inner.upsert_many(collection, records, id_field)

    def iter_table(self, table: str, batch_size: int):
        self._check("iter_table")
        return self.inner.iter_table(table, batch_size)

    def append_sync_log(self, record: Mapping[str, Any]) -> None:
        self._check("append_sync_log")
        self.inner.append_sync_log(record)

    def ping(self) -> bool:
        if self.delay:
            time.sleep(self.delay)
        return not self.down

    def close(self) -> None:
        pass


class FakePipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._ops: List[Tuple[Callable[..., Any], tuple, dict]] = []

    def __getattr__(self, name: str) -> Callable[..., "FakePipeline"]:
        method = getattr(self._client, name)

        def queued(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._ops.append((method, args, kwargs))
            return self

        return queued

    def execute(self) -> List[Any]:
        ops, self._ops = self._ops, []
        return [method(*args, **kwargs) for method, args, kwargs in ops]


class FakeRedis:
    """The subset of redis.Redis the hierarchical store uses (decode_responses=True)."""

    def __init__(self) -> None:
        self.hashes: Dict[str, Dict[str, str]] = defaultdict(dict)
        self.sets: Dict[str, set] = defaultdict(set)
        self.published: List[Tuple[str, str]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        self._check()
        return FakePipeline(self)

    def hgetall(self, name: str) -> Dict[str, str]:
        self._check()
        return dict(self.hashes.get(name, {}))

    def hget(self, name: str, key: str) -> Optional[str]:
        self._check()
        return self.hashes.get(name, {}).get(key)

    def hset(self, name: str, mapping: Mapping[str, str]) -> int:
        self._check()
        self.hashes[name].update(mapping)
        return len(mapping)

    def delete(self, name: str) -> int:
        self._check()
        return 1 if self.hashes.pop(name, None) is not None else 0

    def exists(self, name: str) -> int:
        self._check()
        return 1 if self.hashes.get(name) else 0

    def sadd(self, name: str, value: str) -> int:
        self._check()
        self.sets[name].add(value)
        return 1

    def smembers(self, name: str) -> set:
        self._check()
        return set(self.sets.get(name, set()))

    def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 0

    def ping(self) -> bool:
        self._check()
        return True

    def close(self) -> None:
        pass


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def flaky_stores() -> "OrderedDict[str, FlakyStore]":
    return OrderedDict((name, FlakyStore(name)) for name in PREFERENCE_ORDER)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def sqlite_url(tmp_path) -> Callable[[str], str]:
    def make(name: str) -> str:
        return f"sqlite:///{tmp_path / name}.db"

    return make


@pytest.fixture
def sample_profile() -> Dict[str, Any]:
    return {
        "userId": "u1",
        "name": "Ada",
        "email": "ada@example.com",
        "city": "Austin",
        "age": 29,
        "budgetMin": 800,
        "budgetMax": 1200,
        "cleanliness": 7,
        "hasPets": False,
        "isActive": True,
        "isSuspended": False,
    }

