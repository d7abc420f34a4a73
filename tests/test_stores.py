"""
Tests for the profile store adapters.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, text

from errors import SchemaDriftDegraded, StoreUnavailableError
from stores import (
    DOCUMENT,
    HIERARCHICAL,
    RELATIONAL,
    DocumentStore,
    HierarchicalStore,
    InMemoryProfileStore,
    RelationalStore,
    build_profile_stores,
)
from stores.normalizer import normalize
from stores.postgres_store import engine_options, is_missing_column_error


class TestInMemoryStore:
    """Test in-memory store implementation."""

    @pytest.fixture
    def store(self):
        return InMemoryProfileStore("memory")

    def test_get_missing_returns_none(self, store):
        """Test getting an unknown profile returns None."""
        assert store.get_profile("nobody") is None

    def test_put_and_get(self, store, sample_profile):
        """Test basic write/read."""
        store.put_profile("u1", normalize(sample_profile))
        profile = store.get_profile("u1")
        assert profile["name"] == "Ada"
        assert profile["user_id"] == "u1"
        assert profile["created_at"]

    def test_put_is_idempotent(self, store, sample_profile):
        """Test writing the same profile twice stores the same record."""
        first = store.put_profile("u1", normalize(sample_profile))
        second = store.put_profile("u1", normalize(sample_profile))
        assert first == second
        assert store.list_user_ids() == ["u1"]

    def test_reads_are_copies(self, store):
        """Test mutating a returned profile does not change the store."""
        store.put_profile("u1", {"name": "Ada"})
        store.get_profile("u1")["name"] = "Changed"
        assert store.get_profile("u1")["name"] == "Ada"

    def test_feed_filters_inactive_suspended_and_self(self, store):
        """Test feed candidates exclude the caller and inactive or suspended users."""
        store.put_profile("me", {"is_active": True})
        store.put_profile("ok", {"is_active": True, "is_suspended": False})
        store.put_profile("off", {"is_active": False})
        store.put_profile("banned", {"is_active": True, "is_suspended": True})
        ids = [p["user_id"] for p in store.list_feed_candidates("me", 10)]
        assert ids == ["ok"]

    def test_feed_respects_limit(self, store):
        """Test the feed is bounded by limit."""
        for i in range(5):
            store.put_profile(f"u{i}", {"is_active": True})
        assert len(store.list_feed_candidates("x", 3)) == 3
        assert store.list_feed_candidates("x", 0) == []
        assert store.list_feed_candidates("x", -1) == []

    def test_upsert_many_counts(self, store):
        """Test bulk upsert reports inserts and updates."""
        assert store.upsert_many("users", [{"user_id": "a"}, {"user_id": "b"}], "user_id") == {"inserted": 2, "updated": 0}
        assert store.upsert_many("users", [{"user_id": "a"}], "user_id") == {"inserted": 0, "updated": 1}

    def test_iter_table_batches(self, store):
        """Test table export yields bounded batches."""
        for i in range(5):
            store.put_profile(f"u{i}", {"name": str(i)})
        batches = list(store.iter_table("users", 2))
        assert [len(b) for b in batches] == [2, 2, 1]


class TestRelationalStore:
    """Test the SQL profile store against SQLite."""

    @pytest.fixture
    def store(self, sqlite_url):
        store = RelationalStore(sqlite_url("relational"))
        yield store
        store.close()

    def test_put_and_get(self, store, sample_profile):
        """Test a written profile reads back with typed values."""
        store.put_profile("u1", normalize(sample_profile))
        profile = store.get_profile("u1")
        assert profile["user_id"] == "u1"
        assert profile["name"] == "Ada"
        assert profile["age"] == 29
        assert profile["is_active"] is True
        assert profile["has_pets"] is False

    def test_get_missing_returns_none(self, store):
        """Test an absent user is None, not an error."""
        assert store.get_profile("nobody") is None

    def test_put_twice_keeps_one_row_and_created_at(self, store, sample_profile):
        """Test idempotent upsert: one row, unchanged created_at."""
        first = store.put_profile("u1", normalize(sample_profile))
        second = store.put_profile("u1", normalize(sample_profile))
        assert first == second
        assert first["created_at"]
        assert store.list_user_ids() == ["u1"]

    def test_created_at_is_never_overwritten(self, store):
        """Test an update carrying created_at keeps the stored value."""
        store.put_profile("u1", {"name": "Ada", "created_at": "2020-01-01T00:00:00+00:00"})
        store.put_profile("u1", {"name": "Ada", "created_at": "2030-01-01T00:00:00+00:00"})
        assert store.get_profile("u1")["created_at"] == "2020-01-01T00:00:00+00:00"

    def test_unknown_columns_are_dropped(self, store):
        """Test fields outside the schema are silently ignored."""
        written = store.write_profile("u1", {"name": "Ada", "favorite_color": "green"})
        assert written.drift is None
        assert "favorite_color" not in store.get_profile("u1")

    def test_json_columns_round_trip(self, store):
        """Test list fields come back as lists."""
        store.put_profile("u1", {"neighborhoods": ["Downtown", "Zilker"]})
        assert store.get_profile("u1")["neighborhoods"] == ["Downtown", "Zilker"]

    def test_feed_candidates(self, store):
        """Test the feed excludes self, inactive and suspended users."""
        store.put_profile("me", {"is_active": True})
        store.put_profile("ok", {"is_active": True})
        store.put_profile("off", {"is_active": False})
        store.put_profile("banned", {"is_active": True, "is_suspended": True})
        assert [p["user_id"] for p in store.list_feed_candidates("me", 10)] == ["ok"]

    def test_feed_respects_limit(self, store):
        """Test the feed is bounded by limit, including zero and negative limits."""
        for i in range(3):
            store.put_profile(f"u{i}", {"is_active": True})
        assert len(store.list_feed_candidates("x", 2)) == 2
        assert store.list_feed_candidates("x", 0) == []
        assert store.list_feed_candidates("x", -1) == []

    def test_iter_table_pages_in_id_order(self, store):
        """Test table export pages through rows ordered by user_id."""
        for uid in ("c", "a", "b"):
            store.put_profile(uid, {"name": uid})
        batches = list(store.iter_table("users", 2))
        assert [[r["user_id"] for r in b] for b in batches] == [["a", "b"], ["c"]]

    def test_iter_table_rejects_unknown_table(self, store):
        """Test only owned tables can be exported."""
        with pytest.raises(ValueError):
            list(store.iter_table("payments", 10))

    def test_append_sync_log(self, store):
        """Test sync records land in the sync_logs table."""
        store.append_sync_log(
            {
                "sync_id": "sync_u1_1",
                "user_id": "u1",
                "direction": "relational->all",
                "status": "success",
                "error": None,
                "timestamp": "2026-01-01T00:00:00+00:00",
            }
        )
        rows = [r for batch in store.iter_table("sync_logs", 10) for r in batch]
        assert rows[0]["sync_id"] == "sync_u1_1"
        assert rows[0]["sync_direction"] == "relational->all"

    def test_ping(self, store):
        """Test ping succeeds against a reachable database."""
        assert store.ping() is True


class TestSchemaDrift:
    """Test the core-field fallback when the users table lacks columns."""

    def test_missing_column_falls_back_to_core_fields(self, sqlite_url, sample_profile):
        """Test a write against a reduced table succeeds with core fields and is annotated."""
        url = sqlite_url("drifted")
        engine = create_engine(url)
        with engine.connect() as conn:
            conn.execute(
                text("""
                CREATE TABLE users (
                    user_id VARCHAR(128) PRIMARY KEY,
                    name TEXT,
                    email TEXT,
                    city TEXT,
                    is_active BOOLEAN,
                    updated_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            )
            conn.commit()
        engine.dispose()

        store = RelationalStore(url)
        profile = normalize(sample_profile)
        profile["bio"] = "likes plants"
        written = store.write_profile("u1", profile)

        assert isinstance(written.drift, SchemaDriftDegraded)
        assert written.drift.code == "STORE_104"
        stored = store.get_profile("u1")
        for field in ("user_id", "name", "email", "city"):
            assert stored[field] == profile[field]
        store.close()

    def test_is_missing_column_error_messages(self):
        """Test driver messages for missing columns are recognised."""
        assert is_missing_column_error(Exception("table users has no column named bio"))
        assert is_missing_column_error(Exception('column "bio" of relation "users" does not exist'))
        assert not is_missing_column_error(Exception("connection refused"))


class TestEngineOptions:
    def test_sqlite_options(self):
        """Test SQLite engines get a busy timeout and cross-thread access."""
        opts = engine_options("sqlite:///x.db", 3)
        assert opts["connect_args"] == {"check_same_thread": False, "timeout": 3}

    def test_server_options_bound_connect_time(self):
        """Test server engines bound both pool wait and connect time."""
        opts = engine_options("postgresql://u:p@db/profiles", 5)
        assert opts["pool_timeout"] == 5
        assert opts["connect_args"]["connect_timeout"] == 5
        assert opts["pool_pre_ping"] is True


class TestDocumentStore:
    """Test the JSON document store against SQLite."""

    @pytest.fixture
    def store(self, sqlite_url):
        store = DocumentStore(sqlite_url("documents"))
        yield store
        store.close()

    def test_put_and_get_drops_object_id(self, store):
        """Test _id never comes back and user_id is always present."""
        store.put_profile("u1", {"_id": "abc", "name": "Ada", "favorite_color": "green"})
        doc = store.get_profile("u1")
        assert "_id" not in doc
        assert doc["user_id"] == "u1"
        assert doc["favorite_color"] == "green"

    def test_rewrite_replaces_document_but_keeps_created_at(self, store):
        """Test a put replaces the whole document while created_at survives."""
        first = store.put_profile("u1", {"name": "Ada", "bio": "hi"})
        store.put_profile("u1", {"name": "Ada L."})
        doc = store.get_profile("u1")
        assert doc["name"] == "Ada L."
        assert "bio" not in doc
        assert doc["created_at"] == first["created_at"]

    def test_put_is_idempotent(self, store, sample_profile):
        """Test repeating a put stores the same document."""
        first = store.put_profile("u1", normalize(sample_profile))
        second = store.put_profile("u1", normalize(sample_profile))
        assert first == second
        assert store.list_user_ids() == ["u1"]

    def test_feed_candidates(self, store):
        """Test the feed excludes self, inactive and suspended users."""
        store.put_profile("me", {"is_active": True})
        store.put_profile("ok", {"is_active": True})
        store.put_profile("off", {"is_active": False})
        store.put_profile("banned", {"is_active": True, "is_suspended": True})
        assert [p["user_id"] for p in store.list_feed_candidates("me", 10)] == ["ok"]

    def test_feed_respects_limit(self, store):
        """Test the feed is bounded by limit, including zero and negative limits."""
        for i in range(3):
            store.put_profile(f"u{i}", {"is_active": True})
        assert len(store.list_feed_candidates("x", 2)) == 2
        assert store.list_feed_candidates("x", 0) == []
        assert store.list_feed_candidates("x", -1) == []

    def test_upsert_many_any_collection(self, store):
        """Test bulk upsert into a non-profile collection."""
        rows = [{"sync_id": "s1", "status": "success"}, {"sync_id": "s2", "status": "error"}]
        assert store.upsert_many("sync_logs", rows, "sync_id") == {"inserted": 2, "updated": 0}
        assert store.upsert_many("sync_logs", rows[:1], "sync_id") == {"inserted": 0, "updated": 1}

    def test_unreachable_database_raises_store_unavailable(self, tmp_path):
        """Test driver errors surface as StoreUnavailableError."""
        store = DocumentStore(f"sqlite:///{tmp_path}/missing/dir/documents.db")
        with pytest.raises(StoreUnavailableError) as exc_info:
            store.get_profile("u1")
        assert exc_info.value.store == DOCUMENT
        assert store.ping() is False


class TestHierarchicalStore:
    """Test the Redis tree store with a fake client."""

    @pytest.fixture
    def store(self, fake_redis):
        return HierarchicalStore(client=fake_redis)

    def test_write_uses_camel_case_node(self, store, fake_redis):
        """Test profiles are stored as camelCase children of users/<id>."""
        store.put_profile("u1", {"user_id": "u1", "move_in_date": "2026-02-01", "is_active": True})
        node = fake_redis.hashes["users/u1"]
        assert json.loads(node["moveInDate"]) == "2026-02-01"
        assert json.loads(node["isActive"]) is True
        assert "u1" in fake_redis.sets["users"]

    def test_write_publishes_on_node_path(self, store, fake_redis):
        """Test every write is pushed on the node's channel."""
        store.put_profile("u1", {"name": "Ada"})
        channel, message = fake_redis.published[-1]
        assert channel == "users/u1"
        assert json.loads(message)["value"]["name"] == "Ada"

    def test_get_returns_canonical_keys(self, store):
        """Test reads convert back to canonical field names."""
        store.put_profile("u1", {"budget_min": 500, "name": "Ada"})
        profile = store.get_profile("u1")
        assert profile["budget_min"] == 500
        assert profile["user_id"] == "u1"

    def test_get_missing_returns_none(self, store):
        assert store.get_profile("nobody") is None

    def test_created_at_preserved(self, store):
        """Test a rewrite keeps the original createdAt."""
        first = store.put_profile("u1", {"name": "Ada"})
        second = store.put_profile("u1", {"name": "Ada", "created_at": "2099-01-01T00:00:00+00:00"})
        assert second["created_at"] == first["created_at"]

    def test_feed_candidates(self, store):
        """Test the feed excludes self, inactive and suspended users."""
        store.put_profile("me", {"is_active": True})
        store.put_profile("ok", {"is_active": True})
        store.put_profile("off", {"is_active": False})
        store.put_profile("banned", {"is_active": True, "is_suspended": True})
        assert [p["user_id"] for p in store.list_feed_candidates("me", 10)] == ["ok"]

    def test_feed_respects_limit(self, store):
        """Test the feed is bounded by limit, including zero and negative limits."""
        for i in range(3):
            store.put_profile(f"u{i}", {"is_active": True})
        assert len(store.list_feed_candidates("x", 2)) == 2
        assert store.list_feed_candidates("x", 0) == []
        assert store.list_feed_candidates("x", -1) == []

    def test_connection_errors_become_store_unavailable(self, store, fake_redis):
        """Test redis errors surface as StoreUnavailableError and ping fails."""
        fake_redis.fail = True
        with pytest.raises(StoreUnavailableError) as exc_info:
            store.get_profile("u1")
        assert exc_info.value.store == HIERARCHICAL
        assert store.ping() is False


class TestFactory:
    def test_memory_backend_builds_three_stores(self):
        """Test STORE_BACKEND=memory builds one in-memory store per role."""
        settings = SimpleNamespace(STORE_BACKEND="memory", STORE_TIMEOUT_SECONDS=1.0)
        stores = build_profile_stores(settings)
        assert list(stores) == [RELATIONAL, DOCUMENT, HIERARCHICAL]
        assert all(isinstance(s, InMemoryProfileStore) for s in stores.values())
        assert stores[RELATIONAL].critical and stores[DOCUMENT].critical
        assert not stores[HIERARCHICAL].critical
