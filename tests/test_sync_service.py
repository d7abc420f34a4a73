"""
Tests for relational-sourced reconciliation jobs.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from errors import ProfileNotFoundError, SyncError
from replication.sync_service import ID_FIELDS, SyncService
from stores import DOCUMENT, HIERARCHICAL, RELATIONAL, DocumentStore, RelationalStore


@pytest.fixture
def repairs():
    return MagicMock()


@pytest.fixture
def service(flaky_stores, repairs):
    return SyncService(flaky_stores, repairs=repairs, batch_size=2)


class TestSyncUser:
    """Test per-user syncs."""

    def test_relational_copy_overwrites_others(self, service, flaky_stores):
        """Test the relational row wins over divergent copies."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada", "city": "Austin"})
        flaky_stores[DOCUMENT].inner.put_profile("u1", {"name": "Ada", "city": "Boston"})

        result = service.sync_user_to_all_stores("u1")

        assert result == {RELATIONAL: True, DOCUMENT: True, HIERARCHICAL: True}
        assert flaky_stores[DOCUMENT].inner.get_profile("u1")["city"] == "Austin"
        assert flaky_stores[HIERARCHICAL].inner.get_profile("u1")["city"] == "Austin"

    def test_successful_targets_cancel_pending_repairs(self, service, flaky_stores, repairs):
        """Test a manual sync cancels background repairs it made redundant."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada"})
        flaky_stores[HIERARCHICAL].down = True

        result = service.sync_user_to_all_stores("u1")

        assert result[HIERARCHICAL] is False
        repairs.cancel.assert_called_once_with("u1", DOCUMENT)

    def test_missing_user_raises_not_found(self, service):
        """Test syncing an unknown user raises ProfileNotFoundError."""
        with pytest.raises(ProfileNotFoundError):
            service.sync_user_to_all_stores("ghost")

    def test_relational_outage_raises_sync_error(self, service, flaky_stores):
        """Test a relational outage is reported as a sync failure."""
        flaky_stores[RELATIONAL].fail_reads = True
        with pytest.raises(SyncError) as exc_info:
            service.sync_user_to_all_stores("u1")
        assert exc_info.value.code == "SYNC_301"

    def test_relational_to_document(self, service, flaky_stores):
        """Test the single-direction relational to document sync."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada"})
        doc = service.sync_relational_to_document("u1")
        assert doc["name"] == "Ada"
        assert doc["updated_at"]
        assert flaky_stores[HIERARCHICAL].inner.get_profile("u1") is None

    def test_document_to_relational(self, service, flaky_stores, repairs):
        """Test the single-direction document to relational sync."""
        flaky_stores[DOCUMENT].inner.put_profile("u1", {"_id": "abc", "name": "Ada"})
        row = service.sync_document_to_relational("u1")
        assert row["name"] == "Ada"
        assert "_id" not in flaky_stores[RELATIONAL].inner.get_profile("u1")
        repairs.cancel.assert_called_once_with("u1", RELATIONAL)

    def test_document_to_relational_missing(self, service):
        """Test a missing document raises ProfileNotFoundError."""
        with pytest.raises(ProfileNotFoundError):
            service.sync_document_to_relational("ghost")


class TestSyncLog:
    """Test the sync log written for every attempt."""

    def test_success_logged_to_relational_and_document(self, service, flaky_stores):
        """Test a sync record lands in both logging stores."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada"})
        service.sync_user_to_all_stores("u1")

        for name in (RELATIONAL, DOCUMENT):
            logs = flaky_stores[name].inner.sync_logs()
            assert len(logs) == 1
            assert logs[0]["status"] == "success"
            assert logs[0]["direction"] == "relational->all"
            assert logs[0]["sync_id"].startswith("sync_u1_")

    def test_partial_sync_logged(self, service, flaky_stores):
        """Test a failed target is recorded as a partial sync."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada"})
        flaky_stores[HIERARCHICAL].fail_writes = 1
        service.sync_user_to_all_stores("u1")

        log = flaky_stores[RELATIONAL].inner.sync_logs()[0]
        assert log["status"] == "partial"
        assert HIERARCHICAL in log["error"]

    def test_logging_failure_is_not_raised(self, service, flaky_stores):
        """Test a broken sync log never fails the sync itself."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "Ada"})
        flaky_stores[DOCUMENT].down = True
        record = service.log_sync("u1", "relational->all", "success")
        assert record.status == "success"
        assert len(flaky_stores[RELATIONAL].inner.sync_logs()) == 1


class TestBatchSync:
    """Test full and table syncs."""

    def test_sync_all_users_counts(self, service, flaky_stores):
        """Test a user with any failed target counts as failed."""
        for uid in ("u1", "u2", "u3"):
            flaky_stores[RELATIONAL].inner.put_profile(uid, {"name": uid})
        flaky_stores[DOCUMENT].fail_writes = 1

        result = service.sync_all_users()

        assert result == {"synced_count": 2, "failed_count": 1, "total_count": 3}

    def test_sync_all_users_relational_outage(self, service, flaky_stores):
        """Test a full sync needs the relational store."""
        flaky_stores[RELATIONAL].down = True
        with pytest.raises(SyncError):
            service.sync_all_users()

    def test_sync_table_to_store(self, service, flaky_stores):
        """Test a table copy reports inserts then updates."""
        for uid in ("u1", "u2", "u3"):
            flaky_stores[RELATIONAL].inner.put_profile(uid, {"name": uid})

        assert service.sync_table_to_store(DOCUMENT) == {"inserted": 3, "updated": 0}
        assert service.sync_table_to_store(DOCUMENT) == {"inserted": 0, "updated": 3}
        assert flaky_stores[DOCUMENT].inner.get_profile("u2")["name"] == "u2"

    def test_sync_table_rejects_unknown_table_and_target(self, service):
        """Test only known tables and non-relational targets are accepted."""
        with pytest.raises(SyncError):
            service.sync_table_to_store(DOCUMENT, table="payments")
        with pytest.raises(SyncError):
            service.sync_table_to_store(RELATIONAL)
        with pytest.raises(SyncError):
            service.sync_table_to_store("graph")

    def test_sync_all_tables_to_store(self, service, flaky_stores):
        """Test every syncable table is copied in one job."""
        for uid in ("u1", "u2"):
            flaky_stores[RELATIONAL].inner.put_profile(uid, {"name": uid})
        flaky_stores[RELATIONAL].inner.append_sync_log({"sync_id": "s1", "user_id": "u1", "status": "success"})

        result = service.sync_all_tables_to_store(DOCUMENT)

        assert result == {"users": {"inserted": 2, "updated": 0}, "sync_logs": {"inserted": 1, "updated": 0}}
        assert flaky_stores[DOCUMENT].inner.sync_logs()[0]["sync_id"] == "s1"

    def test_sync_all_tables_reports_failed_tables(self, service, flaky_stores):
        """Test a failing target is reported per table without raising."""
        flaky_stores[RELATIONAL].inner.put_profile("u1", {"name": "u1"})
        flaky_stores[HIERARCHICAL].down = True

        result = service.sync_all_tables_to_store(HIERARCHICAL)

        assert set(result) == set(ID_FIELDS)
        assert all("error" in counts for counts in result.values())

    def test_sync_all_tables_rejects_bad_target(self, service):
        """Test the relational store and unknown stores are not valid targets."""
        with pytest.raises(SyncError):
            service.sync_all_tables_to_store(RELATIONAL)
        with pytest.raises(SyncError):
            service.sync_all_tables_to_store("graph")

    def test_id_fields(self):
        assert ID_FIELDS["users"] == "user_id"
        assert ID_FIELDS["sync_logs"] == "sync_id"


class TestSqlSync:
    """Test syncs between the SQL-backed stores."""

    def test_table_sync_between_sql_stores(self, sqlite_url):
        """Test users and sync_logs copy from relational tables into documents."""
        relational = RelationalStore(sqlite_url("relational"))
        document = DocumentStore(sqlite_url("documents"))
        service = SyncService({RELATIONAL: relational, DOCUMENT: document})
        try:
            relational.put_profile("u1", {"name": "Ada", "is_active": True})
            service.sync_user_to_all_stores("u1")

            assert document.get_profile("u1")["name"] == "Ada"
            assert service.sync_table_to_store(DOCUMENT, table="sync_logs") == {"inserted": 0, "updated": 1}
        finally:
            relational.close()
            document.close()
