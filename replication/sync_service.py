"""
Reconciliation jobs across the profile stores.

The relational store is the source of truth for every job here: its copy of a
profile overwrites the document and hierarchical copies. Each job appends a
SyncRecord to the relational `sync_logs` table and, best-effort, to the
document store.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from errors import ProfileNotFoundError, ReplicaError, StoreUnavailableError, SyncError
from observability import build_log_context, log_event, traced
from stores.base import DOCUMENT, RELATIONAL, ProfileStore
from stores.normalizer import (
    Profile,
    document_to_relational,
    relational_row_to_document,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Identifier column per syncable table.
ID_FIELDS: Dict[str, str] = {
    "users": "user_id",
    "sync_logs": "sync_id",
}

SUCCESS = "success"
PARTIAL = "partial"
ERROR = "error"


@dataclass(frozen=True)
class SyncRecord:
    sync_id: str
    user_id: Optional[str]
    direction: str
    status: str
    error: Optional[str]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_sync_id(user_id: Optional[str]) -> str:
    return f"sync_{user_id or 'all'}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class SyncService:
    """
    Manual and batch reconciliation.

    `repairs` is optional; when given, a successful sync cancels any pending
    background repair for the same (user, store).
    """

    def __init__(self, stores: Mapping[str, ProfileStore], repairs: Optional[Any] = None, batch_size: int = 500) -> None:
        if RELATIONAL not in stores:
            raise ValueError("SyncService requires a relational store")
        self._stores = dict(stores)
        self._repairs = repairs
        self.batch_size = batch_size
        self._ctx = build_log_context(component="sync_service")

    @property
    def relational(self) -> ProfileStore:
        return self._stores[RELATIONAL]

    def _store(self, name: str) -> ProfileStore:
        try:
            return self._stores[name]
        except KeyError:
            raise SyncError(f"->{name}", f"unknown store '{name}'") from None

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    def log_sync(self, user_id: Optional[str], direction: str, status: str, error: Optional[str] = None) -> SyncRecord:
        """Record a sync attempt. Failures to persist the record are logged only."""
        record = SyncRecord(
            sync_id=new_sync_id(user_id),
            user_id=user_id,
            direction=direction,
            status=status,
            error=error,
            timestamp=utc_now_iso(),
        )
        for name in (RELATIONAL, DOCUMENT):
            store = self._stores.get(name)
            append = getattr(store, "append_sync_log", None)
            if append is None:
                continue
            try:
                append(record.to_dict())
            except Exception as e:
                logger.error(f"Failed to log sync {record.sync_id} to {name}: {e}")
        log_event("sync_record", ctx=self._ctx, data=record.to_dict())
        return record

    def _read_relational(self, user_id: str, direction: str) -> Profile:
        try:
            row = self.relational.get_profile(user_id)
        except StoreUnavailableError as e:
            self.log_sync(user_id, direction, ERROR, str(e))
            raise SyncError(direction, str(e), user_id=user_id) from e
        if row is None:
            self.log_sync(user_id, direction, ERROR, f"{user_id} not found in {RELATIONAL}")
            raise ProfileNotFoundError(user_id, stores=[RELATIONAL])
        return row

    def _cancel_repair(self, user_id: str, store_name: str) -> None:
        if self._repairs is not None:
            self._repairs.cancel(user_id, store_name)

    # ------------------------------------------------------------------
    # Per-user syncs
    # ------------------------------------------------------------------

    def sync_user_to_all_stores(self, user_id: str) -> Dict[str, bool]:
        """
        Overwrite every non-relational copy of one profile with the relational row.

        Returns a per-store success map; the relational entry is True once its
        row has been read.
        """
        direction = f"{RELATIONAL}->all"
        row = self._read_relational(user_id, direction)
        doc = relational_row_to_document(row)

        results = {name: False for name in self._stores}
        results[RELATIONAL] = True
        failed = []
        for name, store in self._stores.items():
            if name == RELATIONAL:
                continue
            try:
                store.write_profile(user_id, doc)
                results[name] = True
                self._cancel_repair(user_id, name)
            except StoreUnavailableError as e:
                failed.append(f"{name} ({e.reason})")
                logger.warning(f"Sync of {user_id} to {name} failed: {e.reason}")

        if failed:
            self.log_sync(user_id, direction, PARTIAL, ", ".join(failed))
        else:
            self.log_sync(user_id, direction, SUCCESS)
            logger.info(f"User {user_id} synced to all stores")
        return results

    def sync_relational_to_document(self, user_id: str) -> Profile:
        direction = f"{RELATIONAL}->{DOCUMENT}"
        doc = relational_row_to_document(self._read_relational(user_id, direction))
        try:
            written = self._store(DOCUMENT).put_profile(user_id, doc)
        except StoreUnavailableError as e:
            self.log_sync(user_id, direction, ERROR, str(e))
            raise SyncError(direction, str(e), user_id=user_id) from e
        self._cancel_repair(user_id, DOCUMENT)
        self.log_sync(user_id, direction, SUCCESS)
        logger.info(f"Synced user {user_id} from {RELATIONAL} to {DOCUMENT}")
        return written

    def sync_document_to_relational(self, user_id: str) -> Profile:
        direction = f"{DOCUMENT}->{RELATIONAL}"
        try:
            doc = self._store(DOCUMENT).get_profile(user_id)
            if doc is None:
                self.log_sync(user_id, direction, ERROR, f"{user_id} not found in {DOCUMENT}")
                raise ProfileNotFoundError(user_id, stores=[DOCUMENT])
            row = document_to_relational(doc)
            row["updated_at"] = utc_now_iso()
            written = self.relational.put_profile(user_id, row)
        except StoreUnavailableError as e:
            self.log_sync(user_id, direction, ERROR, str(e))
            raise SyncError(direction, str(e), user_id=user_id) from e
        self._cancel_repair(user_id, RELATIONAL)
        self.log_sync(user_id, direction, SUCCESS)
        logger.info(f"Synced user {user_id} from {DOCUMENT} to {RELATIONAL}")
        return written

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    @traced("sync.sync_all_users")
    def sync_all_users(self) -> Dict[str, int]:
        """Sync every relational user; a user with any failed target counts as failed."""
        try:
            user_ids = self.relational.list_user_ids()
        except StoreUnavailableError as e:
            raise SyncError(f"{RELATIONAL}->all", str(e)) from e

        logger.info(f"Starting full sync of {len(user_ids)} users")
        synced = failed = 0
        for user_id in user_ids:
            try:
                results = self.sync_user_to_all_stores(user_id)
            except ReplicaError as e:
                logger.warning(f"Failed to sync {user_id}: {e}")
                failed += 1
                continue
            if all(results.values()):
                synced += 1
            else:
                failed += 1

        logger.info(f"Sync complete: {synced} succeeded, {failed} failed")
        return {"synced_count": synced, "failed_count": failed, "total_count": len(user_ids)}

    @traced("sync.sync_table_to_store")
    def sync_table_to_store(self, store_target: str, table: str = "users", batch_size: Optional[int] = None) -> Dict[str, int]:
        """Copy a relational table into another store, keyed by the table's id field."""
        direction = f"{RELATIONAL}->{store_target}:{table}"
        if table not in ID_FIELDS:
            raise SyncError(direction, f"unknown table '{table}'")
        if store_target == RELATIONAL:
            raise SyncError(direction, "target must differ from the source store")
        target = self._store(store_target)
        iter_table = getattr(self.relational, "iter_table", None)
        if iter_table is None:
            raise SyncError(direction, f"{RELATIONAL} store cannot export tables")

        id_field = ID_FIELDS[table]
        totals = {"inserted": 0, "updated": 0}
        try:
            for batch in iter_table(table, batch_size or self.batch_size):
                records = [relational_row_to_document(r) for r in batch] if table == "users" else batch
                counts = target.upsert_many(table, records, id_field)
                totals["inserted"] += counts["inserted"]
                totals["updated"] += counts["updated"]
        except StoreUnavailableError as e:
            raise SyncError(direction, str(e)) from e

        logger.info(f"Synced {table} to {store_target}: {totals['inserted']} inserted, {totals['updated']} updated")
        return totals

    @traced("sync.sync_all_tables_to_store")
    def sync_all_tables_to_store(self, store_target: str, batch_size: Optional[int] = None) -> Dict[str, Dict[str, Any]]:
        """
        Copy every syncable table into `store_target`.

        A failing table is reported as `{"error": ...}` and the remaining
        tables still run; an unusable target fails the whole job up front.
        """
        if store_target == RELATIONAL:
            raise SyncError(f"{RELATIONAL}->{store_target}:*", "target must differ from the source store")
        self._store(store_target)

        logger.info(f"Syncing {len(ID_FIELDS)} tables to {store_target}")
        results: Dict[str, Dict[str, Any]] = {}
        for table in ID_FIELDS:
            try:
                results[table] = self.sync_table_to_store(store_target, table=table, batch_size=batch_size)
            except SyncError as e:
                logger.error(f"Failed to sync {table} to {store_target}: {e.message}")
                results[table] = {"error": e.message}
        return results
