"""
Replicated profile store: one logical store over three physical ones.

Writes fan out to every available store in parallel and succeed as long as
one store accepts them; stores that missed the write get background repairs.
Reads go to the primary store first and fall back through the ranked list,
repairing stale replicas on the way.

Only AllStoresUnavailableError, ProfileNotFoundError and InvalidProfileError
(blank user id) leave this module; per-store failures are reported in
WriteOutcome.failed_stores or logged.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from errors import (
    AllStoresUnavailableError,
    InvalidProfileError,
    ProfileNotFoundError,
    SchemaDriftDegraded,
    StoreUnavailableError,
)
from observability import build_log_context, log_event, trace_span
from stores.base import ProfileStore, StoreWrite
from stores.normalizer import ID_FIELD, Profile, normalize, utc_now_iso

from .health import HealthMonitor
from .repair import DEFAULT_DELAYS, RepairScheduler
from .sync_service import SyncService

logger = logging.getLogger(__name__)

# Attempts per write call: critical stores get one synchronous retry.
CRITICAL_ATTEMPTS = 2
DEFAULT_ATTEMPTS = 1
SKIPPED = "skipped: unavailable"


def _require_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidProfileError("user_id must be a non-empty string", fields=[ID_FIELD])
    return user_id


@dataclass
class WriteAttemptResult:
    """
    Per-store result of one write call.

    `attempts` is 1 or 2 for stores that were written to; a store the health
    snapshot marked unavailable is never dispatched and reports `skipped=True`
    with `attempts=0`.
    """

    store: str
    success: bool
    error: Optional[str] = None
    attempts: int = 0
    warning: Optional[SchemaDriftDegraded] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.store, "error": self.error, "attempts": self.attempts}
        if self.skipped:
            d["skipped"] = True
        if self.warning is not None:
            d["warning"] = self.warning.to_dict()
        return d


@dataclass
class WriteOutcome:
    profile: Profile
    written_stores: List[str] = field(default_factory=list)
    failed_stores: List[WriteAttemptResult] = field(default_factory=list)
    warnings: List[SchemaDriftDegraded] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_stores)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "written_stores": list(self.written_stores),
            "failed_stores": [r.to_dict() for r in self.failed_stores],
            "warnings": [w.to_dict() for w in self.warnings],
            "degraded": self.degraded,
        }


class ReplicatedStore:
    """
    Orchestrates profile reads and writes across the backing stores.

    Every single-store call runs on a worker thread and is abandoned after
    `store_timeout` seconds; a timeout is handled exactly like a connectivity
    failure.
    """

    def __init__(
        self,
        stores: Mapping[str, ProfileStore],
        health: HealthMonitor,
        *,
        store_timeout: float = 5.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        repair_delays: Sequence[float] = DEFAULT_DELAYS,
        repairs: Optional[Any] = None,
        write_workers: int = 6,
        sync_batch_size: int = 500,
    ) -> None:
        if not stores:
            raise ValueError("ReplicatedStore needs at least one store")
        self._stores = dict(stores)
        self._health = health
        self.store_timeout = store_timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

        # Separate pools: fan-out tasks block on store calls running in _calls.
        self._fanout = ThreadPoolExecutor(max_workers=max(len(self._stores), write_workers), thread_name_prefix="write")
        self._calls = ThreadPoolExecutor(max_workers=max(2 * len(self._stores), 2 * write_workers), thread_name_prefix="store-call")
        self._background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="read-repair")

        self._repairs = repairs if repairs is not None else RepairScheduler(self._repair_write, repair_delays)
        self._sync = SyncService(self._stores, repairs=self._repairs, batch_size=sync_batch_size)

    @property
    def stores(self) -> Dict[str, ProfileStore]:
        return dict(self._stores)

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def repairs(self) -> Any:
        return self._repairs

    @property
    def sync_service(self) -> SyncService:
        return self._sync

    # ------------------------------------------------------------------
    # Single-store calls
    # ------------------------------------------------------------------

    def _call(self, store: ProfileStore, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        with trace_span(f"store.{operation}", {"store": store.name}):
            future = self._calls.submit(fn, *args)
            try:
                return future.result(timeout=self.store_timeout)
            except FutureTimeout as e:
                future.cancel()
                raise StoreUnavailableError(store.name, f"timed out after {self.store_timeout}s", operation) from e
            except StoreUnavailableError:
                raise
            except Exception as e:
                raise StoreUnavailableError(store.name, str(e) or e.__class__.__name__, operation) from e

    def _write_to(self, store: ProfileStore, user_id: str, record: Profile) -> WriteAttemptResult:
        max_attempts = CRITICAL_ATTEMPTS if store.critical else DEFAULT_ATTEMPTS
        result = WriteAttemptResult(store=store.name, success=False)
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                written: StoreWrite = self._call(store, "write_profile", store.write_profile, user_id, record)
            except StoreUnavailableError as e:
                result.error = e.reason
                logger.error(f"{store.name} failed (attempt {attempt}): {e.reason}")
                continue
            result.success = True
            result.error = None
            result.warning = written.drift
            if attempt > 1:
                logger.info(f"{store.name} succeeded on attempt {attempt}")
            break
        return result

    def _repair_write(self, store_name: str, user_id: str, record: Profile) -> None:
        store = self._stores[store_name]
        self._call(store, "repair_write", store.write_profile, user_id, record)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def create_or_update_profile(self, user_id: str, profile: Mapping[str, Any]) -> WriteOutcome:
        """
        Write a profile to every available store.

        Succeeds when at least one store accepts the write; raises
        AllStoresUnavailableError otherwise, without scheduling repairs.
        """
        _require_user_id(user_id)
        started_at = time.monotonic()
        ctx = build_log_context(component="replicated_store", user_id=user_id)

        record = normalize(profile)
        record[ID_FIELD] = user_id
        record["updated_at"] = utc_now_iso()

        snapshot = self._health.snapshot
        results: Dict[str, WriteAttemptResult] = {}
        futures = {}
        for name, store in self._stores.items():
            if not snapshot.is_available(name):
                logger.warning(f"Skipping {name} (unavailable)")
                results[name] = WriteAttemptResult(store=name, success=False, error=SKIPPED, attempts=0, skipped=True)
                continue
            futures[self._fanout.submit(self._write_to, store, user_id, record)] = name

        # Each attempt is bounded by store_timeout; the join adds a small margin on top.
        deadline = self.store_timeout * CRITICAL_ATTEMPTS + 1.0
        done, not_done = wait(futures, timeout=deadline)
        for future in done:
            results[futures[future]] = future.result()
        for future in not_done:
            name = futures[future]
            results[name] = WriteAttemptResult(store=name, success=False, error="write did not finish in time", attempts=1)

        ordered = [results[name] for name in self._stores]
        outcome = WriteOutcome(
            profile=record,
            written_stores=[r.store for r in ordered if r.success],
            failed_stores=[r for r in ordered if not r.success],
            warnings=[r.warning for r in ordered if r.warning is not None],
        )

        log_event(
            "profile_write",
            ctx=ctx,
            data={
                "written_stores": outcome.written_stores,
                "failed_stores": [r.to_dict() for r in outcome.failed_stores],
                "schema_drift": [w.data.get("store") for w in outcome.warnings],
            },
        )

        if not outcome.written_stores:
            errors = {r.store: r.error or "unknown error" for r in outcome.failed_stores}
            logger.error(f"Failed to write {user_id} to any store")
            raise AllStoresUnavailableError("create_or_update_profile", errors, user_id=user_id)

        if outcome.degraded:
            failed = ", ".join(r.store for r in outcome.failed_stores)
            logger.warning(f"Profile {user_id} written to {len(outcome.written_stores)} store(s); failed: {failed}")
            for r in outcome.failed_stores:
                self._repairs.schedule(user_id, r.store, record, started_at=started_at)
        else:
            logger.info(f"Profile {user_id} written to all {len(outcome.written_stores)} stores")

        for warning in outcome.warnings:
            logger.warning(str(warning))
        return outcome

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _read_order(self) -> List[str]:
        """Primary first (whatever its health), then every other available store."""
        snapshot = self._health.snapshot
        primary = snapshot.primary
        order = [primary] if primary is not None else []
        order.extend(n for n in snapshot.available() if n != primary)
        return order

    def _read_repair(self, user_id: str, profile: Profile, source: str, targets: List[str]) -> None:
        for name in targets:
            store = self._stores[name]
            try:
                self._call(store, "read_repair", store.write_profile, user_id, profile)
                self._repairs.cancel(user_id, name)
            except StoreUnavailableError as e:
                logger.warning(f"Read-repair of {user_id} from {source} to {name} failed: {e.reason}")

    def get_profile(self, user_id: str) -> Profile:
        _require_user_id(user_id)
        errors: Dict[str, str] = {}
        for attempt in range(self.max_retries):
            if attempt:
                time.sleep(self.retry_delay)

            order = self._read_order()
            clean_misses = []
            for position, name in enumerate(order):
                store = self._stores[name]
                try:
                    profile = self._call(store, "get_profile", store.get_profile, user_id)
                except StoreUnavailableError as e:
                    errors[name] = e.reason
                    logger.warning(f"Attempt {attempt + 1} failed on {name}: {e.reason}")
                    continue

                if profile is None:
                    clean_misses.append(name)
                    continue

                if position == 0:
                    logger.debug(f"Retrieved user {user_id} from {name}")
                    others = [n for n in order if n != name]
                    if others:
                        self._background.submit(self._read_repair, user_id, profile, name, others)
                else:
                    primary = order[0]
                    logger.info(f"Retrieved user {user_id} from fallback store {name}")
                    self._read_repair(user_id, profile, name, [primary])
                return profile

            if order and len(clean_misses) == len(order):
                raise ProfileNotFoundError(user_id, stores=clean_misses)

        raise AllStoresUnavailableError("get_profile", errors, user_id=user_id)

    def get_feed_candidates(self, user_id: str, limit: int = 10) -> List[Profile]:
        """First store answering without error wins, even with an empty list."""
        _require_user_id(user_id)
        errors: Dict[str, str] = {}
        for name in self._read_order():
            store = self._stores[name]
            try:
                return self._call(store, "list_feed_candidates", store.list_feed_candidates, user_id, limit)
            except StoreUnavailableError as e:
                errors[name] = e.reason
                logger.warning(f"Feed retrieval failed from {name}: {e.reason}")
        raise AllStoresUnavailableError("get_feed_candidates", errors, user_id=user_id)

    def list_user_ids(self) -> List[str]:
        """Every known user id, sorted; first store answering without error wins."""
        errors: Dict[str, str] = {}
        for name in self._read_order():
            store = self._stores[name]
            try:
                return sorted(self._call(store, "list_user_ids", store.list_user_ids))
            except StoreUnavailableError as e:
                errors[name] = e.reason
                logger.warning(f"Listing user ids failed on {name}: {e.reason}")
        raise AllStoresUnavailableError("list_user_ids", errors)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        snapshot = self._health.snapshot
        pending = sorted(self._repairs.pending())
        return {
            "primary_store": snapshot.primary,
            "stores": [h.to_dict() for h in snapshot.healths],
            "pending_repairs": [{"user_id": u, "store": s} for u, s in pending],
            "timestamp": utc_now_iso(),
        }

    def sync_all(self) -> Dict[str, int]:
        return self._sync.sync_all_users()

    def sync_user_to_all_stores(self, user_id: str) -> Dict[str, bool]:
        return self._sync.sync_user_to_all_stores(user_id)

    def sync_all_tables(self, store_target: str) -> Dict[str, Dict[str, Any]]:
        return self._sync.sync_all_tables_to_store(store_target)

    def close(self) -> None:
        self._repairs.stop()
        self._background.shutdown(wait=True)
        self._fanout.shutdown(wait=False, cancel_futures=True)
        self._calls.shutdown(wait=False, cancel_futures=True)
        for name, store in self._stores.items():
            try:
                store.close()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")
