"""
In-memory profile store for single-process deployments.
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .base import ProfileStore, StoreWrite
from .normalizer import ID_FIELD, Profile, jsonable, utc_now_iso


class InMemoryProfileStore(ProfileStore):
    """
    Thread-safe in-memory store implementation.

    Can stand in for any of the three store roles. Suitable for DEV_MODE and
    testing; data is lost on restart.
    """

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Profile]] = defaultdict(dict)

    @property
    def _profiles(self) -> Dict[str, Profile]:
        return self._collections["users"]

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            stored = self._profiles.get(user_id)
            return copy.deepcopy(stored) if stored is not None else None

    def write_profile(self, user_id: str, profile: Profile) -> StoreWrite:
        with self._lock:
            record = jsonable(profile)
            record[ID_FIELD] = user_id
            existing = self._profiles.get(user_id)
            if existing is not None and existing.get("created_at"):
                record["created_at"] = existing["created_at"]
            record.setdefault("created_at", utc_now_iso())
            self._profiles[user_id] = record
            return StoreWrite(profile=copy.deepcopy(record))

    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Profile]:
        with self._lock:
            out: List[Profile] = []
            for user_id, profile in self._profiles.items():
                if len(out) >= limit:
                    break
                if user_id == exclude_user_id:
                    continue
                if profile.get("is_active", True) and not profile.get("is_suspended", False):
                    out.append(copy.deepcopy(profile))
            return out

    def list_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._profiles)

    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        inserted = updated = 0
        with self._lock:
            target = self._collections[collection]
            for record in records:
                key = str(record[id_field])
                if key in target:
                    updated += 1
                else:
                    inserted += 1
                target[key] = jsonable(record)
        return {"inserted": inserted, "updated": updated}

    def iter_table(self, table: str, batch_size: int) -> Iterator[List[Profile]]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._collections[table].values()]
        for start in range(0, len(rows), batch_size):
            yield rows[start : start + batch_size]

    def append_sync_log(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._collections["sync_logs"][str(record["sync_id"])] = jsonable(record)

    def sync_logs(self) -> List[Profile]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._collections["sync_logs"].values()]

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._collections.clear()
