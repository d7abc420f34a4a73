"""
Hierarchical real-time profile store backed by Redis.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import redis
from redis.exceptions import RedisError

from errors import StoreUnavailableError

from .base import HIERARCHICAL, ProfileStore, StoreWrite
from .normalizer import ID_FIELD, Profile, coerce_bool, from_hierarchical, jsonable, to_hierarchical, utc_now_iso

logger = logging.getLogger(__name__)

PROFILE_ROOT = "users"
_FEED_SCAN_CHUNK = 50


class HierarchicalStore(ProfileStore):
    """
    Redis-backed tree store.

    Each profile is a node at `users/<user_id>`: a hash of camelCase child
    keys whose values are JSON-encoded. The set at `users` lists the node's
    children. Every write publishes on the node's path so listeners get the
    new value pushed to them.

    Requires: redis package
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        timeout: float = 5.0,
        name: str = HIERARCHICAL,
        client: Optional[Any] = None,
    ):
        super().__init__(name)
        self._url = redis_url
        self._client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    @staticmethod
    def path(root: str, key: str) -> str:
        return f"{root}/{key}"

    @staticmethod
    def _encode(node: Mapping[str, Any]) -> Dict[str, str]:
        return {k: json.dumps(v) for k, v in node.items()}

    @staticmethod
    def _decode(raw: Mapping[str, str]) -> Profile:
        node = {}
        for k, v in raw.items():
            try:
                node[k] = json.loads(v)
            except ValueError:
                node[k] = v
        return from_hierarchical(node)

    def _profile_from_raw(self, raw: Mapping[str, str], user_id: str) -> Profile:
        profile = self._decode(raw)
        if not profile.get(ID_FIELD):
            profile[ID_FIELD] = user_id
        return profile

    def _set_node(self, root: str, key: str, node: Mapping[str, Any]) -> None:
        node_path = self.path(root, key)
        pipe = self._client.pipeline(transaction=True)
        pipe.delete(node_path)
        pipe.hset(node_path, mapping=self._encode(node))
        pipe.sadd(root, key)
        pipe.execute()
        self._client.publish(node_path, json.dumps({"path": node_path, "value": dict(node)}))

    def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            raw = self._client.hgetall(self.path(PROFILE_ROOT, user_id))
        except RedisError as e:
            raise StoreUnavailableError(self.name, str(e), "get_profile") from e
        return self._profile_from_raw(raw, user_id) if raw else None

    def write_profile(self, user_id: str, profile: Profile) -> StoreWrite:
        record = jsonable(profile)
        record.pop("_id", None)
        record[ID_FIELD] = user_id
        node = to_hierarchical(record)
        try:
            existing = self._client.hget(self.path(PROFILE_ROOT, user_id), "createdAt")
            node["createdAt"] = (json.loads(existing) if existing else None) or node.get("createdAt") or utc_now_iso()
            self._set_node(PROFILE_ROOT, user_id, node)
        except RedisError as e:
            raise StoreUnavailableError(self.name, str(e), "write_profile") from e
        return StoreWrite(profile=from_hierarchical(node))

    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Profile]:
        if limit <= 0:
            return []
        out: List[Profile] = []
        try:
            children = sorted(self._client.smembers(PROFILE_ROOT))
            candidates = [c for c in children if c != exclude_user_id]
            for start in range(0, len(candidates), _FEED_SCAN_CHUNK):
                chunk = candidates[start : start + _FEED_SCAN_CHUNK]
                pipe = self._client.pipeline(transaction=False)
                for child in chunk:
                    pipe.hgetall(self.path(PROFILE_ROOT, child))
                for child, raw in zip(chunk, pipe.execute()):
                    if not raw:
                        continue
                    profile = self._profile_from_raw(raw, child)
                    if coerce_bool(profile.get("is_active", True)) and not coerce_bool(profile.get("is_suspended", False)):
                        out.append(profile)
                        if len(out) >= limit:
                            return out
        except RedisError as e:
            raise StoreUnavailableError(self.name, str(e), "list_feed_candidates") from e
        return out

    def list_user_ids(self) -> List[str]:
        try:
            return sorted(self._client.smembers(PROFILE_ROOT))
        except RedisError as e:
            raise StoreUnavailableError(self.name, str(e), "list_user_ids") from e

    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        inserted = updated = 0
        try:
            for record in records:
                key = str(record[id_field])
                if self._client.exists(self.path(collection, key)):
                    updated += 1
                else:
                    inserted += 1
                self._set_node(collection, key, to_hierarchical(jsonable(record)))
        except RedisError as e:
            raise StoreUnavailableError(self.name, str(e), "upsert_many") from e
        return {"inserted": inserted, "updated": updated}

    def watch_profile(self, user_id: str, callback: Callable[[Profile], None]) -> threading.Thread:
        """
        Push every new value of one profile node to `callback`.

        Runs in a separate daemon thread for non-blocking operation.
        """
        node_path = self.path(PROFILE_ROOT, user_id)

        def _listen():
            try:
                pubsub = self._client.pubsub()
                pubsub.subscribe(node_path)
                for message in pubsub.listen():
                    if message["type"] == "message":
                        payload = json.loads(message["data"])
                        callback(from_hierarchical(payload["value"]))
            except RedisError as e:
                logger.error(f"Redis subscription error on {node_path}: {e}")

        thread = threading.Thread(target=_listen, name=f"watch-{node_path}", daemon=True)
        thread.start()
        return thread

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError as e:
            logger.error(f"Redis close error: {e}")
