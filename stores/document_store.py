"""
Document profile store: schemaless JSON documents grouped in collections.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from errors import StoreUnavailableError

from .base import DOCUMENT, ProfileStore, StoreWrite
from .normalizer import ID_FIELD, Profile, coerce_bool, jsonable, utc_now_iso
from .postgres_store import engine_options

logger = logging.getLogger(__name__)

PROFILE_COLLECTION = "users"


class DocumentStore(ProfileStore):
    """
    JSON document store behind its own SQLAlchemy engine.

    Documents live in one `documents` table keyed by (collection, doc_id);
    the body is stored whole, so any field set is accepted. `is_active` and
    `is_suspended` are lifted into columns so feed queries stay indexable.

    Requires: sqlalchemy (plus psycopg2-binary for PostgreSQL/JSONB hosts)
    """

    def __init__(self, database_url: str, *, timeout: float = 5.0, name: str = DOCUMENT):
        super().__init__(name)
        self._url = database_url
        self._engine = create_engine(database_url, **engine_options(database_url, timeout))
        self._schema_ready = False

        try:
            self._ensure_schema()
            logger.info(f"Document store '{name}' ready")
        except StoreUnavailableError as e:
            logger.warning(f"Document store '{name}' not reachable at startup: {e}")

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        try:
            with self._engine.connect() as conn:
                conn.execute(
                    text("""
                    CREATE TABLE IF NOT EXISTS documents (
                        collection VARCHAR(128) NOT NULL,
                        doc_id VARCHAR(256) NOT NULL,
                        body TEXT NOT NULL,
                        is_active BOOLEAN,
                        is_suspended BOOLEAN,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (collection, doc_id)
                    )
                """)
                )
                conn.execute(
                    text("""
                    CREATE INDEX IF NOT EXISTS idx_documents_feed
                    ON documents(collection, is_active, is_suspended)
                """)
                )
                conn.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "init_schema") from e
        self._schema_ready = True

    @staticmethod
    def _decode(body: str, doc_id: str) -> Profile:
        doc = json.loads(body)
        doc.pop("_id", None)
        if not doc.get(ID_FIELD):
            doc[ID_FIELD] = doc_id
        return doc

    def _find(self, conn, collection: str, doc_id: str) -> Optional[str]:
        row = conn.execute(
            text("SELECT body FROM documents WHERE collection = :collection AND doc_id = :doc_id"),
            {"collection": collection, "doc_id": doc_id},
        ).fetchone()
        return row[0] if row else None

    def _upsert(self, conn, collection: str, doc_id: str, body: Mapping[str, Any]) -> None:
        conn.execute(
            text("""
                INSERT INTO documents (collection, doc_id, body, is_active, is_suspended, updated_at)
                VALUES (:collection, :doc_id, :body, :is_active, :is_suspended, CURRENT_TIMESTAMP)
                ON CONFLICT (collection, doc_id) DO UPDATE SET
                    body = excluded.body,
                    is_active = excluded.is_active,
                    is_suspended = excluded.is_suspended,
                    updated_at = CURRENT_TIMESTAMP
            """),
            {
                "collection": collection,
                "doc_id": doc_id,
                "body": json.dumps(body, sort_keys=True),
                "is_active": coerce_bool(body.get("is_active", True)),
                "is_suspended": coerce_bool(body.get("is_suspended", False)),
            },
        )

    def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                body = self._find(conn, PROFILE_COLLECTION, user_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "get_profile") from e
        return self._decode(body, user_id) if body is not None else None

    def write_profile(self, user_id: str, profile: Profile) -> StoreWrite:
        doc = jsonable(profile)
        doc.pop("_id", None)
        doc[ID_FIELD] = user_id
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                existing = self._find(conn, PROFILE_COLLECTION, user_id)
                created_at = json.loads(existing).get("created_at") if existing else None
                doc["created_at"] = created_at or doc.get("created_at") or utc_now_iso()
                self._upsert(conn, PROFILE_COLLECTION, user_id, doc)
                conn.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "write_profile") from e
        return StoreWrite(profile=doc)

    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Profile]:
        if limit <= 0:
            return []
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text("""
                        SELECT doc_id, body FROM documents
                        WHERE collection = :collection
                          AND doc_id != :user_id
                          AND is_active = :active
                          AND COALESCE(is_suspended, :suspended) = :suspended
                        ORDER BY doc_id
                        LIMIT :limit
                    """),
                    {
                        "collection": PROFILE_COLLECTION,
                        "user_id": exclude_user_id,
                        "active": True,
                        "suspended": False,
                        "limit": int(limit),
                    },
                ).fetchall()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "list_feed_candidates") from e
        return [self._decode(body, doc_id) for doc_id, body in rows]

    def list_user_ids(self) -> List[str]:
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT doc_id FROM documents WHERE collection = :collection ORDER BY doc_id"),
                    {"collection": PROFILE_COLLECTION},
                ).fetchall()
                return [str(r[0]) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "list_user_ids") from e

    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        inserted = updated = 0
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                for record in records:
                    doc_id = str(record[id_field])
                    if self._find(conn, collection, doc_id) is None:
                        inserted += 1
                    else:
                        updated += 1
                    self._upsert(conn, collection, doc_id, jsonable(record))
                conn.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "upsert_many") from e
        return {"inserted": inserted, "updated": updated}

    def append_sync_log(self, record: Mapping[str, Any]) -> None:
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                conn.execute(
                    text("""
                        INSERT INTO documents (collection, doc_id, body)
                        VALUES ('sync_logs', :doc_id, :body)
                    """),
                    {"doc_id": str(record["sync_id"]), "body": json.dumps(jsonable(record), sort_keys=True)},
                )
                conn.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "append_sync_log") from e

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self._engine.dispose()
