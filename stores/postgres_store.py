"""
Relational profile store (PostgreSQL in production, SQLite for development).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from errors import SchemaDriftDegraded, StoreUnavailableError

from .base import RELATIONAL, ProfileStore, StoreWrite
from .normalizer import (
    BOOL,
    CORE_FIELDS,
    FIELD_KINDS,
    FLOAT,
    ID_FIELD,
    INT,
    JSON,
    PROFILE_SCHEMA,
    TEXT,
    TIMESTAMP,
    Profile,
    coerce_bool,
    relational_projection,
    to_iso,
)

logger = logging.getLogger(__name__)

SQL_TYPES = {
    TEXT: "TEXT",
    INT: "INTEGER",
    FLOAT: "REAL",
    BOOL: "BOOLEAN",
    TIMESTAMP: "TIMESTAMP",
    JSON: "TEXT",
}

_COLUMN_DEFAULTS = {
    "is_active": "DEFAULT TRUE",
    "is_suspended": "DEFAULT FALSE",
    "created_at": "DEFAULT CURRENT_TIMESTAMP",
    "updated_at": "DEFAULT CURRENT_TIMESTAMP",
}

# Tables this subsystem owns, with their identifier column.
OWNED_TABLES = {"users": ID_FIELD, "sync_logs": "sync_id"}

IMMUTABLE_COLUMNS = frozenset({ID_FIELD, "created_at"})


def engine_options(database_url: str, timeout: float) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": timeout}}
    return {
        "poolclass": QueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": timeout,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
        "connect_args": {"connect_timeout": max(1, int(timeout))},
    }


def is_missing_column_error(exc: BaseException) -> bool:
    msg = str(getattr(exc, "orig", None) or exc).lower()
    if "no column named" in msg or "has no column" in msg:
        return True
    return "column" in msg and "does not exist" in msg


def _users_ddl() -> str:
    columns = []
    for field in PROFILE_SCHEMA:
        if field.name == ID_FIELD:
            columns.append(f"{ID_FIELD} VARCHAR(128) PRIMARY KEY")
            continue
        column = f"{field.name} {SQL_TYPES[field.kind]}"
        if field.name in _COLUMN_DEFAULTS:
            column += f" {_COLUMN_DEFAULTS[field.name]}"
        columns.append(column)
    return "CREATE TABLE IF NOT EXISTS users (\n    " + ",\n    ".join(columns) + "\n)"


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    kind = FIELD_KINDS.get(column)
    if kind == JSON:
        return value if isinstance(value, str) else json.dumps(value)
    if kind == BOOL:
        return coerce_bool(value)
    if kind == TIMESTAMP:
        return to_iso(value)
    return value


def decode_row(row: Mapping[str, Any]) -> Profile:
    out: Profile = {}
    for column, value in row.items():
        kind = FIELD_KINDS.get(column)
        if value is None:
            out[column] = None
        elif kind == BOOL:
            out[column] = coerce_bool(value)
        elif kind == JSON and isinstance(value, str):
            try:
                out[column] = json.loads(value)
            except ValueError:
                out[column] = value
        else:
            out[column] = to_iso(value)
    return out


class RelationalStore(ProfileStore):
    """
    SQL-backed profile store.

    - Idempotent upserts via INSERT ... ON CONFLICT (user_id) DO UPDATE
    - Known-column allow-list: unknown fields are dropped, never rejected
    - Missing-column errors fall back to a core-field projection
    - Append-only sync_logs table for reconciliation history

    Requires: sqlalchemy (plus psycopg2-binary for PostgreSQL)
    """

    def __init__(self, database_url: str, *, timeout: float = 5.0, name: str = RELATIONAL, create_schema: bool = True):
        super().__init__(name)
        self._url = database_url
        self._engine = create_engine(database_url, **engine_options(database_url, timeout))
        self._create_schema = create_schema
        self._schema_ready = not create_schema

        try:
            self._ensure_schema()
            logger.info(f"Relational store '{name}' ready")
        except StoreUnavailableError as e:
            # Health checks take over from here; the schema is retried lazily.
            logger.warning(f"Relational store '{name}' not reachable at startup: {e}")

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        try:
            with self._engine.connect() as conn:
                conn.execute(text(_users_ddl()))
                conn.execute(
                    text("""
                    CREATE TABLE IF NOT EXISTS sync_logs (
                        sync_id VARCHAR(256) PRIMARY KEY,
                        user_id VARCHAR(128),
                        sync_direction VARCHAR(64) NOT NULL,
                        status VARCHAR(16) NOT NULL,
                        error_message TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                )
                conn.execute(text("CREATE INDEX IF NOT EXISTS idx_sync_logs_user ON sync_logs(user_id)"))
                conn.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "init_schema") from e
        self._schema_ready = True

    def _select(self, conn, user_id: str) -> Optional[Profile]:
        row = conn.execute(text("SELECT * FROM users WHERE user_id = :user_id"), {"user_id": user_id}).mappings().fetchone()
        return decode_row(row) if row is not None else None

    def _upsert(self, conn, record: Mapping[str, Any]) -> None:
        columns = list(record)
        placeholders = ", ".join(f":{c}" for c in columns)
        updates = [f"{c} = excluded.{c}" for c in columns if c not in IMMUTABLE_COLUMNS]
        conflict = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        conn.execute(
            text(f"INSERT INTO users ({', '.join(columns)}) VALUES ({placeholders}) ON CONFLICT (user_id) {conflict}"),
            {c: _encode(c, record[c]) for c in columns},
        )

    def _write(self, user_id: str, record: Mapping[str, Any]) -> Profile:
        with self._engine.connect() as conn:
            self._upsert(conn, record)
            conn.commit()
            return self._select(conn, user_id) or dict(record)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                return self._select(conn, user_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "get_profile") from e

    def write_profile(self, user_id: str, profile: Profile) -> StoreWrite:
        record = relational_projection(profile)
        record[ID_FIELD] = user_id
        dropped = sorted(set(profile) - set(record))
        if dropped:
            logger.debug(f"Dropping unknown columns for {user_id}: {', '.join(dropped)}")

        self._ensure_schema()
        try:
            return StoreWrite(profile=self._write(user_id, record))
        except SQLAlchemyError as e:
            if not is_missing_column_error(e):
                raise StoreUnavailableError(self.name, str(e), "write_profile") from e
            first_error = str(getattr(e, "orig", None) or e)

        logger.warning(f"Column error writing {user_id}: {first_error}. Retrying with core fields only.")
        core = {c: record[c] for c in CORE_FIELDS if c in record}
        try:
            stored = self._write(user_id, core)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "write_profile") from e
        return StoreWrite(profile=stored, drift=SchemaDriftDegraded(self.name, first_error, sorted(core)))

    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Profile]:
        if limit <= 0:
            return []
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text("""
                        SELECT * FROM users
                        WHERE user_id != :user_id
                          AND is_active = :active
                          AND COALESCE(is_suspended, :suspended) = :suspended
                        LIMIT :limit
                    """),
                    {"user_id": exclude_user_id, "active": True, "suspended": False, "limit": int(limit)},
                ).mappings().fetchall()
                return [decode_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "list_feed_candidates") from e

    def list_user_ids(self) -> List[str]:
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                rows = conn.execute(text("SELECT user_id FROM users ORDER BY user_id")).fetchall()
                return [str(r[0]) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(self.name, str(e), "list_user_ids") from e

    def iter_table(self, table: str, batch_size: int) -> Iterator[List[Profile]]:
        """Yield an owned table in batches, ordered by its identifier."""
        if table not in OWNED_TABLES:
            raise ValueError(f"Unknown table: {table}")
        id_field = OWNED_TABLES[table]
        offset = 0
        while True:
            try:
                self._ensure_schema()
                with self._engine.connect() as conn:
                    rows = conn.execute(
                        text(f"SELECT * FROM {table} ORDER BY {id_field} LIMIT :limit OFFSET :offset"),
                        {"limit": int(batch_size), "offset": offset},
                    ).mappings().fetchall()
            except SQLAlchemyError as e:
                raise StoreUnavailableError(self.name, str(e), "iter_table") from e
            if not rows:
                return
            yield [decode_row(r) for r in rows]
            offset += len(rows)

    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        if collection != "users" or id_field != ID_FIELD:
            raise ValueError(f"Relational store only accepts keyed users rows (got {collection}/{id_field})")
        inserted = updated = 0
        try:
            self._ensure_schema()
            with self._engine.connect() as conn:
                for record in records:
                    row = relational_projection(record)
                    exists = conn.execute(
                        text("SELECT 1 FROM users WHERE user_id = :user_id"), {"user_id": row[ID_FIELD]}
                    ).fetchone()
                    self._upsert(conn, row)
                    if exists:
                        updated += 1
                    else:
                        inserted += 1
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
                        INSERT INTO sync_logs (sync_id, user_id, sync_direction, status, error_message, created_at)
                        VALUES (:sync_id, :user_id, :direction, :status, :error, :timestamp)
                    """),
                    {
                        "sync_id": record["sync_id"],
                        "user_id": record.get("user_id"),
                        "direction": record["direction"],
                        "status": record["status"],
                        "error": record.get("error"),
                        "timestamp": to_iso(record["timestamp"]),
                    },
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
