"""KeyStore: aiosqlite-backed persistence for API key records.

Uses aiosqlite EXCLUSIVELY; no synchronous sqlite3 calls on the event loop.

Features:
  - Long-lived connection: opened in initialize(), closed in close()
  - WAL mode: concurrent readers while the metering worker writes
  - Schema version guard: PRAGMA user_version, forward migrations, RuntimeError
    on an unknown version
  - One write lock: every multi-statement write and every usage increment
    commits or rolls back as a unit
  - File permissions 0o600 on every initialize() call
  - Atomic usage increments: ``usage_count = usage_count + 1`` in SQL, never
    read-modify-write in Python, so concurrent requests never lose a count
  - Tombstones: deleted key digests move to ``retired_key_hashes`` so a key
    value can never be reissued

Only SHA-256 digests of key values are stored. The raw value never reaches
this module.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from parcelgate.auth.errors import DuplicateKeyError
from parcelgate.auth.models import ApiKeyRecord, KeyScope, RateLimitPolicy
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id               TEXT PRIMARY KEY,
    key_hash         TEXT NOT NULL UNIQUE,
    key_hint         TEXT NOT NULL,
    owner_ref        TEXT NOT NULL,
    courier_code     TEXT,
    warehouse_id     TEXT,
    permissions      TEXT NOT NULL DEFAULT '[]',
    description      TEXT NOT NULL DEFAULT '',
    is_active        INTEGER NOT NULL DEFAULT 1,
    expires_at       TEXT,
    usage_count      INTEGER NOT NULL DEFAULT 0 CHECK(usage_count >= 0),
    last_used_at     TEXT,
    rate_per_minute  INTEGER,
    rate_per_hour    INTEGER,
    rate_per_day     INTEGER,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    created_by       TEXT
);

CREATE TABLE IF NOT EXISTS retired_key_hashes (
    key_hash    TEXT PRIMARY KEY,
    key_id      TEXT NOT NULL,
    retired_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_api_keys_courier ON api_keys(courier_code);
CREATE INDEX IF NOT EXISTS idx_api_keys_warehouse ON api_keys(warehouse_id);
CREATE INDEX IF NOT EXISTS idx_api_keys_active_expiry ON api_keys(is_active, expires_at);
"""

_SCHEMA_VERSION = 2

# Ordered upgrades keyed by the version they start from.
_MIGRATIONS: dict[int, str] = {
    1: "ALTER TABLE api_keys ADD COLUMN created_by TEXT;",
}


# ─── KeyFilters ───────────────────────────────────────────────────────────────


@dataclass
class KeyFilters:
    """Query filters for KeyStore.list().

    All fields optional; an empty KeyFilters() returns every record.
    """

    courier_code: Optional[str] = None
    warehouse_id: Optional[str] = None
    owner_ref: Optional[str] = None
    is_active: Optional[bool] = None
    courier_scoped_only: bool = False
    """Only keys with a courier scope (partner integration keys)."""


# ─── Row (de)serialisation ────────────────────────────────────────────────────


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: aiosqlite.Row) -> ApiKeyRecord:
    rate_limit: Optional[RateLimitPolicy] = None
    if row["rate_per_minute"] is not None:
        rate_limit = RateLimitPolicy(
            per_minute=row["rate_per_minute"],
            per_hour=row["rate_per_hour"],
            per_day=row["rate_per_day"],
        )
    created_at = _parse_ts(row["created_at"])
    updated_at = _parse_ts(row["updated_at"])
    assert created_at is not None and updated_at is not None
    return ApiKeyRecord(
        id=row["id"],
        key_hash=row["key_hash"],
        key_hint=row["key_hint"],
        owner_ref=row["owner_ref"],
        scope=KeyScope(courier_code=row["courier_code"], warehouse_id=row["warehouse_id"]),
        permissions=tuple(json.loads(row["permissions"])),
        description=row["description"],
        is_active=bool(row["is_active"]),
        expires_at=_parse_ts(row["expires_at"]),
        usage_count=row["usage_count"],
        last_used_at=_parse_ts(row["last_used_at"]),
        rate_limit=rate_limit,
        created_at=created_at,
        updated_at=updated_at,
        created_by=row["created_by"],
    )


def _record_params(record: ApiKeyRecord) -> tuple[Any, ...]:
    rate = record.rate_limit
    return (
        record.id,
        record.key_hash,
        record.key_hint,
        record.owner_ref,
        record.scope.courier_code,
        record.scope.warehouse_id,
        json.dumps(list(record.permissions)),
        record.description,
        int(record.is_active),
        record.expires_at.isoformat() if record.expires_at else None,
        record.usage_count,
        record.last_used_at.isoformat() if record.last_used_at else None,
        rate.per_minute if rate else None,
        rate.per_hour if rate else None,
        rate.per_day if rate else None,
        record.created_at.isoformat(),
        record.updated_at.isoformat(),
        record.created_by,
    )


_INSERT_SQL = """INSERT INTO api_keys
   (id, key_hash, key_hint, owner_ref, courier_code, warehouse_id,
    permissions, description, is_active, expires_at, usage_count,
    last_used_at, rate_per_minute, rate_per_hour, rate_per_day,
    created_at, updated_at, created_by)
   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)"""


# ─── KeyStore ─────────────────────────────────────────────────────────────────


class KeyStore:
    """Async SQLite store for API key records.

    Usage:
        store = KeyStore("~/.parcelgate/keys.db")
        await store.initialize()
        record = await store.get_by_hash(digest)
        await store.close()
    """

    def __init__(self, db_path: str | Path = "~/.parcelgate/keys.db") -> None:
        self._db_path: str = os.path.expanduser(str(db_path))
        self._db: Optional[aiosqlite.Connection] = None
        # Writers share one connection, so each commit or rollback covers only
        # the statements issued under this lock.
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL, create/verify schema, chmod 0600.

        Idempotent: calling it on an already-open store is a no-op.

        Raises:
            RuntimeError: If PRAGMA user_version is not 0, a migratable version,
                          or the expected version.
        """
        if self._db is not None:
            return

        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info("key_store_schema_created", db_path=self._db_path)
        elif current_version in _MIGRATIONS:
            for version in range(current_version, _SCHEMA_VERSION):
                await self._db.executescript(_MIGRATIONS[version])
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "key_store_schema_migrated",
                db_path=self._db_path,
                from_version=current_version,
                to_version=_SCHEMA_VERSION,
            )
        elif current_version != _SCHEMA_VERSION:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported key store schema version: {current_version}. "
                f"Expected {_SCHEMA_VERSION}."
            )

        os.chmod(self._db_path, 0o600)
        logger.debug("key_store_ready", db_path=self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("key_store_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the connection is alive and queryable. Never raises."""
        try:
            await self._conn.execute("SELECT 1")
            return True
        except Exception:
            return False

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("KeyStore not initialized; call initialize() first")
        return self._db

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        cursor = await self._conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def get_by_hash(self, key_hash: str) -> Optional[ApiKeyRecord]:
        """Exact-match lookup by key digest. No caching: every call hits the DB."""
        cursor = await self._conn.execute(
            "SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,)
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def list(self, filters: Optional[KeyFilters] = None) -> list[ApiKeyRecord]:
        """Records matching filters, newest first."""
        filters = filters or KeyFilters()
        conditions: list[str] = []
        params: list[Any] = []

        if filters.courier_code is not None:
            conditions.append("courier_code = ?")
            params.append(filters.courier_code)
        if filters.warehouse_id is not None:
            conditions.append("warehouse_id = ?")
            params.append(filters.warehouse_id)
        if filters.owner_ref is not None:
            conditions.append("owner_ref = ?")
            params.append(filters.owner_ref)
        if filters.is_active is not None:
            conditions.append("is_active = ?")
            params.append(int(filters.is_active))
        if filters.courier_scoped_only:
            conditions.append("courier_code IS NOT NULL")

        sql = "SELECT * FROM api_keys"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, id DESC"

        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def is_retired(self, key_hash: str) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM retired_key_hashes WHERE key_hash = ?", (key_hash,)
        )
        return await cursor.fetchone() is not None

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert(self, record: ApiKeyRecord) -> None:
        """Persist a new record.

        Raises:
            DuplicateKeyError: If the digest belongs to a live or retired key.
        """
        async with self._write_lock:
            if await self.is_retired(record.key_hash):
                raise DuplicateKeyError("Generated API key matches a retired key")
            try:
                await self._conn.execute(_INSERT_SQL, _record_params(record))
                await self._conn.commit()
            except aiosqlite.IntegrityError as exc:
                await self._conn.rollback()
                raise DuplicateKeyError() from exc

    async def replace(self, old_key_id: str, new_record: ApiKeyRecord, now: datetime) -> bool:
        """Insert ``new_record`` and deactivate ``old_key_id`` in one transaction.

        Returns False (and writes nothing) if the old key does not exist.

        Raises:
            DuplicateKeyError: If the new digest belongs to a live or retired key.
        """
        async with self._write_lock:
            if await self.is_retired(new_record.key_hash):
                raise DuplicateKeyError("Generated API key matches a retired key")
            try:
                cursor = await self._conn.execute(
                    "UPDATE api_keys SET is_active = 0, updated_at = ? WHERE id = ?",
                    (now.isoformat(), old_key_id),
                )
                if cursor.rowcount == 0:
                    await self._conn.rollback()
                    return False
                await self._conn.execute(_INSERT_SQL, _record_params(new_record))
                await self._conn.commit()
            except aiosqlite.IntegrityError as exc:
                await self._conn.rollback()
                raise DuplicateKeyError() from exc
            return True

    async def set_active(self, key_id: str, active: bool, now: datetime) -> Optional[ApiKeyRecord]:
        """Set is_active and bump updated_at. Nothing else changes.

        Returns the updated record, or None if the key does not exist.
        """
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE api_keys SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(active), now.isoformat(), key_id),
            )
            await self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(key_id)

    async def set_expiry(
        self, key_id: str, expires_at: Optional[datetime], now: datetime
    ) -> Optional[ApiKeyRecord]:
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE api_keys SET expires_at = ?, updated_at = ? WHERE id = ?",
                (expires_at.isoformat() if expires_at else None, now.isoformat(), key_id),
            )
            await self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get(key_id)

    async def delete(self, key_id: str, now: datetime) -> Optional[ApiKeyRecord]:
        """Permanently remove a record and retire its digest.

        Returns the deleted record, or None if the key does not exist.
        """
        async with self._write_lock:
            record = await self.get(key_id)
            if record is None:
                return None
            await self._conn.execute(
                "INSERT OR IGNORE INTO retired_key_hashes (key_hash, key_id, retired_at) "
                "VALUES (?, ?, ?)",
                (record.key_hash, record.id, now.isoformat()),
            )
            await self._conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))
            await self._conn.commit()
            return record

    async def record_usage(self, key_id: str, used_at: datetime) -> bool:
        """Atomically increment usage_count and advance last_used_at.

        last_used_at never moves backwards, so queued updates applied out of
        order still leave the most recent timestamp. Returns False if the key
        no longer exists (deleted between resolution and metering).
        """
        used_at_iso = used_at.isoformat()
        async with self._write_lock:
            cursor = await self._conn.execute(
                "UPDATE api_keys SET usage_count = usage_count + 1, "
                "last_used_at = CASE WHEN last_used_at IS NULL OR last_used_at < ? "
                "THEN ? ELSE last_used_at END "
                "WHERE id = ?",
                (used_at_iso, used_at_iso, key_id),
            )
            await self._conn.commit()
        return cursor.rowcount > 0
