"""User account lookup for human session resolution.

The user table belongs to the surrounding business database; ParcelGate only
reads it. ``UserDirectory`` is the narrow contract the resolver depends on:

  get_user(user_id) → UserAccount | None

Implementations:
  - SQLiteUserDirectory    reads the ``users`` table over aiosqlite
  - InMemoryUserDirectory  dict-backed; used by tests and local demos
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, runtime_checkable

import aiosqlite

from parcelgate.auth.models import Role
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

ACCOUNT_STATUS_ACTIVE = "active"


@dataclass(frozen=True)
class UserAccount:
    id: str
    email: str
    role: Role
    account_status: str = ACCOUNT_STATUS_ACTIVE
    warehouse_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.account_status == ACCOUNT_STATUS_ACTIVE


@runtime_checkable
class UserDirectory(Protocol):
    """Read-only view of user accounts."""

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        ...

    async def close(self) -> None:
        ...


# ─── SQLite ───────────────────────────────────────────────────────────────────

_CREATE_USERS_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL UNIQUE,
    role            TEXT NOT NULL,
    account_status  TEXT NOT NULL DEFAULT 'pending',
    warehouse_id    TEXT
);
"""


class SQLiteUserDirectory:
    """UserDirectory over the ``users`` table.

    ``initialize(create=True)`` creates the table when it is missing so a
    fresh development database works; production deployments point this at
    the business database, where the table already exists.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path: str = os.path.expanduser(str(db_path))
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self, create: bool = True) -> None:
        if self._db is not None:
            return
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        if create:
            await self._db.executescript(_CREATE_USERS_SQL)
            await self._db.commit()
        logger.debug("user_directory_ready", db_path=self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        if self._db is None:
            raise RuntimeError("SQLiteUserDirectory not initialized; call initialize() first")
        cursor = await self._db.execute(
            "SELECT id, email, role, account_status, warehouse_id FROM users WHERE id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        try:
            role = Role.parse(row["role"])
        except ValueError:
            logger.warning("user_unknown_role", user_id=user_id, role=row["role"])
            return None
        return UserAccount(
            id=row["id"],
            email=row["email"],
            role=role,
            account_status=row["account_status"],
            warehouse_id=row["warehouse_id"],
        )

    async def upsert_user(self, user: UserAccount) -> None:
        """Insert or replace a user row. Used for seeding development databases."""
        if self._db is None:
            raise RuntimeError("SQLiteUserDirectory not initialized; call initialize() first")
        await self._db.execute(
            "INSERT OR REPLACE INTO users (id, email, role, account_status, warehouse_id) "
            "VALUES (?, ?, ?, ?, ?)",
            (user.id, user.email, user.role.value, user.account_status, user.warehouse_id),
        )
        await self._db.commit()


# ─── In-memory ────────────────────────────────────────────────────────────────


class InMemoryUserDirectory:
    """Dict-backed UserDirectory."""

    def __init__(self, users: Iterable[UserAccount] = ()) -> None:
        self._users: dict[str, UserAccount] = {u.id: u for u in users}

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._users.get(user_id)

    async def close(self) -> None:
        return None
