"""SQLite-backed catalog of sessions (groups) and their member documents.

Tables:
    groups(id, name UNIQUE)
    memberships(identity PRIMARY KEY, group_id, title, summary, updated_at)
    exclusion_rules(domain PRIMARY KEY)
    rejections(id, identity, reason, recorded_at)   -- append-only audit

All I/O runs on worker threads via ``asyncio.to_thread`` so callers stay on the
event loop. Writes go through ``SessionCatalog.transaction()``, which opens a
dedicated connection, takes the write lock up front (``BEGIN IMMEDIATE``),
commits on normal exit, rolls back on error and always closes the connection.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Tuple

from core.exclusions import normalize_rule
from core.models import Document, Group, Membership, Origin, RejectionRecord, utcnow

SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memberships (
    identity TEXT PRIMARY KEY,
    group_id INTEGER NOT NULL REFERENCES groups(id),
    title TEXT NOT NULL DEFAULT '',
    summary TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memberships_group ON memberships(group_id);
CREATE TABLE IF NOT EXISTS exclusion_rules (
    domain TEXT PRIMARY KEY
);
CREATE TABLE IF NOT EXISTS rejections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity TEXT NOT NULL,
    reason TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);
"""


class CatalogError(RuntimeError):
    pass


class GroupResolution(str, Enum):
    EXISTING = "existing"
    CREATED = "created"
    CONFLICT_REREAD = "conflict_reread"


class CatalogTransaction:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return await asyncio.to_thread(lambda: self._conn.execute(sql, params).fetchall())

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return await asyncio.to_thread(self._conn.execute, sql, params)

    async def find_group(self, name: str) -> Optional[Group]:
        rows = await self._fetchall("SELECT id, name FROM groups WHERE name = ?", (name,))
        return Group(id=rows[0]["id"], name=rows[0]["name"]) if rows else None

    async def get_group(self, group_id: int) -> Optional[Group]:
        rows = await self._fetchall("SELECT id, name FROM groups WHERE id = ?", (group_id,))
        return Group(id=rows[0]["id"], name=rows[0]["name"]) if rows else None

    async def try_insert_group(self, name: str) -> Optional[int]:
        """Optimistic insert. Returns the new id, or None when the name already exists."""
        cur = await self._execute(
            "INSERT INTO groups (name, created_at) VALUES (?, ?) ON CONFLICT(name) DO NOTHING",
            (name, utcnow().isoformat()),
        )
        if cur.rowcount == 0:
            return None
        return int(cur.lastrowid)

    async def resolve_group(self, name: str) -> Tuple[int, GroupResolution]:
        existing = await self.find_group(name)
        if existing is not None:
            return existing.id, GroupResolution.EXISTING
        created = await self.try_insert_group(name)
        if created is not None:
            return created, GroupResolution.CREATED
        # Another writer created the name between our read and our insert.
        reread = await self.find_group(name)
        if reread is None:
            raise CatalogError(f"group {name!r} conflicted on insert but is not readable")
        return reread.id, GroupResolution.CONFLICT_REREAD

    async def list_memberships(self) -> List[Membership]:
        rows = await self._fetchall(
            "SELECT identity, group_id, title, summary, updated_at FROM memberships ORDER BY identity"
        )
        return [_membership(row) for row in rows]

    async def upsert_membership(self, membership: Membership) -> None:
        await self._execute(
            """
            INSERT INTO memberships (identity, group_id, title, summary, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(identity) DO UPDATE SET
                group_id = excluded.group_id,
                title = excluded.title,
                summary = excluded.summary,
                updated_at = excluded.updated_at
            """,
            (
                membership.identity,
                membership.group_id,
                membership.title,
                membership.summary,
                membership.updated_at or utcnow().isoformat(),
            ),
        )

    async def update_title(self, identity: str, title: str) -> int:
        cur = await self._execute(
            "UPDATE memberships SET title = ?, updated_at = ? WHERE identity = ?",
            (title, utcnow().isoformat(), identity),
        )
        return cur.rowcount

    async def delete_memberships(self, identities: Iterable[str]) -> int:
        removed = 0
        for identity in identities:
            cur = await self._execute("DELETE FROM memberships WHERE identity = ?", (identity,))
            removed += cur.rowcount
        return removed

    async def delete_orphan_groups(self) -> int:
        cur = await self._execute(
            "DELETE FROM groups WHERE id NOT IN (SELECT DISTINCT group_id FROM memberships)"
        )
        return cur.rowcount


def _membership(row: sqlite3.Row) -> Membership:
    return Membership(
        identity=row["identity"],
        group_id=row["group_id"],
        title=row["title"],
        summary=row["summary"],
        updated_at=row["updated_at"],
    )


class SessionCatalog:
    def __init__(self, path: Path, timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        conn = self._connect()
        try:
            return conn.execute(sql, params).rowcount
        finally:
            conn.close()

    def _init_schema(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    async def initialize(self) -> None:
        await asyncio.to_thread(self._init_schema)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CatalogTransaction]:
        conn = await asyncio.to_thread(self._connect)
        try:
            await asyncio.to_thread(conn.execute, "BEGIN IMMEDIATE")
            try:
                yield CatalogTransaction(conn)
            except Exception:
                await asyncio.to_thread(conn.rollback)
                raise
            await asyncio.to_thread(conn.commit)
        finally:
            await asyncio.to_thread(conn.close)

    # ------ Reads ------
    async def list_groups(self) -> List[Group]:
        rows = await asyncio.to_thread(self._query, "SELECT id, name FROM groups ORDER BY id")
        return [Group(id=row["id"], name=row["name"]) for row in rows]

    async def list_memberships(self) -> List[Membership]:
        rows = await asyncio.to_thread(
            self._query,
            "SELECT identity, group_id, title, summary, updated_at FROM memberships ORDER BY identity",
        )
        return [_membership(row) for row in rows]

    async def load_history(self) -> List[Document]:
        rows = await asyncio.to_thread(
            self._query,
            """
            SELECT m.identity, m.title, m.summary, m.group_id, g.name AS group_name
            FROM memberships m JOIN groups g ON g.id = m.group_id
            ORDER BY g.id, m.identity
            """,
        )
        return [
            Document(
                identity=row["identity"],
                title=row["title"],
                body=row["summary"],
                summary=row["summary"],
                origin=Origin.HISTORICAL,
                group_id=row["group_id"],
                group_name=row["group_name"],
            )
            for row in rows
        ]

    async def load_exclusions(self) -> List[str]:
        rows = await asyncio.to_thread(self._query, "SELECT domain FROM exclusion_rules ORDER BY domain")
        return [row["domain"] for row in rows]

    async def list_rejections(self) -> List[RejectionRecord]:
        rows = await asyncio.to_thread(
            self._query, "SELECT identity, reason, recorded_at FROM rejections ORDER BY id"
        )
        return [
            RejectionRecord(
                identity=row["identity"],
                reason=row["reason"],
                timestamp=datetime.fromisoformat(row["recorded_at"]),
            )
            for row in rows
        ]

    # ------ Writes outside the reconcile transaction ------
    async def add_exclusion(self, rule: str) -> str:
        domain = normalize_rule(rule)
        if not domain:
            raise ValueError(f"not a usable exclusion rule: {rule!r}")
        await asyncio.to_thread(
            self._write, "INSERT INTO exclusion_rules (domain) VALUES (?) ON CONFLICT(domain) DO NOTHING", (domain,)
        )
        return domain

    async def remove_exclusion(self, rule: str) -> bool:
        removed = await asyncio.to_thread(
            self._write, "DELETE FROM exclusion_rules WHERE domain = ?", (normalize_rule(rule),)
        )
        return removed > 0

    async def record_rejection(self, record: RejectionRecord) -> None:
        await asyncio.to_thread(
            self._write,
            "INSERT INTO rejections (identity, reason, recorded_at) VALUES (?, ?, ?)",
            (record.identity, record.reason, record.timestamp.isoformat()),
        )
