"""SQLite connection, migration and transaction helpers."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from review_consensus.errors import ContentionError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
DEFAULT_DB_PATH = "data/review_consensus.db"


async def _init_connection(db: aiosqlite.Connection, busy_timeout_ms: int) -> None:
    await db.execute("PRAGMA journal_mode = WAL")
    await db.execute("PRAGMA synchronous = NORMAL")
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    await db.execute("PRAGMA temp_store = MEMORY")


async def run_migrations(db: aiosqlite.Connection) -> None:
    schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
    await db.executescript(schema_sql)
    # Migration: columns added after the first schema release
    for table, column, ddl in (
        ("screening_decisions", "exclusion_reason", "ALTER TABLE screening_decisions ADD COLUMN exclusion_reason TEXT"),
        ("screening_decisions", "confidence", "ALTER TABLE screening_decisions ADD COLUMN confidence INTEGER"),
        ("screening_decisions", "time_spent_ms", "ALTER TABLE screening_decisions ADD COLUMN time_spent_ms INTEGER"),
        ("conflicts", "escalated_by", "ALTER TABLE conflicts ADD COLUMN escalated_by TEXT"),
        ("conflicts", "escalated_at", "ALTER TABLE conflicts ADD COLUMN escalated_at TEXT"),
        ("conflicts", "escalation_reason", "ALTER TABLE conflicts ADD COLUMN escalation_reason TEXT"),
    ):
        cursor = await db.execute(f"PRAGMA table_info({table})")
        existing = {str(row[1]) for row in await cursor.fetchall()}
        if column not in existing:
            await db.execute(ddl)


@asynccontextmanager
async def connect(
    db_path: str = DEFAULT_DB_PATH, busy_timeout_ms: int = 5000
) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection in autocommit mode; transactions are explicit."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(path), isolation_level=None)
    try:
        db.row_factory = aiosqlite.Row
        await _init_connection(db, busy_timeout_ms)
        yield db
    finally:
        await db.close()


@asynccontextmanager
async def get_db(db_path: str = DEFAULT_DB_PATH) -> AsyncIterator[aiosqlite.Connection]:
    async with connect(db_path) as db:
        await run_migrations(db)
        yield db


@asynccontextmanager
async def transaction(
    db: aiosqlite.Connection, *, write: bool = True
) -> AsyncIterator[aiosqlite.Connection]:
    """Run the body in one transaction.

    Write transactions take SQLite's reserved lock up front (BEGIN IMMEDIATE)
    so the read-check-write sequence inside cannot interleave with another
    writer, including one in a different process.
    """
    try:
        await db.execute("BEGIN IMMEDIATE" if write else "BEGIN")
    except sqlite3.OperationalError as exc:
        if "locked" in str(exc) or "busy" in str(exc):
            raise ContentionError("Database is busy; retry the operation") from exc
        raise
    try:
        yield db
    except BaseException:
        if db.in_transaction:
            await db.execute("ROLLBACK")
        raise
    else:
        await db.execute("COMMIT")


class Database:
    """Connection factory bound to one database file."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, busy_timeout_ms: int = 5000):
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with get_db(self.db_path):
            pass
        self._initialized = True
        logger.debug("Database ready at %s", self.db_path)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.initialize()
        async with connect(self.db_path, self.busy_timeout_ms) as db:
            yield db
