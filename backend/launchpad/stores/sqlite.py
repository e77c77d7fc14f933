from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from typing import Any, Callable, TypeVar

from ..errors import ConflictError, StoreUnavailable
from ..schemas.coins import CoinRecord
from .base import (
    CONFLICT_MESSAGES,
    INSERT_COLUMN_LIST,
    INSERT_COLUMNS,
    KEY_COLUMNS,
    LEGACY_INDEXES,
    SELECT_COLUMNS,
    CoinStore,
    check_changes,
    conflict_field,
    fold_key,
    legacy_key_updates,
    record_from_row,
    record_values,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS coins (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      symbol TEXT NOT NULL,
      supply TEXT NOT NULL,
      creator TEXT NOT NULL,
      created_at INTEGER NOT NULL,
      updated_at INTEGER,
      description TEXT,
      image_hash TEXT,
      token_address TEXT,
      curve_address TEXT,
      tx_hash TEXT,
      telegram_url TEXT,
      x_url TEXT,
      discord_url TEXT,
      website_url TEXT,
      market_cap REAL DEFAULT 0,
      price REAL DEFAULT 0,
      volume_24h REAL DEFAULT 0,
      holders INTEGER DEFAULT 0,
      total_transactions INTEGER DEFAULT 0,
      symbol_key TEXT,
      name_key TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_token_address ON coins (LOWER(token_address))
    WHERE token_address IS NOT NULL AND token_address <> ''
    """,
    "CREATE INDEX IF NOT EXISTS idx_coins_created_at ON coins (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_coins_creator ON coins (creator)",
)

KEY_INDEXES = (
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_symbol_key ON coins (symbol_key)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_name_key ON coins (name_key)",
)

PENDING_CLAUSE = "(token_address IS NULL OR token_address = '')"


class SQLiteCoinStore(CoinStore):
    """Embedded registry in a single SQLite file.

    Same schema, indexes and statements as the Postgres store; each operation
    runs on a short-lived connection in a worker thread.
    """

    def __init__(self, path: str, *, name: str = "fallback", busy_timeout: float = 5.0) -> None:
        self.name = name
        self.path = path
        self.busy_timeout = busy_timeout
        self._ready = False
        self._lock = asyncio.Lock()

    def _connect(self) -> sqlite3.Connection:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            return sqlite3.connect(self.path, timeout=self.busy_timeout)
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailable(self.name, str(exc)) from exc

    def _execute(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connect()
        try:
            with conn:
                return fn(conn)
        except sqlite3.IntegrityError as exc:
            field = conflict_field(str(exc))
            raise ConflictError(field, CONFLICT_MESSAGES.get(field, "Coin already exists")) from exc
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
            raise StoreUnavailable(self.name, str(exc)) from exc
        finally:
            conn.close()

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        for stmt in SCHEMA:
            conn.execute(stmt)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(coins)")}
        for column in KEY_COLUMNS:
            if column not in columns:
                conn.execute(f"ALTER TABLE coins ADD COLUMN {column} TEXT")
        rows = conn.execute(
            "SELECT id, symbol, name FROM coins WHERE symbol_key IS NULL OR name_key IS NULL"
        ).fetchall()
        if rows:
            logger.info("sqlite key backfill backend=%s rows=%s", self.name, len(rows))
            conn.executemany(
                "UPDATE coins SET symbol_key = ?, name_key = ? WHERE id = ?", legacy_key_updates(rows)
            )
        for index in LEGACY_INDEXES:
            conn.execute(f"DROP INDEX IF EXISTS {index}")
        for stmt in KEY_INDEXES:
            conn.execute(stmt)

    async def open(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            await asyncio.to_thread(self._execute, self._init_schema)
            self._ready = True
            logger.info("sqlite ready backend=%s path=%s", self.name, self.path)

    async def close(self) -> None:
        self._ready = False

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        await self.open()
        return await asyncio.to_thread(self._execute, fn)

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> CoinRecord | None:
        return await self._run(lambda conn: record_from_row(conn.execute(sql, params).fetchone()))

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[CoinRecord]:
        rows = await self._run(lambda conn: conn.execute(sql, params).fetchall())
        return [record_from_row(r) for r in rows]

    async def ping(self) -> None:
        await self._run(lambda conn: conn.execute("SELECT 1").fetchone())

    async def get_by_id(self, coin_id: str) -> CoinRecord | None:
        return await self._fetch_one(f"SELECT {SELECT_COLUMNS} FROM coins WHERE id = ?", (coin_id,))

    async def get_by_symbol(self, symbol: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE symbol_key = ? LIMIT 1",
            (fold_key(symbol),),
        )

    async def get_by_name(self, name: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE name_key = ? LIMIT 1",
            (fold_key(name),),
        )

    async def get_by_token_address(self, token_address: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE LOWER(token_address) = LOWER(?) LIMIT 1",
            (token_address,),
        )

    async def insert(self, record: CoinRecord) -> CoinRecord:
        values = record_values(record)
        placeholders = ", ".join(["?"] * len(INSERT_COLUMNS))

        def _insert(conn: sqlite3.Connection) -> CoinRecord | None:
            conn.execute(f"INSERT INTO coins ({INSERT_COLUMN_LIST}) VALUES ({placeholders})", values)
            row = conn.execute(f"SELECT {SELECT_COLUMNS} FROM coins WHERE id = ?", (record.id,)).fetchone()
            return record_from_row(row)

        return await self._run(_insert)

    async def update(
        self, coin_id: str, changes: dict[str, Any], *, only_pending: bool = False
    ) -> CoinRecord | None:
        check_changes(changes)
        if not changes:
            return await self.get_by_id(coin_id)
        assignments = ", ".join(f"{col} = ?" for col in changes)
        sql = f"UPDATE coins SET {assignments} WHERE id = ?"
        if only_pending:
            sql += f" AND {PENDING_CLAUSE}"
        params = (*changes.values(), coin_id)

        def _update(conn: sqlite3.Connection) -> CoinRecord | None:
            if conn.execute(sql, params).rowcount == 0:
                return None
            row = conn.execute(f"SELECT {SELECT_COLUMNS} FROM coins WHERE id = ?", (coin_id,)).fetchone()
            return record_from_row(row)

        return await self._run(_update)

    async def fill_addresses(
        self, coin_id: str, token_address: str, curve_address: str, updated_at: int
    ) -> CoinRecord | None:
        sql = f"""
            UPDATE coins
            SET token_address = COALESCE(NULLIF(token_address, ''), ?),
                curve_address = COALESCE(NULLIF(curve_address, ''), ?),
                updated_at = ?
            WHERE id = ?
              AND ({PENDING_CLAUSE} OR LOWER(token_address) = LOWER(?))
        """
        params = (token_address, curve_address, updated_at, coin_id, token_address)

        def _fill(conn: sqlite3.Connection) -> CoinRecord | None:
            if conn.execute(sql, params).rowcount == 0:
                return None
            row = conn.execute(f"SELECT {SELECT_COLUMNS} FROM coins WHERE id = ?", (coin_id,)).fetchone()
            return record_from_row(row)

        return await self._run(_fill)

    async def list_recent(self, limit: int) -> list[CoinRecord]:
        return await self._fetch_all(
            f"SELECT {SELECT_COLUMNS} FROM coins ORDER BY created_at DESC LIMIT ?",
            (limit,),
        )

    async def list_unresolved(self, limit: int) -> list[CoinRecord]:
        return await self._fetch_all(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM coins
            WHERE token_address IS NULL OR token_address = ''
               OR curve_address IS NULL OR curve_address = ''
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (limit,),
        )
