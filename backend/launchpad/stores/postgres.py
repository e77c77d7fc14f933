from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import psycopg
from psycopg.errors import UniqueViolation
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from ..errors import ConflictError, StoreUnavailable
from ..schemas.coins import CoinRecord
from .base import (
    CONFLICT_MESSAGES,
    INSERT_COLUMN_LIST,
    INSERT_COLUMNS,
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

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS coins (
      id VARCHAR(255) PRIMARY KEY,
      name VARCHAR(255) NOT NULL,
      symbol VARCHAR(100) NOT NULL,
      supply VARCHAR(100) NOT NULL,
      creator VARCHAR(255) NOT NULL,
      created_at BIGINT NOT NULL,
      updated_at BIGINT,
      description TEXT,
      image_hash TEXT,
      token_address VARCHAR(255),
      curve_address VARCHAR(255),
      tx_hash TEXT,
      telegram_url TEXT,
      x_url TEXT,
      discord_url TEXT,
      website_url TEXT,
      market_cap DOUBLE PRECISION DEFAULT 0,
      price DOUBLE PRECISION DEFAULT 0,
      volume_24h DOUBLE PRECISION DEFAULT 0,
      holders INTEGER DEFAULT 0,
      total_transactions INTEGER DEFAULT 0
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_token_address ON coins (LOWER(token_address))
    WHERE token_address IS NOT NULL AND token_address <> '';
    """,
    "CREATE INDEX IF NOT EXISTS idx_coins_created_at ON coins (created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_coins_creator ON coins (creator);",
    "ALTER TABLE coins ALTER COLUMN image_hash TYPE TEXT;",
    "ALTER TABLE coins ALTER COLUMN tx_hash TYPE TEXT;",
    "ALTER TABLE coins ADD COLUMN IF NOT EXISTS symbol_key TEXT;",
    "ALTER TABLE coins ADD COLUMN IF NOT EXISTS name_key TEXT;",
)

KEY_INDEXES = (
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_symbol_key ON coins (symbol_key);",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_coins_name_key ON coins (name_key);",
)

PENDING_CLAUSE = "(token_address IS NULL OR token_address = '')"


class PostgresCoinStore(CoinStore):
    """Primary registry on Postgres (psycopg 3, async pool)."""

    def __init__(
        self,
        conninfo: str | None,
        *,
        min_size: int = 1,
        max_size: int = 5,
        timeout: float = 10.0,
        name: str = "primary",
    ) -> None:
        self.name = name
        self.conninfo = conninfo
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self._pool: AsyncConnectionPool | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self._pool is not None:
            return
        if not self.conninfo:
            raise StoreUnavailable(self.name, "database_url not configured")
        async with self._lock:
            if self._pool is not None:
                return
            pool = AsyncConnectionPool(
                conninfo=self.conninfo,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=self.timeout,
                open=False,
            )
            try:
                await pool.open(wait=True, timeout=self.timeout)
                async with pool.connection() as conn:
                    await self._init_schema(conn)
            except (PoolTimeout, psycopg.Error) as exc:
                await pool.close()
                logger.warning("postgres open failed backend=%s error=%s", self.name, exc)
                raise StoreUnavailable(self.name, str(exc)) from exc
            self._pool = pool
            logger.info("postgres ready backend=%s", self.name)

    async def _init_schema(self, conn: psycopg.AsyncConnection) -> None:
        for stmt in SCHEMA:
            await conn.execute(stmt)
        cur = await conn.execute(
            "SELECT id, symbol, name FROM coins WHERE symbol_key IS NULL OR name_key IS NULL;"
        )
        rows = await cur.fetchall()
        if rows:
            logger.info("postgres key backfill backend=%s rows=%s", self.name, len(rows))
            async with conn.cursor() as update:
                await update.executemany(
                    "UPDATE coins SET symbol_key = %s, name_key = %s WHERE id = %s;",
                    legacy_key_updates(rows),
                )
        for index in LEGACY_INDEXES:
            await conn.execute(f"DROP INDEX IF EXISTS {index};")
        for stmt in KEY_INDEXES:
            await conn.execute(stmt)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[psycopg.AsyncCursor]:
        await self.open()
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    yield cur
        except UniqueViolation as exc:
            field = conflict_field(exc.diag.constraint_name or str(exc))
            raise ConflictError(field, CONFLICT_MESSAGES.get(field, "Coin already exists")) from exc
        except (PoolTimeout, psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise StoreUnavailable(self.name, str(exc)) from exc

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> CoinRecord | None:
        async with self._cursor() as cur:
            await cur.execute(sql, params)
            return record_from_row(await cur.fetchone())

    async def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[CoinRecord]:
        async with self._cursor() as cur:
            await cur.execute(sql, params)
            rows = await cur.fetchall()
        return [record_from_row(r) for r in rows]

    async def ping(self) -> None:
        async with self._cursor() as cur:
            await cur.execute("SELECT 1;")
            await cur.fetchone()

    async def get_by_id(self, coin_id: str) -> CoinRecord | None:
        return await self._fetch_one(f"SELECT {SELECT_COLUMNS} FROM coins WHERE id = %s;", (coin_id,))

    async def get_by_symbol(self, symbol: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE symbol_key = %s LIMIT 1;",
            (fold_key(symbol),),
        )

    async def get_by_name(self, name: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE name_key = %s LIMIT 1;",
            (fold_key(name),),
        )

    async def get_by_token_address(self, token_address: str) -> CoinRecord | None:
        return await self._fetch_one(
            f"SELECT {SELECT_COLUMNS} FROM coins WHERE LOWER(token_address) = LOWER(%s) LIMIT 1;",
            (token_address,),
        )

    async def insert(self, record: CoinRecord) -> CoinRecord:
        placeholders = ", ".join(["%s"] * len(INSERT_COLUMNS))
        return await self._fetch_one(
            f"INSERT INTO coins ({INSERT_COLUMN_LIST}) VALUES ({placeholders}) RETURNING {SELECT_COLUMNS};",
            record_values(record),
        )

    async def update(
        self, coin_id: str, changes: dict[str, Any], *, only_pending: bool = False
    ) -> CoinRecord | None:
        check_changes(changes)
        if not changes:
            return await self.get_by_id(coin_id)
        assignments = ", ".join(f"{col} = %s" for col in changes)
        sql = f"UPDATE coins SET {assignments} WHERE id = %s"
        if only_pending:
            sql += f" AND {PENDING_CLAUSE}"
        sql += f" RETURNING {SELECT_COLUMNS};"
        return await self._fetch_one(sql, (*changes.values(), coin_id))

    async def fill_addresses(
        self, coin_id: str, token_address: str, curve_address: str, updated_at: int
    ) -> CoinRecord | None:
        return await self._fetch_one(
            f"""
            UPDATE coins
            SET token_address = COALESCE(NULLIF(token_address, ''), %s),
                curve_address = COALESCE(NULLIF(curve_address, ''), %s),
                updated_at = %s
            WHERE id = %s
              AND ({PENDING_CLAUSE} OR LOWER(token_address) = LOWER(%s))
            RETURNING {SELECT_COLUMNS};
            """,
            (token_address, curve_address, updated_at, coin_id, token_address),
        )

    async def list_recent(self, limit: int) -> list[CoinRecord]:
        return await self._fetch_all(
            f"SELECT {SELECT_COLUMNS} FROM coins ORDER BY created_at DESC LIMIT %s;",
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
            LIMIT %s;
            """,
            (limit,),
        )
