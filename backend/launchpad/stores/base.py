from __future__ import annotations

import unicodedata
from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..schemas.coins import CoinRecord

COIN_COLUMNS: tuple[str, ...] = (
    "id",
    "name",
    "symbol",
    "supply",
    "creator",
    "created_at",
    "updated_at",
    "description",
    "image_hash",
    "token_address",
    "curve_address",
    "tx_hash",
    "telegram_url",
    "x_url",
    "discord_url",
    "website_url",
    "market_cap",
    "price",
    "volume_24h",
    "holders",
    "total_transactions",
)

# columns a finalize may touch; identity and provenance never change
UPDATABLE_COLUMNS = frozenset(
    {
        "token_address",
        "curve_address",
        "tx_hash",
        "description",
        "image_hash",
        "telegram_url",
        "x_url",
        "discord_url",
        "website_url",
        "updated_at",
    }
)

# case-folded copies of symbol and name; uniqueness is enforced on these
KEY_COLUMNS: tuple[str, ...] = ("symbol_key", "name_key")
INSERT_COLUMNS = COIN_COLUMNS + KEY_COLUMNS

# unique index name -> colliding field, shared by both schemas
UNIQUE_INDEXES = {
    "ux_coins_token_address": "token_address",
    "ux_coins_name_key": "name",
    "ux_coins_symbol_key": "symbol",
    "coins_pkey": "id",
}

# sqlite names the column, not the index, for plain column indexes
UNIQUE_COLUMNS = {
    "coins.name_key": "name",
    "coins.symbol_key": "symbol",
    "coins.id": "id",
}

# created by earlier schemas on LOWER(), which folds ASCII only
LEGACY_INDEXES = ("ux_coins_symbol", "ux_coins_name")

CONFLICT_MESSAGES = {
    "token_address": "Token address already exists",
    "name": "Token name already exists",
    "symbol": "Symbol already exists",
    "id": "Coin id already exists",
}

SELECT_COLUMNS = ", ".join(COIN_COLUMNS)
INSERT_COLUMN_LIST = ", ".join(INSERT_COLUMNS)


def fold_key(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip()).casefold()


def conflict_field(message: str | None) -> str:
    text = message or ""
    for index, field in UNIQUE_INDEXES.items():
        if index in text:
            return field
    for column, field in UNIQUE_COLUMNS.items():
        if column in text:
            return field
    return "unknown"


def record_from_row(row: Sequence[Any] | None) -> CoinRecord | None:
    if row is None:
        return None
    data = dict(zip(COIN_COLUMNS, row))
    # legacy rows stored '' for unresolved addresses
    for key in ("token_address", "curve_address"):
        if data.get(key) == "":
            data[key] = None
    return CoinRecord(**data)


def record_values(record: CoinRecord) -> tuple[Any, ...]:
    """Values for INSERT_COLUMNS, keys included."""
    data = record.model_dump()
    data["symbol_key"] = fold_key(record.symbol)
    data["name_key"] = fold_key(record.name)
    return tuple(data[c] for c in INSERT_COLUMNS)


def legacy_key_updates(rows: Sequence[Sequence[Any]]) -> list[tuple[str, str, str]]:
    """(symbol_key, name_key, id) for rows written before the key columns existed."""
    return [(fold_key(symbol), fold_key(name), coin_id) for coin_id, symbol, name in rows]


def check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")


class CoinStore(ABC):
    """Durable coin registry. Both backends enforce the same uniqueness rules.

    Every method raises ``StoreUnavailable`` when the backend cannot be reached
    and ``ConflictError`` when a unique index rejects a write.
    """

    name: str = "primary"

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def get_by_id(self, coin_id: str) -> CoinRecord | None: ...

    @abstractmethod
    async def get_by_symbol(self, symbol: str) -> CoinRecord | None: ...

    @abstractmethod
    async def get_by_name(self, name: str) -> CoinRecord | None: ...

    @abstractmethod
    async def get_by_token_address(self, token_address: str) -> CoinRecord | None: ...

    @abstractmethod
    async def insert(self, record: CoinRecord) -> CoinRecord: ...

    @abstractmethod
    async def update(
        self, coin_id: str, changes: dict[str, Any], *, only_pending: bool = False
    ) -> CoinRecord | None:
        """Apply ``changes`` in one statement.

        With ``only_pending`` the row must still lack a token address; None is
        returned when no row matched.
        """

    @abstractmethod
    async def fill_addresses(
        self, coin_id: str, token_address: str, curve_address: str, updated_at: int
    ) -> CoinRecord | None:
        """Set token/curve only where they are still empty."""

    @abstractmethod
    async def list_recent(self, limit: int) -> list[CoinRecord]: ...

    @abstractmethod
    async def list_unresolved(self, limit: int) -> list[CoinRecord]: ...
