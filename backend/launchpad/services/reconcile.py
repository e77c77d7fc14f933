from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

from ..chain.resolver import AddressResolver, Resolution, ResolveHint, is_tx_hash
from ..errors import ConflictError, PendingNotFound, StoreUnavailable, TransientChainError
from ..schemas.coins import BackfillReport, BackfillUpdate, CoinCreate, CoinRecord
from ..stores.base import CoinStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

WriteStatus = Literal["created", "updated"]
BackfillStatus = Literal["updated", "pending", "failed", "conflict", "noop"]

DESCRIPTIVE_FIELDS = ("description", "image_hash", "telegram_url", "x_url", "discord_url", "website_url")


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_description(name: str, symbol: str) -> str:
    return f"{name} ({symbol}) - A memecoin created on Polygon Amoy"


@dataclass(frozen=True)
class WriteResult:
    status: WriteStatus
    record: CoinRecord
    backend: str

    @property
    def from_fallback(self) -> bool:
        return self.backend != "primary"


@dataclass(frozen=True)
class BackfillOutcome:
    coin_id: str
    status: BackfillStatus
    record: CoinRecord | None = None
    backend: str | None = None
    error: str | None = None


class ReconciliationService:
    """Creates, finalizes and backfills coin records.

    The merge rules live in ``_merge`` and run unchanged against whichever
    store answers: the primary first, the fallback only when the primary is
    unavailable and fallback is enabled.
    """

    def __init__(
        self,
        primary: CoinStore,
        resolver: AddressResolver,
        *,
        fallback: CoinStore | None = None,
        fallback_enabled: bool = True,
        backfill_concurrency: int = 4,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.fallback_enabled = fallback_enabled
        self.resolver = resolver
        self.backfill_concurrency = max(1, backfill_concurrency)
        self.clock = clock

    @property
    def stores(self) -> list[CoinStore]:
        stores = [self.primary]
        if self.fallback is not None and self.fallback_enabled:
            stores.append(self.fallback)
        return stores

    async def _cascade(self, op: str, fn: Callable[[CoinStore], Awaitable[T]]) -> tuple[T, str]:
        last: StoreUnavailable | None = None
        for store in self.stores:
            try:
                return await fn(store), store.name
            except StoreUnavailable as exc:
                last = exc
                logger.warning("store unavailable op=%s backend=%s error=%s", op, store.name, exc.message)
        logger.error("all stores unavailable op=%s", op)
        raise last

    # -------- Create / FinalizePending --------

    async def create(self, candidate: CoinCreate) -> WriteResult:
        candidate = await self._with_addresses(candidate)
        (status, record), backend = await self._cascade(
            "create", lambda store: self._merge(store, candidate, finalize_only=False)
        )
        logger.info("coin %s id=%s backend=%s token=%s", status, record.id, backend, record.token_address)
        return WriteResult(status, record, backend)

    async def finalize_pending(self, candidate: CoinCreate) -> WriteResult:
        candidate = await self._with_addresses(candidate)
        (status, record), backend = await self._cascade(
            "finalize", lambda store: self._merge(store, candidate, finalize_only=True)
        )
        logger.info("coin finalized id=%s backend=%s token=%s", record.id, backend, record.token_address)
        return WriteResult(status, record, backend)

    async def reserve(self, candidate: CoinCreate) -> WriteResult:
        """Hold name and symbol as a pending row; any existing row conflicts."""
        record, backend = await self._cascade(
            "reserve", lambda store: store.insert(self._new_record(candidate))
        )
        logger.info("coin reserved id=%s backend=%s", record.id, backend)
        return WriteResult("created", record, backend)

    async def _with_addresses(self, candidate: CoinCreate) -> CoinCreate:
        if candidate.has_addresses:
            return candidate
        if not is_tx_hash(candidate.tx_hash) and not candidate.token_address:
            return candidate

        resolution = await self.resolver.resolve(
            ResolveHint(tx_hash=candidate.tx_hash, token_address=candidate.token_address)
        )
        if resolution.status == "error":
            raise TransientChainError(resolution.error or "chain_error")
        if resolution.status == "not_found":
            # stored as pending; backfill fills it in later
            logger.info("addresses not found symbol=%s reason=%s", candidate.symbol, resolution.error)
            return candidate

        pair = resolution.pair
        if candidate.token_address and candidate.token_address != pair.token_address:
            logger.warning(
                "resolved token mismatch symbol=%s given=%s resolved=%s",
                candidate.symbol,
                candidate.token_address,
                pair.token_address,
            )
            return candidate
        return candidate.model_copy(
            update={"token_address": pair.token_address, "curve_address": pair.curve_address}
        )

    async def _merge(
        self, store: CoinStore, candidate: CoinCreate, *, finalize_only: bool
    ) -> tuple[WriteStatus, CoinRecord]:
        if candidate.token_address:
            if await store.get_by_token_address(candidate.token_address) is not None:
                raise ConflictError("token_address", "Token address already exists")

        by_symbol = await store.get_by_symbol(candidate.symbol)
        pending = by_symbol if by_symbol is not None and by_symbol.is_pending else None

        by_name = await store.get_by_name(candidate.name)
        if by_name is not None and (pending is None or by_name.id != pending.id):
            raise ConflictError("name", "Token name already exists")

        if pending is not None:
            changes = self._finalize_changes(pending, candidate)
            updated = await store.update(pending.id, changes, only_pending=True)
            if updated is None:
                # finalized by a concurrent request between read and write
                raise ConflictError("symbol", "Symbol already exists")
            return "updated", updated

        if by_symbol is not None:
            raise ConflictError("symbol", "Symbol already exists")
        if finalize_only:
            raise PendingNotFound(candidate.symbol)

        return "created", await store.insert(self._new_record(candidate))

    def _finalize_changes(self, pending: CoinRecord, candidate: CoinCreate) -> dict:
        changes: dict = {"updated_at": self.clock()}
        if candidate.token_address:
            changes["token_address"] = candidate.token_address
        if candidate.curve_address:
            changes["curve_address"] = candidate.curve_address
        if candidate.tx_hash and candidate.tx_hash != pending.tx_hash:
            if is_tx_hash(pending.tx_hash):
                logger.warning(
                    "tx hash kept id=%s stored=%s offered=%s", pending.id, pending.tx_hash, candidate.tx_hash
                )
            else:
                changes["tx_hash"] = candidate.tx_hash
        for field in DESCRIPTIVE_FIELDS:
            value = getattr(candidate, field)
            if value is not None:
                changes[field] = value
        return changes

    def _new_record(self, candidate: CoinCreate) -> CoinRecord:
        created_at = self.clock()
        return CoinRecord(
            id=f"{candidate.symbol.lower()}-{created_at}",
            name=candidate.name,
            symbol=candidate.symbol,
            supply=candidate.supply,
            creator=candidate.creator,
            created_at=created_at,
            description=candidate.description or default_description(candidate.name, candidate.symbol),
            image_hash=candidate.image_hash,
            token_address=candidate.token_address,
            curve_address=candidate.curve_address,
            tx_hash=candidate.tx_hash,
            telegram_url=candidate.telegram_url,
            x_url=candidate.x_url,
            discord_url=candidate.discord_url,
            website_url=candidate.website_url,
        )

    # -------- reads --------

    async def get(self, coin_id: str) -> tuple[CoinRecord | None, str]:
        return await self._cascade("get", lambda store: store.get_by_id(coin_id))

    async def list_recent(self, limit: int) -> tuple[list[CoinRecord], str]:
        return await self._cascade("list", lambda store: store.list_recent(limit))

    async def resolve(self, hint: ResolveHint) -> Resolution:
        return await self.resolver.resolve(hint)

    # -------- Backfill --------

    async def backfill(self, record: CoinRecord) -> BackfillOutcome:
        if record.token_address and record.curve_address:
            return BackfillOutcome(record.id, "noop", record)

        hint = ResolveHint.from_record(record)
        if not hint.actionable:
            return BackfillOutcome(record.id, "noop", record)

        resolution = await self.resolver.resolve(hint)
        if resolution.status == "error":
            logger.warning("backfill failed id=%s error=%s", record.id, resolution.error)
            return BackfillOutcome(record.id, "failed", error=resolution.error)
        if resolution.status == "not_found":
            logger.info("backfill pending id=%s reason=%s", record.id, resolution.error)
            return BackfillOutcome(record.id, "pending", record)

        pair = resolution.pair
        if record.token_address and record.token_address.lower() != pair.token_address:
            logger.warning(
                "backfill token mismatch id=%s stored=%s resolved=%s",
                record.id,
                record.token_address,
                pair.token_address,
            )
            return BackfillOutcome(record.id, "pending", record)

        try:
            updated, backend = await self._cascade(
                "backfill",
                lambda store: store.fill_addresses(
                    record.id, pair.token_address, pair.curve_address, self.clock()
                ),
            )
        except ConflictError as exc:
            logger.info("backfill conflict id=%s field=%s", record.id, exc.field)
            return BackfillOutcome(record.id, "conflict", error=exc.message)
        except StoreUnavailable as exc:
            return BackfillOutcome(record.id, "failed", error=str(exc))

        if updated is None:
            return BackfillOutcome(record.id, "pending", record, error="row_changed")
        logger.info(
            "backfill updated id=%s backend=%s strategy=%s token=%s curve=%s",
            record.id,
            backend,
            resolution.strategy,
            updated.token_address,
            updated.curve_address,
        )
        return BackfillOutcome(record.id, "updated", updated, backend)

    async def backfill_sweep(self, limit: int = 50) -> BackfillReport:
        records, _ = await self._cascade("sweep", lambda store: store.list_unresolved(limit))
        semaphore = asyncio.Semaphore(self.backfill_concurrency)

        async def _one(record: CoinRecord) -> BackfillOutcome:
            async with semaphore:
                try:
                    return await self.backfill(record)
                except Exception as exc:
                    logger.exception("backfill crashed id=%s", record.id)
                    return BackfillOutcome(record.id, "failed", error=str(exc))

        outcomes = await asyncio.gather(*(_one(r) for r in records))
        updates = [
            BackfillUpdate(
                id=o.coin_id,
                token_address=o.record.token_address,
                curve_address=o.record.curve_address,
                backend=o.backend,
            )
            for o in outcomes
            if o.status == "updated"
        ]
        report = BackfillReport(
            checked=len(records),
            updated=len(updates),
            pending=sum(1 for o in outcomes if o.status in ("pending", "noop")),
            failed=sum(1 for o in outcomes if o.status in ("failed", "conflict")),
            updates=updates,
        )
        logger.info(
            "backfill sweep checked=%s updated=%s pending=%s failed=%s",
            report.checked,
            report.updated,
            report.pending,
            report.failed,
        )
        return report
