from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak

from ..errors import TransientChainError
from .client import ChainLogClient, ContractCallReverted
from .events import PairEventDecoder, ResolvedPair, hex_to_int

logger = logging.getLogger(__name__)

MINTER_SELECTOR = "0x" + keccak(text="minter()")[:4].hex()
TOKEN_TO_CURVE_SELECTOR = "0x" + keccak(text="tokenToCurve(address)")[:4].hex()
ZERO_ADDRESS = "0x" + "00" * 20
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

ResolutionStatus = Literal["found", "not_found", "error"]


def is_tx_hash(value: str | None) -> bool:
    return bool(value) and TX_HASH_RE.match(value) is not None


@dataclass(frozen=True)
class ResolveHint:
    """What we know about a coin before asking the chain."""

    tx_hash: str | None = None
    token_address: str | None = None
    symbol: str | None = None
    name: str | None = None
    # wallet that launched the coin; narrows PairCreated matches in tx strategies
    creator: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> "ResolveHint":
        return cls(
            tx_hash=record.tx_hash if is_tx_hash(record.tx_hash) else None,
            token_address=record.token_address or None,
            symbol=record.symbol,
            name=record.name,
        )

    @property
    def has_tx_hash(self) -> bool:
        return is_tx_hash(self.tx_hash)

    @property
    def actionable(self) -> bool:
        return self.has_tx_hash or bool(self.token_address) or bool(self.symbol or self.name)


@dataclass(frozen=True)
class Resolution:
    status: ResolutionStatus
    pair: ResolvedPair | None = None
    strategy: str | None = None
    error: str | None = None

    @classmethod
    def found(cls, pair: ResolvedPair, strategy: str) -> "Resolution":
        return cls(status="found", pair=pair, strategy=strategy)

    @classmethod
    def not_found(cls, reason: str) -> "Resolution":
        return cls(status="not_found", error=reason)

    @classmethod
    def failed(cls, error: str) -> "Resolution":
        return cls(status="error", error=error)


class AddressResolver:
    """Recovers a coin's (token, curve) pair from chain data.

    Strategies, first hit wins:
      - minter() probe when the token is already known
      - PairCreated in the receipt's own logs
      - PairCreated in a block window around the receipt
      - factory tokenToCurve(token), then recent PairCreated logs indexed by
        the token (token known, tx strategies exhausted)
      - newest-first historical scan matched on name/symbol (no tx hash only)

    Exhausting the applicable strategies is "not_found"; an RPC failure or the
    deadline expiring is "error". The two never collapse into each other.
    """

    def __init__(
        self,
        client: ChainLogClient,
        decoder: PairEventDecoder,
        *,
        factory_address: str | None = None,
        window_blocks: int = 25,
        scan_blocks: int = 500_000,
        token_scan_blocks: int = 50_000,
        deadline_seconds: float = 30.0,
    ) -> None:
        self.client = client
        self.decoder = decoder
        self.factory_address = factory_address.lower() if factory_address else None
        self.window_blocks = window_blocks
        self.scan_blocks = scan_blocks
        self.token_scan_blocks = token_scan_blocks
        self.deadline_seconds = deadline_seconds

    async def resolve(self, hint: ResolveHint, *, deadline: float | None = None) -> Resolution:
        timeout = self.deadline_seconds if deadline is None else deadline
        try:
            resolution = await asyncio.wait_for(self._resolve(hint), timeout)
        except asyncio.TimeoutError:
            logger.warning("resolve deadline exceeded tx=%s timeout=%s", hint.tx_hash, timeout)
            return Resolution.failed("deadline_exceeded")
        except TransientChainError as exc:
            logger.warning("resolve rpc failure tx=%s error=%s", hint.tx_hash, exc)
            return Resolution.failed(str(exc))
        logger.debug(
            "resolve done tx=%s status=%s strategy=%s",
            hint.tx_hash,
            resolution.status,
            resolution.strategy,
        )
        return resolution

    async def _resolve(self, hint: ResolveHint) -> Resolution:
        token = hint.token_address.lower() if hint.token_address else None
        if token:
            curve = await self.probe_minter(token)
            if curve:
                return Resolution.found(ResolvedPair(token, curve), "minter")

        if hint.has_tx_hash:
            resolution = await self._from_tx_hash(hint.tx_hash, hint.creator)
            if resolution.status == "found" or not token:
                return resolution

        if token:
            return await self._from_token(token)

        if hint.symbol or hint.name:
            return await self._from_metadata(hint.symbol, hint.name)

        return Resolution.not_found("no_hint")

    async def _from_tx_hash(self, tx_hash: str, creator: str | None = None) -> Resolution:
        receipt = await self.client.get_transaction_receipt(tx_hash)
        if receipt is None:
            return Resolution.not_found("receipt_missing")

        logs = receipt.get("logs") or []
        if self.factory_address:
            logs = [
                log
                for log in logs
                if isinstance(log, dict) and str(log.get("address", "")).lower() == self.factory_address
            ]
        pair = self.decoder.first_match(logs, creator=creator)
        if pair:
            return Resolution.found(pair, "receipt")

        block = hex_to_int(receipt.get("blockNumber")) or 0
        window = await self.client.get_logs(
            topics=[self.decoder.topic],
            from_block=max(0, block - self.window_blocks),
            to_block=block + self.window_blocks,
        )
        # the window can hold other coins' events; prefer our own transaction's
        own = [
            log
            for log in window
            if isinstance(log, dict) and str(log.get("transactionHash", "")).lower() == tx_hash.lower()
        ]
        pair = self.decoder.first_match(own, creator=creator) or self.decoder.first_match(window, creator=creator)
        if pair:
            return Resolution.found(pair, "window")
        return Resolution.not_found("event_missing")

    async def _from_token(self, token: str) -> Resolution:
        """Token known but minter() unset: ask the factory, then its recent logs."""
        curve = await self.lookup_factory_curve(token)
        if curve:
            return Resolution.found(ResolvedPair(token, curve), "factory_mapping")

        head = await self.client.block_number(retry=False)
        logs = await self.client.get_logs(
            topics=[self.decoder.topic, "0x" + "0" * 24 + token[2:]],
            from_block=max(0, head - self.token_scan_blocks),
            to_block=head,
            address=self.factory_address,
            retry=False,
        )
        for event in self.decoder.iter_events(reversed(logs)):
            if event.token_address == token:
                return Resolution.found(event.pair, "token_logs")
        return Resolution.not_found("token_unmatched")

    async def probe_minter(self, token_address: str) -> str | None:
        """The token records its bonding curve as minter(); None when unset."""
        return await self._call_address(token_address, MINTER_SELECTOR, "minter")

    async def lookup_factory_curve(self, token_address: str) -> str | None:
        """The factory's tokenToCurve(token); None when unset or no factory is configured."""
        if not self.factory_address:
            return None
        data = TOKEN_TO_CURVE_SELECTOR + abi_encode(["address"], [token_address]).hex()
        return await self._call_address(self.factory_address, data, "tokenToCurve")

    async def _call_address(self, to: str, data: str, label: str) -> str | None:
        try:
            raw = await self.client.call(to, data)
        except ContractCallReverted:
            logger.debug("%s call reverted to=%s", label, to)
            return None
        try:
            (address,) = abi_decode(["address"], bytes.fromhex(raw[2:] if raw.startswith("0x") else raw))
        except Exception:
            logger.debug("%s call undecodable to=%s raw=%s", label, to, raw)
            return None
        address = address.lower()
        if address == ZERO_ADDRESS:
            return None
        return address

    async def _from_metadata(self, symbol: str | None, name: str | None) -> Resolution:
        # single attempt each; this scan is the expensive path
        head = await self.client.block_number(retry=False)
        logs = await self.client.get_logs(
            topics=[self.decoder.topic],
            from_block=max(0, head - self.scan_blocks),
            to_block=head,
            address=self.factory_address,
            retry=False,
        )
        symbol_l = symbol.lower() if symbol else None
        name_l = name.lower() if name else None
        for event in self.decoder.iter_events(reversed(logs)):
            if (symbol_l and event.symbol.lower() == symbol_l) or (name_l and event.name.lower() == name_l):
                return Resolution.found(event.pair, "metadata")
        return Resolution.not_found("metadata_unmatched")
