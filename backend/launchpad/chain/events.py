from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from eth_abi import decode as abi_decode
from eth_utils import is_hex

logger = logging.getLogger(__name__)

# non-indexed tail of PairCreated(token, curve, creator, name, symbol, seedBase, seedTokens)
PAIR_DATA_TYPES = ["string", "string", "uint256", "uint256"]


@dataclass(frozen=True)
class ResolvedPair:
    token_address: str
    curve_address: str


@dataclass(frozen=True)
class PairCreatedEvent:
    token_address: str
    curve_address: str
    creator: str
    name: str
    symbol: str
    seed_base: int
    seed_tokens: int
    tx_hash: str | None = None
    block_number: int | None = None

    @property
    def pair(self) -> ResolvedPair:
        return ResolvedPair(self.token_address, self.curve_address)


def _topic_address(topic: Any) -> str:
    if not isinstance(topic, str) or len(topic) != 66 or not is_hex(topic):
        raise ValueError(f"not an address topic: {topic!r}")
    return "0x" + topic[-40:].lower()


def hex_to_int(value: Any) -> int | None:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError:
            return None
    return None


class PairEventDecoder:
    """Decodes raw JSON-RPC logs as the factory's PairCreated event.

    Unrelated logs and malformed payloads are both just "not this event":
    nothing here raises on bad input.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic.lower()

    def decode(self, log: Any) -> PairCreatedEvent | None:
        if not isinstance(log, dict):
            return None
        topics = log.get("topics")
        if not isinstance(topics, (list, tuple)) or len(topics) < 4:
            return None
        if not isinstance(topics[0], str) or topics[0].lower() != self.topic:
            return None
        try:
            token = _topic_address(topics[1])
            curve = _topic_address(topics[2])
            creator = _topic_address(topics[3])
            raw = log.get("data") or "0x"
            name, symbol, seed_base, seed_tokens = abi_decode(
                PAIR_DATA_TYPES, bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)
            )
        except Exception as exc:
            # not this event
            logger.debug("pair log skipped tx=%s error=%s", log.get("transactionHash"), exc)
            return None
        tx_hash = log.get("transactionHash")
        return PairCreatedEvent(
            token_address=token,
            curve_address=curve,
            creator=creator,
            name=name,
            symbol=symbol,
            seed_base=seed_base,
            seed_tokens=seed_tokens,
            tx_hash=tx_hash.lower() if isinstance(tx_hash, str) else None,
            block_number=hex_to_int(log.get("blockNumber")),
        )

    def iter_events(self, logs: Iterable[Any] | None) -> Iterator[PairCreatedEvent]:
        for log in logs or ():
            event = self.decode(log)
            if event is not None:
                yield event

    def first_match(self, logs: Iterable[Any] | None, *, creator: str | None = None) -> ResolvedPair | None:
        """First successfully decoded pair in list order, optionally from one creator."""
        wanted = creator.lower() if creator else None
        for event in self.iter_events(logs):
            if wanted and event.creator != wanted:
                continue
            return event.pair
        return None
