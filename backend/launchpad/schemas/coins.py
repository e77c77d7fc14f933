import re
from typing import Literal, Optional

from eth_utils import is_address
from pydantic import BaseModel, Field, field_validator

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
PENDING_TX_RE = re.compile(r"^pending-\d{1,20}$")
CID_RE = re.compile(r"^bafy[0-9a-zA-Z]{1,251}$")
BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

BackendName = Literal["primary", "fallback"]


def _clean_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    if not v:
        return None
    if not is_address(v):
        raise ValueError("invalid address")
    return v.lower()


class CoinRecord(BaseModel):
    """One persisted coin row, identical across both stores."""

    id: str
    name: str
    symbol: str
    supply: str
    creator: str
    created_at: int
    updated_at: Optional[int] = None
    description: Optional[str] = None
    image_hash: Optional[str] = None
    token_address: Optional[str] = None
    curve_address: Optional[str] = None
    tx_hash: Optional[str] = None
    telegram_url: Optional[str] = None
    x_url: Optional[str] = None
    discord_url: Optional[str] = None
    website_url: Optional[str] = None
    market_cap: Optional[float] = 0.0
    price: Optional[float] = 0.0
    volume_24h: Optional[float] = 0.0
    holders: Optional[int] = 0
    total_transactions: Optional[int] = 0

    @property
    def is_pending(self) -> bool:
        return not self.token_address


class CoinFields(BaseModel):
    """Fields and rules shared by a reservation and a full create."""

    name: str = Field(min_length=1, max_length=255)
    symbol: str = Field(min_length=1, max_length=100)
    supply: str = Field(min_length=1, max_length=100)
    creator: str
    description: Optional[str] = None
    image_hash: Optional[str] = None

    @field_validator("name", "symbol", "supply")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("creator")
    @classmethod
    def _creator(cls, v: str) -> str:
        cleaned = _clean_address(v)
        if cleaned is None:
            raise ValueError("creator is required")
        return cleaned

    @field_validator("image_hash")
    @classmethod
    def _image_hash(cls, v: Optional[str]) -> Optional[str]:
        # placeholders are dropped, not rejected
        if v and (CID_RE.match(v) or BYTES32_RE.match(v)):
            return v
        return None


class CoinCreate(CoinFields):
    token_address: Optional[str] = None
    curve_address: Optional[str] = None
    tx_hash: Optional[str] = None
    telegram_url: Optional[str] = None
    x_url: Optional[str] = None
    discord_url: Optional[str] = None
    website_url: Optional[str] = None

    @field_validator("token_address", "curve_address")
    @classmethod
    def _address(cls, v: Optional[str]) -> Optional[str]:
        return _clean_address(v)

    @field_validator("tx_hash")
    @classmethod
    def _tx_hash(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if TX_HASH_RE.match(v):
            return v.lower()
        if PENDING_TX_RE.match(v):
            return v
        raise ValueError("invalid transaction hash")

    @property
    def has_addresses(self) -> bool:
        return bool(self.token_address and self.curve_address)


class CoinReserve(CoinFields):
    """Phase one of a launch: no addresses or tx hash yet."""


class CoinOut(CoinRecord):
    pending: bool

    @classmethod
    def from_record(cls, record: CoinRecord) -> "CoinOut":
        return cls(**record.model_dump(), pending=record.is_pending)


class CoinWriteOut(BaseModel):
    ok: bool = True
    status: Literal["created", "updated"]
    backend: BackendName
    coin: CoinOut


class ResolvePairIn(BaseModel):
    tx_hash: Optional[str] = None
    token_address: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    creator: Optional[str] = None

    @field_validator("tx_hash")
    @classmethod
    def _tx_hash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        if not TX_HASH_RE.match(v.strip()):
            raise ValueError("invalid transaction hash")
        return v.strip().lower()

    @field_validator("token_address", "creator")
    @classmethod
    def _address(cls, v: Optional[str]) -> Optional[str]:
        return _clean_address(v)


class ResolvePairOut(BaseModel):
    success: bool
    status: Literal["found", "not_found"]
    strategy: Optional[str] = None
    token_address: Optional[str] = None
    curve_address: Optional[str] = None
    tx_hash: Optional[str] = None


class BackfillUpdate(BaseModel):
    id: str
    token_address: str
    curve_address: str
    backend: BackendName


class BackfillReport(BaseModel):
    ok: bool = True
    checked: int
    updated: int
    pending: int
    failed: int
    updates: list[BackfillUpdate] = []
