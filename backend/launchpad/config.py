from functools import lru_cache

from eth_utils import keccak
from pydantic_settings import BaseSettings, SettingsConfigDict


PAIR_CREATED_SIGNATURE = "PairCreated(address,address,address,string,string,uint256,uint256)"
PAIR_CREATED_TOPIC = "0x" + keccak(text=PAIR_CREATED_SIGNATURE).hex()


class Settings(BaseSettings):
    # primary store
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_connect_timeout_seconds: float = 10.0

    # embedded fallback store
    fallback_enabled: bool = True
    fallback_db_path: str = "data/coins.db"

    # chain
    rpc_url: str = "https://polygon-amoy.publicnode.com"
    rpc_timeout_seconds: float = 10.0
    rpc_max_retries: int = 2
    factory_address: str | None = None
    pair_created_topic: str = PAIR_CREATED_TOPIC
    receipt_window_blocks: int = 25
    metadata_scan_blocks: int = 500_000
    token_scan_blocks: int = 50_000
    resolve_deadline_seconds: float = 30.0

    # backfill sweep
    backfill_interval_seconds: int = 0
    backfill_batch_size: int = 50
    backfill_concurrency: int = 4

    # http surface
    admin_key: str | None = None
    # peers whose x-forwarded-for header is believed; JSON list in the env
    trusted_proxies: list[str] = []
    create_rate_limit_max: int = 20
    create_rate_limit_window_seconds: float = 60.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
