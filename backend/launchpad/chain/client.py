from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

import httpx

from ..errors import TransientChainError

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SEC = 0.3
RETRY_STATUS = {429, 500, 502, 503, 504}


class ContractCallReverted(Exception):
    """eth_call reverted; the contract answered, it just has nothing for us."""


def _to_hex_block(block: int) -> str:
    return hex(block)


class ChainLogClient:
    """Thin async JSON-RPC client for the handful of EVM methods the resolver needs.

    Every request gets its own timeout. Retryable HTTP statuses are retried with
    exponential backoff unless the caller asks for a single attempt.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff: float = RETRY_BACKOFF_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.max_retries = max_retries
        self.backoff = backoff
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json", "User-Agent": "launchpad/1.0"},
            transport=transport,
        )

    async def __aenter__(self) -> "ChainLogClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list[Any], *, retry: bool = True) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        attempts = 1 + (self.max_retries if retry else 0)
        last_error: str | None = None
        for attempt in range(attempts):
            try:
                resp = await self._client.post(self.url, json=payload)
            except httpx.TimeoutException:
                last_error = "timeout"
                resp = None
            except httpx.HTTPError as exc:
                last_error = f"request_failed: {exc}"
                resp = None

            if resp is not None and resp.status_code == 200:
                try:
                    data = resp.json()
                except ValueError:
                    raise TransientChainError(f"{method}: invalid_json")
                if not isinstance(data, dict):
                    raise TransientChainError(f"{method}: invalid_response")
                error = data.get("error")
                if error:
                    message = str(error.get("message", "")) if isinstance(error, dict) else str(error)
                    if "revert" in message.lower():
                        raise ContractCallReverted(message)
                    code = error.get("code") if isinstance(error, dict) else None
                    raise TransientChainError(f"{method}: rpc_error {code} {message}")
                return data.get("result")

            if resp is not None:
                if resp.status_code not in RETRY_STATUS:
                    raise TransientChainError(f"{method}: http_{resp.status_code}")
                last_error = f"http_{resp.status_code}"

            if attempt < attempts - 1:
                logger.debug("rpc retry method=%s attempt=%s error=%s", method, attempt + 1, last_error)
                await asyncio.sleep(self.backoff * (2 ** attempt))
        raise TransientChainError(f"{method}: {last_error or 'unknown'}")

    async def block_number(self, *, retry: bool = True) -> int:
        result = await self._call("eth_blockNumber", [], retry=retry)
        return int(result, 16)

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Receipt dict, or None while the transaction is not mined yet."""
        result = await self._call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        if not isinstance(result, dict):
            raise TransientChainError("eth_getTransactionReceipt: invalid_response")
        return result

    async def get_logs(
        self,
        *,
        topics: list[str],
        from_block: int,
        to_block: int,
        address: str | None = None,
        retry: bool = True,
    ) -> list[dict[str, Any]]:
        flt: dict[str, Any] = {
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
            "topics": topics,
        }
        if address:
            flt["address"] = address
        result = await self._call("eth_getLogs", [flt], retry=retry)
        if not isinstance(result, list):
            raise TransientChainError("eth_getLogs: invalid_response")
        return result

    async def call(self, to: str, data: str, block: str = "latest") -> str:
        result = await self._call("eth_call", [{"to": to, "data": data}, block])
        if not isinstance(result, str):
            raise TransientChainError("eth_call: invalid_response")
        return result
