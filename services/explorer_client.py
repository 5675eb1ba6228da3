"""Esplora-style block explorer client"""

import asyncio
import json
import logging
from typing import Optional
from urllib.parse import quote

import aiohttp

from config import Config
from services.chain_results import CallResult, ChainRequestError, TransientChainError, classify_http_status
from services.retry_service import (
    ExternalCallGate,
    RETRY_STRATEGIES,
    RetryPolicy,
    RetryService,
)

logger = logging.getLogger(__name__)


def decode_tip_height(status: int, body: str) -> CallResult:
    if status >= 400:
        return CallResult.failure(classify_http_status("tip_height", status, body))
    try:
        return CallResult.success(int(body.strip()))
    except (AttributeError, ValueError):
        return CallResult.failure(ChainRequestError(f"tip_height: not an integer: {body[:50]!r}", method="tip_height"))


def decode_address_txs(status: int, body: str) -> CallResult:
    if status >= 400:
        return CallResult.failure(classify_http_status("address_txs", status, body))
    try:
        payload = json.loads(body)
    except ValueError:
        return CallResult.failure(ChainRequestError("address_txs: invalid JSON", method="address_txs"))
    if not isinstance(payload, list):
        return CallResult.failure(ChainRequestError("address_txs: expected a list", method="address_txs"))
    return CallResult.success(payload)


class ExplorerClient:
    """Reads chain height and per-address history from the explorer HTTP API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        gate: Optional[ExternalCallGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.base_url = (base_url or Config.EXPLORER_BASE).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.EXPLORER_TIMEOUT_SECONDS
        self.gate = gate or ExternalCallGate()
        self.retry_policy = retry_policy or RETRY_STRATEGIES["explorer"]
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": "lky-tipbot/1.0"})
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get(self, name: str, path: str, decoder) -> CallResult:
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with self.gate:
            try:
                session = await self._get_session()
                async with session.get(url, timeout=timeout) as response:
                    body = await response.text()
                    return decoder(response.status, body)
            except asyncio.TimeoutError:
                logger.warning(f"⏱️ EXPLORER_TIMEOUT: {name} after {self.timeout_seconds}s")
                return CallResult.failure(
                    TransientChainError(f"{name}: timed out after {self.timeout_seconds}s", method=name)
                )
            except aiohttp.ClientError as e:
                logger.warning(f"🌐 EXPLORER_CONNECTION_ERROR: {name} - {e}")
                return CallResult.failure(TransientChainError(f"{name}: {e}", method=name))

    async def tip_height(self) -> CallResult:
        return await RetryService.call_with_policy(
            lambda: self._get("tip_height", "/blocks/tip/height", decode_tip_height),
            self.retry_policy,
            description="explorer tip height",
        )

    async def address_transactions(self, address: str) -> CallResult:
        path = f"/address/{quote(address, safe='')}/txs"
        return await RetryService.call_with_policy(
            lambda: self._get("address_txs", path, decode_address_txs),
            self.retry_policy,
            description=f"explorer txs {address}",
        )
