"""LKY node JSON-RPC client"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.chain_results import (
    CallResult,
    ChainRequestError,
    TransientChainError,
    classify_http_status,
    classify_rpc_error,
)
from services.retry_service import (
    ExternalCallGate,
    RETRY_STRATEGIES,
    RetryPolicy,
    RetryService,
)
from utils.lites import lites_to_decimal

logger = logging.getLogger(__name__)


def decode_rpc_response(method: str, status: int, body: str) -> CallResult:
    """
    Decode one HTTP response from the node.

    Bitcoin-family nodes answer RPC errors with HTTP 500 and a JSON body that
    carries {"error": {"code", "message"}}, so the body is checked before the
    status.
    """
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if error:
            return CallResult.failure(classify_rpc_error(method, error))
        if status < 400:
            return CallResult.success(payload.get("result"))

    if status >= 400:
        return CallResult.failure(classify_http_status(method, status, body))

    return CallResult.failure(
        ChainRequestError(f"{method}: unparseable node response", method=method)
    )


class ChainNodeClient:
    """Async JSON-RPC 1.0 client for the coin daemon"""

    def __init__(
        self,
        url: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        gate: Optional[ExternalCallGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.url = url or Config.LKY_RPC_URL
        self.auth = aiohttp.BasicAuth(
            user if user is not None else Config.RPC_USER,
            password if password is not None else Config.RPC_PASSWORD,
        )
        self.timeout_seconds = timeout_seconds or Config.RPC_TIMEOUT_SECONDS
        self.gate = gate or ExternalCallGate()
        self.retry_policy = retry_policy or RETRY_STRATEGIES["node"]
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=self.auth,
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(self, method: str, params: List[Any], timeout_seconds: float) -> CallResult:
        """One HTTP round trip, decoded"""
        self._request_id += 1
        body = json.dumps(
            {"jsonrpc": "1.0", "id": f"tipbot-{self._request_id}", "method": method, "params": params}
        )
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)

        async with self.gate:
            try:
                session = await self._get_session()
                async with session.post(self.url, data=body, timeout=timeout) as response:
                    text = await response.text()
                    return decode_rpc_response(method, response.status, text)
            except asyncio.TimeoutError:
                logger.warning(f"⏱️ RPC_TIMEOUT: {method} after {timeout_seconds}s")
                return CallResult.failure(
                    TransientChainError(f"{method}: timed out after {timeout_seconds}s", method=method)
                )
            except aiohttp.ClientError as e:
                logger.warning(f"🌐 RPC_CONNECTION_ERROR: {method} - {e}")
                return CallResult.failure(TransientChainError(f"{method}: {e}", method=method))

    async def call(
        self,
        method: str,
        *params: Any,
        timeout_seconds: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> CallResult:
        """Call an RPC method under the client's retry policy"""
        return await RetryService.call_with_policy(
            lambda: self._request(method, list(params), timeout_seconds or self.timeout_seconds),
            policy or self.retry_policy,
            description=f"rpc {method}",
        )

    # Typed wrappers -------------------------------------------------------

    async def list_transactions(self, count: int = None, skip: int = 0) -> CallResult:
        """Recent wallet transactions across all labels, including watch-only"""
        result = await self.call(
            "listtransactions", "*", count or Config.RPC_LIST_TRANSACTIONS_COUNT, skip, True
        )
        if result.ok and not isinstance(result.value, list):
            return CallResult.failure(
                ChainRequestError("listtransactions: expected a list", method="listtransactions")
            )
        return result

    async def get_transaction(self, txid: str) -> CallResult:
        result = await self.call("gettransaction", txid, True)
        if result.ok and not isinstance(result.value, dict):
            return CallResult.failure(
                ChainRequestError("gettransaction: expected an object", method="gettransaction")
            )
        return result

    async def validate_address(self, address: str) -> CallResult:
        """Success value is True/False for the address validity"""
        result = await self.call("validateaddress", address)
        if not result.ok:
            return result
        value = result.value if isinstance(result.value, dict) else {}
        return CallResult.success(bool(value.get("isvalid")))

    async def send_to_address(self, address: str, amount_lites: int, comment: str = "") -> CallResult:
        """Broadcast a payment; success value is the txid. Never retried."""
        amount = float(lites_to_decimal(amount_lites))
        params = [address, amount]
        if comment:
            params.append(comment)
        result = await self.call("sendtoaddress", *params, policy=RETRY_STRATEGIES["send"])
        if result.ok and not (isinstance(result.value, str) and result.value):
            return CallResult.failure(
                ChainRequestError("sendtoaddress: node returned no txid", method="sendtoaddress")
            )
        return result

    async def get_new_address(self, label: str) -> CallResult:
        return await self.call(
            "getnewaddress", label, timeout_seconds=Config.RPC_NEW_ADDRESS_TIMEOUT_SECONDS
        )

    async def get_addresses_by_label(self, label: str) -> CallResult:
        """Success value is a list of addresses (empty when the label is unknown)"""
        result = await self.call(
            "getaddressesbylabel", label, timeout_seconds=Config.RPC_LABEL_LOOKUP_TIMEOUT_SECONDS
        )
        if result.ok:
            value: Dict[str, Any] = result.value if isinstance(result.value, dict) else {}
            return CallResult.success(list(value.keys()))
        # Unknown label is reported as an invalid-address error
        if result.error.code == -11:
            return CallResult.success([])
        return result

    async def get_block_count(self) -> CallResult:
        return await self.call("getblockcount")
