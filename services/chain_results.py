"""
Chain call results and errors

Node and explorer responses are decoded once, at the client boundary, into a
CallResult that carries either the decoded value or a typed ChainError.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ChainError(Exception):
    """Base exception for node/explorer failures"""

    retryable = False

    def __init__(self, message: str, method: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message)
        self.method = method
        self.code = code


class NodeBusyError(ChainError):
    """Node is warming up, rescanning or otherwise temporarily unable to answer"""

    retryable = True


class TransientChainError(ChainError):
    """Timeouts, connection failures and 5xx responses"""

    retryable = True


class ChainRequestError(ChainError):
    """The call was understood and refused (bad params, unknown method, 4xx)"""

    retryable = False


# Bitcoin-family RPC error codes
RPC_IN_WARMUP = -28
RPC_CLIENT_IN_INITIAL_DOWNLOAD = -10
RPC_WALLET_ERROR = -4
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_WALLET_INSUFFICIENT_FUNDS = -6

BUSY_RPC_CODES = frozenset({RPC_IN_WARMUP, RPC_CLIENT_IN_INITIAL_DOWNLOAD})


def classify_rpc_error(method: str, error: Any) -> ChainError:
    """Map a JSON-RPC error object to a ChainError subclass"""
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message") or str(error)
    else:
        code = None
        message = str(error)

    text = f"{method}: {message}"
    lowered = message.lower()
    if code in BUSY_RPC_CODES or "rescan" in lowered or "loading" in lowered or "warming up" in lowered:
        return NodeBusyError(text, method=method, code=code)
    return ChainRequestError(text, method=method, code=code)


def classify_http_status(method: str, status: int, body: str = "") -> ChainError:
    snippet = (body or "")[:200]
    if status >= 500 or status == 429:
        return TransientChainError(f"{method}: HTTP {status} {snippet}", method=method, code=status)
    return ChainRequestError(f"{method}: HTTP {status} {snippet}", method=method, code=status)


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Tagged result of one external call"""

    value: Optional[T] = None
    error: Optional[ChainError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "CallResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChainError) -> "CallResult[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if self.error is not None:
            raise self.error
        return self.value
