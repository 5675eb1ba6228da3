"""
Retry Service with Exponential Backoff
Explicit retry policies and the concurrency gate for external calls
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from config import Config
from services.chain_results import CallResult, NodeBusyError, TransientChainError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to try one external call and how long to wait between tries.

    backoff_schedule[i] is the delay before attempt i + 2; the last value is
    reused when there are more attempts than entries.
    """

    max_attempts: int = 3
    backoff_schedule: Tuple[float, ...] = (0.5, 1.0)
    retryable: Tuple[Type[BaseException], ...] = (NodeBusyError, TransientChainError)
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        if not self.backoff_schedule:
            return 0.0
        index = min(attempt - 1, len(self.backoff_schedule) - 1)
        delay = self.backoff_schedule[index]
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and isinstance(error, self.retryable)


# A single attempt; the next scheduled cycle is the retry
NO_RETRY = RetryPolicy(max_attempts=1, backoff_schedule=())

# Predefined retry strategies for different call sites
RETRY_STRATEGIES = {
    "node": RetryPolicy(max_attempts=Config.RPC_MAX_ATTEMPTS, backoff_schedule=(0.5, 1.0)),
    "explorer": RetryPolicy(max_attempts=2, backoff_schedule=(1.0,)),
    # Sends are never repeated automatically: a timeout may still have broadcast
    "send": NO_RETRY,
}


class RetryService:
    """Runs calls under a RetryPolicy"""

    @staticmethod
    async def call_with_policy(
        func: Callable[[], Awaitable[CallResult[T]]],
        policy: RetryPolicy,
        description: str = "external call",
    ) -> CallResult[T]:
        """
        Retry a CallResult-returning coroutine factory.

        Retryable ChainErrors are retried per policy; the final CallResult is
        returned as-is, never raised.
        """
        attempt = 0
        while True:
            attempt += 1
            result = await func()
            if result.ok:
                return result

            if not policy.should_retry(result.error, attempt):
                if attempt > 1:
                    logger.error(f"Max retry attempts ({attempt}) reached for {description}: {result.error}")
                return result

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed for {description}: {result.error}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)


@dataclass
class ExternalCallGate:
    """
    Caps the number of node/explorer calls in flight at once.

    worker.py shares one gate between its clients. The semaphore is rebuilt
    when the gate is entered from a different event loop than the one it was
    created on.
    """

    limit: int = Config.MAX_EXTERNAL_CONCURRENCY
    _semaphore: Optional[asyncio.Semaphore] = field(default=None, init=False, repr=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, init=False, repr=False)

    @property
    def semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.limit)
            self._loop = loop
        return self._semaphore

    async def __aenter__(self):
        await self.semaphore.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.semaphore.release()
        return False
