"""Single-flight coalescing of concurrent identical calls.

While one call for a key is in flight, later callers for the same key await
its result instead of starting their own. The entry is dropped as soon as the
leader finishes, so nothing is retained between calls.

Cancellation stays per-call: if the leader is cancelled, its waiters are not.
The first waiter to wake up runs the call itself as the new leader.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _LeaderCancelled(Exception):
    """Set on the shared future when the leading call was cancelled."""


class SingleFlight(Generic[T]):
    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[T]] = {}
        self._waiters: dict[str, int] = {}

    def in_flight(self) -> int:
        return len(self._inflight)

    def waiters(self, key: str) -> int:
        return self._waiters.get(key, 0)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Run ``fn`` once per key at a time. Returns (result, shared)."""
        while True:
            fut = self._inflight.get(key)
            if fut is None:
                break
            self._waiters[key] = self._waiters.get(key, 0) + 1
            logger.debug("Coalescing onto in-flight call %s", key)
            try:
                return await asyncio.shield(fut), True
            except _LeaderCancelled:
                logger.debug("Leader for %s was cancelled; taking over", key)
            finally:
                self._waiters[key] -= 1
                if self._waiters[key] <= 0:
                    self._waiters.pop(key, None)

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            result = await fn()
        except asyncio.CancelledError:
            fut.set_exception(_LeaderCancelled(key))
            fut.exception()
            raise
        except BaseException as e:
            fut.set_exception(e)
            # Mark retrieved when nobody else is waiting
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result, False
        finally:
            if self._inflight.get(key) is fut:
                del self._inflight[key]
