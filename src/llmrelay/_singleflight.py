"""Async single-flight helper.

Coordinates concurrent callers for the same key so only one coroutine performs
the work while the others await the same Future.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

K = TypeVar("K")
T = TypeVar("T")


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    if fut.cancelled():
        return
    fut.exception()


class SingleFlight(Generic[K, T]):
    """Per-key single-flight group.

    ``do(key, current, work)`` returns ``current()`` when it yields a value;
    otherwise it joins the in-flight call for ``key`` or starts one. Waiters
    are shielded, so cancelling one waiter never cancels the shared work.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._inflight: dict[K, asyncio.Future[T]] = {}

    def in_flight(self, key: K) -> bool:
        return key in self._inflight

    async def do(
        self,
        key: K,
        *,
        current: Callable[[], T | None],
        work: Callable[[], Awaitable[T]],
    ) -> T:
        value = current()
        if value is not None:
            return value

        async with self._lock:
            value = current()
            if value is not None:
                return value
            fut = self._inflight.get(key)
            if fut is None:
                fut = asyncio.get_running_loop().create_future()
                fut.add_done_callback(consume_future_exception)
                self._inflight[key] = fut
                creator = True
            else:
                creator = False

        if not creator:
            return await asyncio.shield(fut)

        try:
            value = await work()
        except asyncio.CancelledError:
            # Waiters never observe the creator's cancellation.
            fut.set_exception(
                RuntimeError(f"single-flight work for {key!r} was cancelled")
            )
            raise
        except Exception as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(value)
            return value
        finally:
            async with self._lock:
                self._inflight.pop(key, None)
