"""Async access to the blocking store backends.

Both :class:`~notekeep.storage.memory.MemoryStore` and
:class:`~notekeep.storage.postgres.PostgresStore` are synchronous. Services
reach them through :class:`AsyncStore`, which runs each call in a worker
thread and bounds it with a timeout so a stalled database surfaces as a 503
instead of a hung request.

A timed-out call keeps running in its thread. Writes whose outcome the
caller must observe, such as refresh rotation, go through
:meth:`AsyncStore.call_to_completion` instead.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable

from notekeep.logging import get_logger
from notekeep.service.errors import ServiceUnavailableError

logger = get_logger(__name__)


class AsyncStore:
    def __init__(self, store: Any, *, timeout: float = 10.0) -> None:
        self.store = store
        self.timeout = timeout

    def _operation(self, name: str) -> Callable[..., Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        func = getattr(self.store, name, None)
        if not callable(func):
            raise AttributeError(f"store has no operation {name!r}")
        return func

    async def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        func = self._operation(name)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error("store_call_timeout", operation=name, timeout=self.timeout)
            raise ServiceUnavailableError("Storage is temporarily unavailable") from exc

    async def call_to_completion(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Await ``name`` without the timeout; the result always reaches the caller."""
        func = self._operation(name)
        return await asyncio.to_thread(func, *args, **kwargs)

    def __getattr__(self, name: str) -> Callable[..., Awaitable[Any]]:
        self._operation(name)
        return functools.partial(self.call, name)
