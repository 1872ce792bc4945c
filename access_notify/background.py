"""Utilities for running blocking work off the event loop."""

from __future__ import annotations

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import copy_context
from typing import Any, Callable

DEFAULT_MAX_WORKERS = 4


class BackgroundRunner:
    """Own a thread pool and run callables in it with the caller's contextvars."""

    def __init__(self, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="access-notify")

    def submit(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        """Submit *func* to the pool and return a Future running in a copy of the caller's context."""

        context = copy_context()

        def runner() -> Any:
            return context.run(func, *args, **kwargs)

        return self._executor.submit(runner)

    async def run_in_thread(self, func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        """Await *func* executed in the pool, keeping structlog context intact."""

        return await asyncio.wrap_future(self.submit(func, *args, **kwargs))

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
