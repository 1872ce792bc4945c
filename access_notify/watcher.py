"""Watcher job: keeps an access request event stream open and dispatches its events.

Each connection attempt goes through the same steps: open the stream, wait
(bounded) for its initial synchronisation, publish readiness, then read events
in delivery order and hand each one to the handler as an independent task.
Connection problems and unexpected end of stream trigger a reconnect; process
termination stops the job cleanly; any other error ends the job and is
surfaced to the process that supervises it.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from structlog.contextvars import bind_contextvars

from .access import AccessClient, Event, RequestFilter, Watcher
from .errors import ConnectionProblemError, StreamClosedError
from .job import Process, ServiceJob

DEFAULT_INIT_TIMEOUT = 5.0

EventHandler = Callable[[Event], Awaitable[None]]

_CONNECTION_ERRORS = (ConnectionProblemError, ConnectionError)
_STREAM_CLOSED_ERRORS = (StreamClosedError, EOFError)


class WatcherJob(ServiceJob):
    """Service job watching access requests matching a filter."""

    name = "watcher"

    def __init__(
        self,
        client: AccessClient,
        request_filter: RequestFilter,
        handler: EventHandler,
        *,
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
        event_timeout: float | None = None,
    ) -> None:
        super().__init__()
        # Connection establishment is retried with backoff by the client itself.
        self._client = client.with_wait_for_ready()
        self._filter = request_filter
        self._handler = handler
        self.init_timeout = init_timeout
        self.event_timeout = event_timeout
        self.connect_attempts = 0

    async def run(self, process: Process) -> None:
        log = structlog.get_logger().bind(job=self.name)
        loop_task = asyncio.create_task(self._watch_forever(process), name="watcher-loop")
        process.on_terminate(loop_task.cancel)

        try:
            await loop_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.debug("watcher_terminated")

    async def _watch_forever(self, process: Process) -> None:
        log = structlog.get_logger().bind(job=self.name)
        while True:
            try:
                await self._watch_events(process)
            except _CONNECTION_ERRORS as exc:
                log.error("watcher_connection_failed", error=str(exc), action="reconnecting")
            except _STREAM_CLOSED_ERRORS as exc:
                log.error("watcher_stream_closed", error=str(exc), action="reconnecting")
            except Exception as exc:
                log.error("watcher_failed", error=str(exc))
                raise
            # Checkpoint so a client failing synchronously cannot starve the loop.
            await asyncio.sleep(0)

    async def _watch_events(self, process: Process) -> None:
        log = structlog.get_logger().bind(job=self.name)
        self.reset_ready()
        self.connect_attempts += 1

        watcher = self._client.watch_requests(self._filter)
        try:
            await self._wait_init(watcher)
            log.debug("watcher_connected", attempt=self.connect_attempts)
            self.set_ready(True)

            async for event in watcher.events():
                process.spawn(self._dispatch, event, name=f"event:{event.request.id}")

            error = watcher.error()
        finally:
            await self._close(watcher)

        if error is not None:
            raise error
        raise StreamClosedError("watcher stream closed")

    async def _wait_init(self, watcher: Watcher) -> None:
        try:
            async with asyncio.timeout(self.init_timeout):
                await watcher.wait_init(self.init_timeout)
        except TimeoutError as exc:
            raise ConnectionProblemError("watcher initialization timed out") from exc

    async def _close(self, watcher: Watcher) -> None:
        try:
            await watcher.close()
        except Exception as exc:
            structlog.get_logger().error("watcher_close_failed", error=str(exc))

    async def _dispatch(self, event: Event) -> None:
        bind_contextvars(request_id=event.request.id, request_op=event.op.value)
        log = structlog.get_logger()
        try:
            if self.event_timeout is None:
                await self._handler(event)
            else:
                async with asyncio.timeout(self.event_timeout):
                    await self._handler(event)
        except Exception as exc:
            log.error("event_handler_failed", error=str(exc), exc_info=exc)
