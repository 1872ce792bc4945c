"""Tests for the watcher job event loop."""

from __future__ import annotations

import asyncio
import random
from typing import List

import pytest
import structlog
from structlog.testing import capture_logs

from access_notify.access import AccessRequest, Event, OpType, RequestFilter, RequestState
from access_notify.errors import ConnectionProblemError, StreamClosedError
from access_notify.job import Process
from access_notify.watcher import WatcherJob

_END = object()


class DummyWatcher:
    def __init__(self, *, init_error: BaseException | None = None, hang_init: bool = False, error=None):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.init_error = init_error
        self.hang_init = hang_init
        self.final_error = error
        self.closed = False

    async def wait_init(self, timeout):
        if self.init_error is not None:
            raise self.init_error
        if self.hang_init:
            await asyncio.sleep(60)

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is _END:
                return
            yield item

    def error(self):
        return self.final_error

    async def close(self):
        self.closed = True

    def push(self, *events):
        for event in events:
            self.queue.put_nowait(event)

    def finish(self):
        self.queue.put_nowait(_END)


class DummyClient:
    def __init__(self, watchers: List[DummyWatcher]):
        self.watchers = list(watchers)
        self.opened: List[DummyWatcher] = []
        self.filters: List[RequestFilter] = []
        self.wait_for_ready = False

    def with_wait_for_ready(self):
        self.wait_for_ready = True
        return self

    def watch_requests(self, request_filter):
        self.filters.append(request_filter)
        watcher = self.watchers.pop(0)
        self.opened.append(watcher)
        return watcher


def _event(request_id: str, op: OpType = OpType.PUT) -> Event:
    return Event(op=op, request=AccessRequest(id=request_id, state=RequestState.PENDING))


async def _noop(_event):
    return None


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


@pytest.mark.asyncio
async def test_events_are_dispatched_in_delivery_order_and_all_complete():
    watcher = DummyWatcher()
    client = DummyClient([watcher])
    started: List[str] = []
    completed: List[str] = []
    rng = random.Random(1234)

    async def handler(event):
        started.append(event.request.id)
        await asyncio.sleep(rng.uniform(0, 0.01))
        completed.append(event.request.id)

    process = Process()
    job = WatcherJob(client, RequestFilter(state=RequestState.PENDING), handler)
    process.spawn_critical_job(job)
    assert await asyncio.wait_for(job.wait_ready(), timeout=1) is True

    ids = [f"req-{index}" for index in range(30)]
    watcher.push(*(_event(request_id) for request_id in ids))
    await _wait_for(lambda: len(completed) == len(ids))

    assert started == ids
    assert sorted(completed) == sorted(ids)
    assert client.wait_for_ready is True
    assert client.filters == [RequestFilter(state=RequestState.PENDING)]

    await process.shutdown(timeout=1)
    assert job.err() is None
    assert watcher.closed is True


@pytest.mark.asyncio
async def test_handler_failure_is_logged_and_loop_continues():
    watcher = DummyWatcher()
    client = DummyClient([watcher])
    handled: List[str] = []

    async def handler(event):
        if event.request.id == "bad":
            raise RuntimeError("handler exploded")
        handled.append(event.request.id)

    process = Process()
    job = WatcherJob(client, RequestFilter(), handler)

    with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
        process.spawn_critical_job(job)
        await job.wait_ready()
        watcher.push(_event("bad"), _event("good"))
        await _wait_for(lambda: handled == ["good"])
        await process.shutdown(timeout=1)

    failures = [entry for entry in logs if entry["event"] == "event_handler_failed"]
    assert len(failures) == 1
    assert failures[0]["request_id"] == "bad"
    assert failures[0]["error"] == "handler exploded"
    assert job.err() is None


@pytest.mark.asyncio
async def test_connection_problem_reconnects():
    broken = DummyWatcher(init_error=ConnectionProblemError("connection refused"))
    healthy = DummyWatcher()
    client = DummyClient([broken, healthy])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop)

    with capture_logs() as logs:
        process.spawn_critical_job(job)
        assert await asyncio.wait_for(job.wait_ready(), timeout=1) is True
        await process.shutdown(timeout=1)

    assert client.opened == [broken, healthy]
    assert broken.closed is True
    assert job.connect_attempts == 2
    assert any(
        entry["event"] == "watcher_connection_failed" and entry["log_level"] == "error"
        for entry in logs
    )


@pytest.mark.asyncio
async def test_init_timeout_is_treated_as_connection_problem():
    slow = DummyWatcher(hang_init=True)
    healthy = DummyWatcher()
    client = DummyClient([slow, healthy])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop, init_timeout=0.01)

    with capture_logs() as logs:
        process.spawn_critical_job(job)
        await asyncio.wait_for(job.wait_ready(), timeout=1)
        await process.shutdown(timeout=1)

    assert job.connect_attempts == 2
    assert any("timed out" in entry.get("error", "") for entry in logs)


@pytest.mark.asyncio
async def test_stream_end_without_error_reconnects_and_resets_readiness():
    first = DummyWatcher()
    second = DummyWatcher(hang_init=True)
    client = DummyClient([first, second])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop, init_timeout=30)

    with capture_logs() as logs:
        process.spawn_critical_job(job)
        await job.wait_ready()
        assert job.is_ready()

        first.finish()
        await _wait_for(lambda: len(client.opened) == 2)

        assert job.is_ready() is False
        await process.shutdown(timeout=1)

    assert any(entry["event"] == "watcher_stream_closed" for entry in logs)
    assert job.err() is None


@pytest.mark.asyncio
async def test_stream_error_is_raised_and_classified():
    first = DummyWatcher(error=StreamClosedError("EOF"))
    second = DummyWatcher()
    client = DummyClient([first, second])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop)

    with capture_logs():
        process.spawn_critical_job(job)
        await job.wait_ready()
        first.finish()
        await _wait_for(lambda: len(client.opened) == 2)
        await process.shutdown(timeout=1)

    assert job.err() is None


@pytest.mark.asyncio
async def test_unexpected_error_fails_job_and_terminates_process():
    broken = DummyWatcher(init_error=PermissionError("access denied"))
    client = DummyClient([broken])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop)

    with capture_logs() as logs:
        process.spawn_critical_job(job)
        await asyncio.wait_for(process.wait(), timeout=1)

    assert isinstance(job.err(), PermissionError)
    assert process.terminated
    assert job.is_ready() is False
    assert await job.wait_ready() is False
    assert any(entry["event"] == "watcher_failed" for entry in logs)


@pytest.mark.asyncio
async def test_termination_stops_job_cleanly():
    watcher = DummyWatcher()
    client = DummyClient([watcher])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop)

    with capture_logs():
        process.spawn_critical_job(job)
        await job.wait_ready()
        process.terminate()
        await asyncio.wait_for(job.wait_done(), timeout=1)

    assert job.err() is None
    assert watcher.closed is True
    assert job.is_ready() is False


@pytest.mark.asyncio
async def test_event_timeout_bounds_handler():
    watcher = DummyWatcher()
    client = DummyClient([watcher])
    process = Process()

    async def slow(_event):
        await asyncio.sleep(60)

    job = WatcherJob(client, RequestFilter(), slow, event_timeout=0.01)

    with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
        process.spawn_critical_job(job)
        await job.wait_ready()
        watcher.push(_event("req-1", OpType.DELETE))
        await _wait_for(lambda: any(entry["event"] == "event_handler_failed" for entry in logs))
        await process.shutdown(timeout=1)

    failure = next(entry for entry in logs if entry["event"] == "event_handler_failed")
    assert failure["request_op"] == "DELETE"


@pytest.mark.asyncio
async def test_not_ready_before_initial_sync():
    slow = DummyWatcher(hang_init=True)
    client = DummyClient([slow])
    process = Process()
    job = WatcherJob(client, RequestFilter(), _noop, init_timeout=30)

    with capture_logs():
        process.spawn_critical_job(job)
        await _wait_for(lambda: client.opened)

        assert job.is_ready() is False
        await process.shutdown(timeout=1)

    assert slow.closed is True
    assert job.err() is None
