"""Asyncio task supervision: a process owning background tasks and service jobs."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Set

import structlog

TerminateHook = Callable[[], Any]


class Process:
    """Own background tasks and coordinate their termination.

    ``terminate()`` runs the registered hooks once, which is how long-running
    jobs learn they should stop. ``shutdown()`` terminates and then waits for
    the remaining tasks, cancelling whatever outlives the grace period.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._terminate_hooks: List[TerminateHook] = []
        self._terminated = asyncio.Event()
        self._closed = False

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    @property
    def tasks(self) -> Set[asyncio.Task[Any]]:
        return set(self._tasks)

    def spawn(
        self,
        func: Callable[..., Awaitable[Any]],
        /,
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> asyncio.Task[Any]:
        """Run ``func(*args, **kwargs)`` as a task owned by the process."""

        if self._closed:
            raise RuntimeError("cannot spawn a task on a process that has shut down")

        task = asyncio.create_task(func(*args, **kwargs), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            structlog.get_logger().error(
                "process_task_failed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    def spawn_critical_job(self, job: "ServiceJob") -> asyncio.Task[Any]:
        """Run *job*; if it fails the whole process is terminated."""

        async def supervise() -> None:
            await job.execute(self)
            error = job.err()
            if error is not None:
                structlog.get_logger().error(
                    "critical_job_failed",
                    job=job.name,
                    error=str(error),
                )
                self.terminate()

        return self.spawn(supervise, name=f"critical:{job.name}")

    def on_terminate(self, hook: TerminateHook) -> None:
        """Register *hook* to run on termination. Runs immediately if already terminated."""

        if self.terminated:
            self._run_hook(hook)
            return
        self._terminate_hooks.append(hook)

    def terminate(self) -> None:
        if self.terminated:
            return
        self._terminated.set()
        hooks, self._terminate_hooks = self._terminate_hooks, []
        for hook in hooks:
            self._run_hook(hook)

    def _run_hook(self, hook: TerminateHook) -> None:
        try:
            result = hook()
        except Exception as exc:
            structlog.get_logger().error("terminate_hook_failed", error=str(exc), exc_info=exc)
            return
        if inspect.isawaitable(result):
            self.spawn(_await, result, name="terminate-hook")

    async def wait(self) -> None:
        """Wait until the process is terminated and every task has finished."""

        await self._terminated.wait()
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def shutdown(self, timeout: float | None = None) -> None:
        """Terminate, wait up to *timeout* seconds for tasks, then cancel the rest."""

        self.terminate()
        try:
            async with asyncio.timeout(timeout):
                await self.wait()
        except TimeoutError:
            structlog.get_logger().warning("process_shutdown_timeout", pending=len(self._tasks))

        pending = set(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._closed = True


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class ServiceJob:
    """A long-running job with a readiness flag observable by health checks."""

    name = "service"

    def __init__(self, func: Callable[["Process"], Awaitable[None]] | None = None, *, name: str | None = None) -> None:
        self._func = func
        if name is not None:
            self.name = name
        self._ready = False
        self._ready_signal = asyncio.Event()
        self._done = asyncio.Event()
        self._err: BaseException | None = None

    async def run(self, process: Process) -> None:
        if self._func is None:
            raise NotImplementedError("ServiceJob requires a function or a run() override")
        await self._func(process)

    async def execute(self, process: Process) -> None:
        """Run the job, recording its error instead of raising it."""

        try:
            await self.run(process)
        except Exception as exc:
            self._err = exc
        finally:
            self.set_ready(False)
            self._done.set()

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self._ready_signal.set()

    def reset_ready(self) -> None:
        """Clear the readiness flag without waking ``wait_ready`` callers."""

        self._ready = False

    def is_ready(self) -> bool:
        return self._ready

    async def wait_ready(self) -> bool:
        """Wait for the readiness flag to be set for the first time and return it."""

        await self._ready_signal.wait()
        return self._ready

    async def wait_done(self) -> None:
        await self._done.wait()

    def done(self) -> bool:
        return self._done.is_set()

    def err(self) -> BaseException | None:
        return self._err
