"""Utilities for running background and periodic tasks."""

from __future__ import annotations

import threading
from contextvars import copy_context
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars


_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="approval-router")


def run_async(
    func: Callable[..., Any],
    /,
    *args: Any,
    trace_id: str | None = None,
    **kwargs: Any,
) -> Future:
    """Submit *func* to the shared thread pool and return a Future."""

    context = copy_context()

    if trace_id is not None:
        existing_trace = context.run(lambda: get_contextvars().get("trace_id"))

        if existing_trace != trace_id:

            context.run(lambda: bind_contextvars(trace_id=trace_id))

    def runner() -> Any:
        return context.run(func, *args, **kwargs)

    return _executor.submit(runner)


class PeriodicTask:
    """Invoke *func* every *interval* seconds on a daemon thread.

    Exceptions raised by *func* are logged and the schedule continues; the
    loop exits promptly once :meth:`stop` is called.
    """

    def __init__(self, func: Callable[[], Any], *, interval: float, name: str) -> None:
        if interval <= 0:
            raise ValueError("Periodic task interval must be greater than zero seconds.")

        self._func = func
        self._interval = interval
        self._name = name
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, *, run_immediately: bool = True) -> None:
        if self.running:
            return

        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._loop,
            kwargs={"run_immediately": run_immediately},
            name=self._name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _loop(self, *, run_immediately: bool) -> None:
        if run_immediately:
            self._tick()
        while not self._stopped.wait(self._interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self._func()
        except Exception:
            structlog.get_logger().exception("periodic_task_failed", task=self._name)
