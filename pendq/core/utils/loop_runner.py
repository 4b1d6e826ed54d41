# pendq/core/utils/loop_runner.py
from __future__ import annotations
import asyncio
import contextlib
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable
from pendq.core.logging import get_logger


class LoopRunnerError(RuntimeError):
    """The background event loop could not run the requested coroutine."""


class LoopRunner:
    """
    Owns one event loop running on a daemon thread, so synchronous code can
    drive async APIs (the broker's sync facades) without an outer loop.

    All coroutines submitted through the same LoopRunner share that loop,
    which matters for objects bound to a loop such as an async engine pool.
    """

    def __init__(self, name: str = 'pendq-loop') -> None:
        self.logger = get_logger('loop_runner')
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._closed = False
        self._state_lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._state_lock:
            if self._closed:
                raise LoopRunnerError('Loop runner was stopped and cannot be restarted')
            if self._thread is not None:
                return
            loop = asyncio.new_event_loop()
            thread = threading.Thread(
                target=loop.run_forever, name=self._name, daemon=True,
            )
            try:
                thread.start()
            except RuntimeError as exc:
                loop.close()
                raise LoopRunnerError(
                    f'Failed to start loop thread: {type(exc).__name__}: {exc}',
                ) from exc
            self._loop = loop
            self._thread = thread

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop thread. Safe to call more than once."""
        with self._state_lock:
            self._closed = True
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=timeout)
            if thread.is_alive():
                self.logger.warning(
                    f'{self._name} did not stop within {timeout}s; leaving loop open'
                )
                return
            loop.close()
            self._loop = None
            self._thread = None

    def call(
        self, coro_fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Run coro_fn(*args, **kwargs) on the loop thread and block for its result.

        Exceptions raised by the coroutine propagate unchanged.
        """
        self.start()
        with self._state_lock:
            loop = self._loop
        if loop is None:
            raise LoopRunnerError('Loop runner is not running')

        if self._thread is threading.current_thread():
            raise LoopRunnerError(
                f'{coro_fn.__name__} called synchronously from the loop runner thread'
            )

        coro: Awaitable[Any] | None = None
        try:
            coro = coro_fn(*args, **kwargs)
            fut: Future[Any] = asyncio.run_coroutine_threadsafe(coro, loop)  # type: ignore[arg-type]
        except (RuntimeError, TypeError) as exc:
            if asyncio.iscoroutine(coro):
                with contextlib.suppress(RuntimeError):
                    coro.close()
            raise LoopRunnerError(
                f'Failed to schedule {getattr(coro_fn, "__name__", coro_fn)}: '
                f'{type(exc).__name__}: {exc}',
            ) from exc
        return fut.result()
