# pendq/core/runner/runner.py
from __future__ import annotations
import asyncio
import contextlib
import random
from asyncio import Queue
from dataclasses import dataclass
from typing import Optional, Sequence
from psycopg import Notify
from pendq.core.brokers.errors import StoreError
from pendq.core.brokers.postgres import PostgresBroker
from pendq.core.logging import get_logger
from pendq.core.models.tasks import Task, TaskRecord
from pendq.core.registry.tasks import TaskRegistry
from pendq.core.runner.config import RunnerConfig
from pendq.core.types.status import RunnerState, TaskStatus

logger = get_logger('runner')


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)


class Runner:
    """
    Async loop that:
      - Claims a batch of mature tasks (priority, then age) with SKIP LOCKED
      - Runs the batch concurrently on the event loop
      - Re-inserts failed tasks whose next_try() asks for a retry
      - Sleeps until a NOTIFY, the poll interval or a stop request when idle

    Claimed rows are already gone from the table. A task interrupted by a
    crash mid-batch is lost.
    """

    def __init__(
        self,
        broker: PostgresBroker,
        registry: TaskRegistry,
        cfg: Optional[RunnerConfig] = None,
    ) -> None:
        self.broker = broker
        self.registry = registry
        self.cfg = cfg or RunnerConfig()
        self._state = RunnerState.STOPPED
        self._stop = asyncio.Event()
        self._done = asyncio.Event()
        self._done.set()

    @property
    def state(self) -> RunnerState:
        return self._state

    def request_stop(self) -> None:
        """Ask the loop to exit after its in-flight batch. Safe from signal handlers."""
        if self._state is RunnerState.RUNNING:
            self._state = RunnerState.STOPPING
        self._stop.set()

    async def stop(self) -> None:
        """Request stop and wait until the loop has released its resources."""
        if self._state is RunnerState.STOPPED:
            return
        self.request_stop()
        await self._done.wait()

    def _make_retry_backoff(self) -> _RetryBackoff:
        return _RetryBackoff(
            initial_ms=self.cfg.error_backoff_ms,
            max_ms=self.cfg.error_backoff_max_ms,
            max_attempts=self.cfg.error_backoff_max_attempts,
        )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    async def _subscribe(self) -> Optional[Queue[Notify]]:
        try:
            return await self.broker.subscribe_new_tasks()
        except StoreError as exc:
            logger.warning(
                f'Wake-up notifications unavailable, polling every '
                f'{self.cfg.poll_interval_ms}ms: {exc.message}'
            )
            return None

    async def _wait_for_work(self, wake_q: Optional[Queue[Notify]]) -> None:
        """Return on a NOTIFY, after poll_interval_ms, or on stop."""
        timeout_seconds = self.cfg.poll_interval_ms / 1000.0
        if wake_q is None:
            await self._sleep_with_stop(timeout_seconds)
            return

        note_task = asyncio.create_task(wake_q.get())
        stop_task = asyncio.create_task(self._stop.wait())
        done, pending = await asyncio.wait(
            (note_task, stop_task),
            return_when=asyncio.FIRST_COMPLETED,
            timeout=timeout_seconds,
        )
        for p in pending:
            p.cancel()
        for p in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await p

        if note_task in done:
            # drain a burst
            drained = 0
            while drained < self.cfg.coalesce_notifies and not wake_q.empty():
                wake_q.get_nowait()
                drained += 1

    async def start(self) -> None:
        """
        Run the claim loop until stop is requested.

        Schema initialization failures propagate. Claim failures are logged
        and retried with back-off; once error_backoff_max_attempts consecutive
        failures have been seen (when non-zero) the last StoreError propagates.
        Either way the subscription is released and the broker closed.
        """
        if self._state is not RunnerState.STOPPED:
            logger.warning(f'Runner.start() called while {self._state.value}; ignoring')
            return

        self._state = RunnerState.RUNNING
        self._stop.clear()
        self._done.clear()
        wake_q: Optional[Queue[Notify]] = None
        try:
            await self.broker.ensure_schema_initialized()
            wake_q = await self._subscribe()
            logger.info(
                f'Runner started (batch_size={self.cfg.batch_size}, '
                f'poll_interval={self.cfg.poll_interval_ms}ms, '
                f'types={self.registry.list_types()})'
            )

            backoff = self._make_retry_backoff()
            while not self._stop.is_set():
                try:
                    records = await self.broker.claim_batch_async(self.cfg.batch_size)
                except StoreError as exc:
                    if not backoff.can_retry():
                        logger.error(
                            f'Claim failed after {backoff.attempts} attempts: {exc.message}'
                        )
                        raise
                    delay = backoff.next_delay_seconds()
                    logger.error(
                        f'Claim failed: {exc.message}. Retrying in {delay:.1f}s '
                        f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                    )
                    await self._sleep_with_stop(delay)
                    continue

                backoff.reset()
                if not records:
                    await self._wait_for_work(wake_q)
                    continue

                await self.process_batch(records)
        finally:
            self._state = RunnerState.STOPPING
            if wake_q is not None:
                await self.broker.unsubscribe_new_tasks(wake_q)
            try:
                await self.broker.close_async()
            except StoreError as exc:
                logger.error(f'Error closing broker: {exc.message}')
            self._state = RunnerState.STOPPED
            self._done.set()
            logger.info('Runner stopped')

    async def process_batch(self, records: Sequence[TaskRecord]) -> list[TaskStatus]:
        """Run all records concurrently; statuses come back in input order."""
        return list(await asyncio.gather(*(self.process_task(r) for r in records)))

    async def process_task(self, record: TaskRecord) -> TaskStatus:
        """
        Rebuild, run and (on failure) maybe re-insert one claimed task.

        Never raises, apart from cancellation.
        """
        try:
            task = self.registry.build(record.type, record.payload)
        except Exception as exc:
            logger.error(
                f'Dropping {record.type} ({record.id}): payload does not rebuild: {exc}'
            )
            return TaskStatus.FAILURE
        if task is None:
            logger.error(
                f"Dropping {record.id}: task type '{record.type}' is not registered"
            )
            return TaskStatus.FAILURE

        status = await self._run_task(task, record)
        if status is TaskStatus.FAILURE:
            await self._schedule_retry(task, record)
        return status

    async def _run_task(self, task: Task, record: TaskRecord) -> TaskStatus:
        try:
            result = await task.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                f'{record.type} ({record.id}) raised {type(exc).__name__}: {exc}'
            )
            return TaskStatus.FAILURE

        if not isinstance(result, TaskStatus):
            logger.error(
                f'{record.type} ({record.id}) returned {result!r}, expected TaskStatus'
            )
            return TaskStatus.FAILURE

        logger.debug(f'{record.type} ({record.id}) -> {result.value}')
        return result

    async def _schedule_retry(self, task: Task, record: TaskRecord) -> None:
        try:
            delay_ms = task.next_try()
        except Exception as exc:
            logger.error(f'{record.type} ({record.id}) next_try() raised: {exc}; abandoning')
            return

        if delay_ms < 0:
            logger.warning(
                f'{record.type} ({record.id}) failed after {task.tries + 1} attempt(s); abandoning'
            )
            return

        task.tries += 1
        try:
            retried = await self.broker.insert_async(task, delay_ms)
        except StoreError as exc:
            logger.error(
                f'Failed to re-insert {record.type} ({record.id}) for retry: {exc.message}'
            )
            return

        if retried is None:
            logger.info(f'Retry of {record.type} skipped, an instance is already pending')
        else:
            logger.info(
                f'{record.type} failed, retry {task.tries} in {delay_ms}ms as {retried.id}'
            )
