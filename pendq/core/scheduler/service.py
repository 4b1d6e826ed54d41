# pendq/core/scheduler/service.py
from __future__ import annotations
import asyncio
from typing import Optional
from pendq.core.brokers.errors import StoreError
from pendq.core.brokers.postgres import PostgresBroker
from pendq.core.logging import get_logger
from pendq.core.models.tasks import TaskRecord
from pendq.core.registry.tasks import TaskRegistry

logger = get_logger('scheduler')


class Scheduler:
    """
    Inserts one instance of every recurring task type per interval.

    Responsibilities:
    1. Snapshot the recurring types from the registry at start
    2. Insert one instance of each immediately (the initial tick)
    3. Keep inserting one per interval_ms, independently per type

    Unique recurring types never pile up: a tick that finds a pending row of
    its type is skipped by the broker. A tick lost to a StoreError is not
    replayed; the next tick inserts as usual.
    """

    def __init__(self, broker: PostgresBroker, registry: TaskRegistry) -> None:
        self.broker = broker
        self.registry = registry
        self._stop = asyncio.Event()
        self._cycles: dict[str, asyncio.Task[None]] = {}
        self._started = False
        self._closed = False

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    async def start(self) -> None:
        """Initialize the schema, run every initial tick, then start the cycles.

        Returns once all initial ticks have completed. Schema initialization
        failures propagate.
        """
        if self._started:
            return

        await self.broker.ensure_schema_initialized()
        self._stop.clear()
        self._closed = False
        self._started = True

        recurring = self.registry.list_recurring()
        if not recurring:
            logger.warning('No recurring task types registered; scheduler is idle')

        await asyncio.gather(*(self.tick(name) for name in recurring))

        for type_name, interval_ms in recurring.items():
            self._cycles[type_name] = asyncio.create_task(
                self._cycle(type_name, interval_ms),
                name=f'pendq-schedule-{type_name}',
            )
        logger.info(
            'Scheduler started: '
            + ', '.join(f'{name} every {ms}ms' for name, ms in recurring.items())
        )

    async def tick(self, type_name: str) -> Optional[TaskRecord]:
        """Build a fresh instance of type_name and insert it with no delay."""
        try:
            task = self.registry.build(type_name)
        except Exception as exc:
            logger.error(f'Cannot build recurring task {type_name}: {exc}')
            return None
        if task is None:
            return None

        try:
            record = await self.broker.insert_async(task, 0)
        except StoreError as exc:
            logger.error(f'Scheduled insert of {type_name} failed: {exc.message}')
            return None

        if record is not None:
            logger.debug(f'Scheduled {type_name} ({record.id})')
        return record

    async def _cycle(self, type_name: str, interval_ms: int) -> None:
        interval_s = interval_ms / 1000.0
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_s)
                return
            except asyncio.TimeoutError:
                pass
            await self.tick(type_name)

    def request_stop(self) -> None:
        """Request scheduler to stop gracefully."""
        self._stop.set()
        for cycle in self._cycles.values():
            cycle.cancel()

    async def stop(self) -> None:
        """Cancel the cycles and close the broker. Safe to call more than once."""
        self.request_stop()
        if self._cycles:
            await asyncio.gather(*self._cycles.values(), return_exceptions=True)
            self._cycles.clear()

        if self._closed:
            return
        self._closed = True
        self._started = False
        try:
            await self.broker.close_async()
            logger.info('Broker closed')
        except StoreError as exc:
            logger.error(f'Broker close failed: {exc.message}')
        logger.info('Scheduler stopped')

    async def run_forever(self) -> None:
        """start(), then wait for request_stop() and shut down."""
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.stop()
