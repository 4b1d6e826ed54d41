# pendq/core/brokers/postgres.py
from __future__ import annotations
import uuid, asyncio, hashlib
from asyncio import Queue
from typing import Optional, Sequence, TYPE_CHECKING
import psycopg
from psycopg import Notify
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from pendq.core.brokers.errors import StoreError, StoreErrorCode
from pendq.core.brokers.listener import PostgresListener
from pendq.core.brokers.sql import (
    ADVISORY_XACT_LOCK_SQL,
    CLAIM_BATCH_SQL,
    COUNT_PENDING_OF_TYPE_SQL,
    COUNT_PENDING_SQL,
    CREATE_NOTIFY_FUNCTION_SQL,
    CREATE_NOTIFY_TRIGGER_SQL,
    DROP_NOTIFY_TRIGGER_SQL,
    INSERT_TASK_SQL,
    PENDING_OF_TYPE_EXISTS_SQL,
)
from pendq.core.defaults import TASK_NEW_CHANNEL
from pendq.core.models.broker import PostgresConfig
from pendq.core.models.task_pg import Base
from pendq.core.models.tasks import Task, TaskRecord
from pendq.core.utils.loop_runner import LoopRunner
from pendq.core.utils.url import mask_database_url, to_psycopg_url
from pendq.core.logging import get_logger

if TYPE_CHECKING:
    from pendq.core.registry.tasks import TaskRegistry

# Exceptions a database round trip can raise; anything else is a bug and propagates.
_DB_ERRORS = (SQLAlchemyError, psycopg.Error, OSError)


def _advisory_key(namespace: bytes, basis: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    h = hashlib.sha256(namespace + basis.encode('utf-8', errors='ignore')).digest()
    return int.from_bytes(h[:8], byteorder='big', signed=True)


def _require_type(task: Task) -> None:
    if not task.type:
        raise ValueError(
            f'{type(task).__name__} has an empty type; give the class a type default'
        )


class PostgresBroker:
    """
    The task store: one PostgreSQL table of pending tasks.

    Provides both async and sync APIs:
      - Async: insert_async(), claim_batch_async(), count_pending_async()
      - Sync: insert(), claim_batch(), count_pending() (run on a background loop)

    Every operation runs in its own transaction and raises StoreError after
    rolling it back. Claiming deletes the claimed rows, so a row exists only
    while its task is pending.
    """

    def __init__(
        self,
        config: PostgresConfig,
        registry: Optional['TaskRegistry'] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.logger = get_logger('broker')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self.listener = PostgresListener(to_psycopg_url(self.config.database_url))

        self._initialized = False
        self._closed = False
        self._init_lock = asyncio.Lock()
        self._loop_runner = LoopRunner(name='pendq-broker-loop')  # for sync facades

        self.logger.info(
            f'PostgresBroker initialized ({mask_database_url(self.config.database_url)})'
        )

    def _schema_advisory_key(self) -> int:
        """
        Advisory lock key serializing schema creation across processes.

        Derived from the database URL so that different clusters do not
        contend on the same key.
        """
        return _advisory_key(b'pendq-schema:', self.config.database_url)

    @staticmethod
    def _type_advisory_key(type_name: str) -> int:
        """Advisory lock key serializing unique inserts of one task type."""
        return _advisory_key(b'pendq-unique:', type_name)

    # ----------------- Schema -----------------

    async def _create_schema(self) -> None:
        async with self.async_engine.begin() as conn:
            # Short-lived, cluster-wide lock: concurrent create_all/trigger DDL
            # from several processes would otherwise race.
            await conn.execute(
                ADVISORY_XACT_LOCK_SQL, {'key': self._schema_advisory_key()}
            )
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(CREATE_NOTIFY_FUNCTION_SQL)
            await conn.execute(DROP_NOTIFY_TRIGGER_SQL)
            await conn.execute(CREATE_NOTIFY_TRIGGER_SQL)

    async def ensure_schema_initialized(self) -> None:
        """
        Ensure the tasks table, its indexes and the insert NOTIFY trigger exist.

        Safe to call multiple times and from multiple processes; the DDL runs
        under a PostgreSQL advisory lock. The notification listener is not
        touched here; it connects on the first subscribe_new_tasks().

        Raises StoreError(SCHEMA_INIT_FAILED).
        """
        async with self._init_lock:
            if not self._initialized:
                try:
                    await self._create_schema()
                except _DB_ERRORS as exc:
                    raise StoreError.wrap(
                        StoreErrorCode.SCHEMA_INIT_FAILED,
                        'Failed to initialize schema',
                        exc,
                    ) from exc
                self._initialized = True
                self._closed = False
                self.logger.debug('Schema initialized')

    # ----------------- Async API -----------------

    def _is_unique_type(self, type_name: str) -> bool:
        return self.registry is not None and self.registry.is_unique(type_name)

    async def _lock_unique_types(
        self, session: AsyncSession, tasks: Sequence[Task]
    ) -> None:
        """
        Take the advisory lock of every distinct unique type in `tasks`.

        Locks are held until commit, so a concurrent insert of the same type
        waits and then sees this transaction's row in the pending probe.
        Keys are taken in ascending order; two batches naming the same types
        in opposite order would otherwise deadlock.
        """
        keys = sorted(
            {
                self._type_advisory_key(task.type)
                for task in tasks
                if self._is_unique_type(task.type)
            }
        )
        for key in keys:
            await session.execute(ADVISORY_XACT_LOCK_SQL, {'key': key})

    async def _insert_in_session(
        self, session: AsyncSession, task: Task, delay_ms: int
    ) -> Optional[TaskRecord]:
        """Insert one row. The caller holds the lock of a unique task's type."""
        if self._is_unique_type(task.type):
            exists = (
                await session.execute(PENDING_OF_TYPE_EXISTS_SQL, {'type': task.type})
            ).scalar_one()
            if exists:
                self.logger.info(
                    f"Task of unique type '{task.type}' already pending, skipping duplicate"
                )
                return None

        result = await session.execute(
            INSERT_TASK_SQL,
            {
                'id': str(uuid.uuid4()),
                'type': task.type,
                'priority': task.priority,
                'payload': task.to_payload(),
                'delay_ms': delay_ms,
            },
        )
        return TaskRecord.from_row(result.mappings().one())

    async def insert_async(self, task: Task, delay_ms: int = 0) -> Optional[TaskRecord]:
        """
        Insert one task, claimable after delay_ms milliseconds.

        Returns the stored row, or None when the task's type is unique and a
        row of that type is already pending.

        Raises:
            ValueError: delay_ms is negative or the task has an empty type.
            StoreError(INSERT_FAILED): the transaction failed and was rolled back.
        """
        if delay_ms < 0:
            raise ValueError(f'delay_ms must be >= 0, got {delay_ms}')
        _require_type(task)
        await self.ensure_schema_initialized()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._lock_unique_types(session, [task])
                    record = await self._insert_in_session(session, task, delay_ms)
        except _DB_ERRORS as exc:
            raise StoreError.wrap(
                StoreErrorCode.INSERT_FAILED,
                f"Failed to insert task of type '{task.type}'",
                exc,
            ) from exc

        if record is not None:
            self.logger.debug(
                f'Inserted {record.type} ({record.id}) priority={record.priority} '
                f'delay={delay_ms}ms'
            )
        return record

    async def insert_many_async(
        self, tasks: Sequence[Task], spacing_ms: int = 0
    ) -> list[TaskRecord]:
        """
        Insert several tasks in one transaction, the i-th with delay i * spacing_ms.

        Duplicates of unique types (already pending, or repeated within
        `tasks`) are skipped and left out of the result.
        """
        if spacing_ms < 0:
            raise ValueError(f'spacing_ms must be >= 0, got {spacing_ms}')
        if not tasks:
            return []
        for task in tasks:
            _require_type(task)
        await self.ensure_schema_initialized()

        records: list[TaskRecord] = []
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._lock_unique_types(session, tasks)
                    for i, task in enumerate(tasks):
                        record = await self._insert_in_session(
                            session, task, i * spacing_ms
                        )
                        if record is not None:
                            records.append(record)
        except _DB_ERRORS as exc:
            raise StoreError.wrap(
                StoreErrorCode.INSERT_FAILED,
                f'Failed to insert batch of {len(tasks)} tasks',
                exc,
            ) from exc
        return records

    async def claim_batch_async(self, batch_size: int) -> list[TaskRecord]:
        """
        Atomically remove and return up to batch_size mature tasks.

        Highest priority first, then oldest first. Rows locked by a
        concurrent claim are skipped rather than waited on, so concurrent
        claimers never receive the same row.

        Raises:
            ValueError: batch_size < 1.
            StoreError(CLAIM_FAILED): nothing was removed.
        """
        if batch_size < 1:
            raise ValueError(f'batch_size must be >= 1, got {batch_size}')
        await self.ensure_schema_initialized()

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(CLAIM_BATCH_SQL, {'lim': batch_size})
                    rows = result.mappings().all()
        except _DB_ERRORS as exc:
            raise StoreError.wrap(
                StoreErrorCode.CLAIM_FAILED,
                f'Failed to claim batch of {batch_size}',
                exc,
            ) from exc

        return [TaskRecord.from_row(row) for row in rows]

    async def count_pending_async(self, type_name: Optional[str] = None) -> int:
        """Number of pending rows (mature or not), optionally of one type."""
        await self.ensure_schema_initialized()
        try:
            async with self.session_factory() as session:
                if type_name is None:
                    result = await session.execute(COUNT_PENDING_SQL)
                else:
                    result = await session.execute(
                        COUNT_PENDING_OF_TYPE_SQL, {'type': type_name}
                    )
                return int(result.scalar_one())
        except _DB_ERRORS as exc:
            raise StoreError.wrap(
                StoreErrorCode.QUERY_FAILED, 'Failed to count pending tasks', exc
            ) from exc

    # ----------------- Wake-ups -----------------

    async def subscribe_new_tasks(self) -> Queue[Notify]:
        """Queue receiving one notification per inserted row (payload: task type).

        Opens the LISTEN connection on first use. Producers and the scheduler
        never subscribe and so never hold one.

        Raises StoreError(LISTENER_FAILED).
        """
        return await self.listener.listen(TASK_NEW_CHANNEL)

    async def unsubscribe_new_tasks(self, q: Queue[Notify]) -> None:
        await self.listener.unsubscribe(TASK_NEW_CHANNEL, q)

    async def close_async(self) -> None:
        """Close the listener and dispose the connection pool. Idempotent.

        Raises StoreError(CLOSE_FAILED).
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self.listener.close()
            await self.async_engine.dispose()
        except _DB_ERRORS as exc:
            raise StoreError.wrap(
                StoreErrorCode.CLOSE_FAILED, 'Failed to close broker', exc
            ) from exc
        finally:
            self._initialized = False
        self.logger.debug('PostgresBroker closed')

    # ----------------- Sync API Facades -----------------

    def insert(self, task: Task, delay_ms: int = 0) -> Optional[TaskRecord]:
        """
        Synchronous insert (runs insert_async in background loop).
        """
        return self._loop_runner.call(self.insert_async, task, delay_ms)

    def insert_many(
        self, tasks: Sequence[Task], spacing_ms: int = 0
    ) -> list[TaskRecord]:
        return self._loop_runner.call(self.insert_many_async, tasks, spacing_ms)

    def claim_batch(self, batch_size: int) -> list[TaskRecord]:
        return self._loop_runner.call(self.claim_batch_async, batch_size)

    def count_pending(self, type_name: Optional[str] = None) -> int:
        return self._loop_runner.call(self.count_pending_async, type_name)

    def close(self) -> None:
        """
        Synchronous cleanup (runs close_async in background loop).
        """
        try:
            self._loop_runner.call(self.close_async)
        finally:
            self._loop_runner.stop()

    def __repr__(self) -> str:
        return f'PostgresBroker({mask_database_url(self.config.database_url)!r})'
