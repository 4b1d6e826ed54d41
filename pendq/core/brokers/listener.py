# pendq/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY fan-out for runner wake-ups.

Flow:
  1. INSERT into pendq_tasks -> AFTER INSERT trigger -> NOTIFY pendq_task_new, <type>
  2. The listener's dispatcher reads notifications from one autocommit connection
  3. Each notification is copied to every subscriber queue of its channel

Delivery is advisory. A runner that misses a notification (queue full,
connection drop during reconnect) still finds the row on its next poll.
"""

from __future__ import annotations
import asyncio
import contextlib
from collections import defaultdict
from typing import DefaultDict, Optional, Set
from asyncio import Task, Queue

import psycopg
from psycopg import AsyncConnection, InterfaceError, OperationalError, Notify
from psycopg import sql

from pendq.core.brokers.errors import StoreError, StoreErrorCode
from pendq.core.logging import get_logger

logger = get_logger('listener')

_SUBSCRIBER_QUEUE_MAXSIZE: int = 1024
_RECONNECT_BACKOFF_INITIAL_S: float = 0.2
_RECONNECT_BACKOFF_MAX_S: float = 5.0


class PostgresListener:
    """
    LISTEN/NOTIFY wrapper distributing notifications to asyncio queues.

    Features:
      - Single dispatcher task consuming conn.notifies()
      - Multiple subscribers per channel via independent bounded queues
      - Channel names quoted as SQL identifiers
      - Reconnect with capped exponential backoff and re-LISTEN

    Usage:
    ------
    listener = PostgresListener(database_url)
    queue = await listener.listen('pendq_task_new')  # connects on first use
    notification = await queue.get()
    await listener.unsubscribe('pendq_task_new', queue)
    await listener.close()

    Notes:
    ------
    * autocommit=True, so LISTEN takes effect immediately
    * put_nowait() drops notifications for a full queue instead of blocking
      other subscribers
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._conn: Optional[AsyncConnection] = None

        # Channels LISTENed to on the server; replayed after a reconnect.
        self._listen_channels: Set[str] = set()
        self._subs: DefaultDict[str, Set[Queue[Notify]]] = defaultdict(set)

        self._dispatcher_task: Optional[Task[None]] = None
        # Serializes LISTEN/UNLISTEN and subscription book-keeping.
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.closed

    async def _ensure_connection(self) -> AsyncConnection:
        if self._conn is None or self._conn.closed:
            conn = await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True,
            )
            try:
                for channel in self._listen_channels:
                    await conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(channel)))
            except (OperationalError, InterfaceError, OSError):
                with contextlib.suppress(OperationalError, InterfaceError, OSError):
                    await conn.close()
                raise
            self._conn = conn
        return self._conn

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            with contextlib.suppress(OperationalError, InterfaceError, OSError):
                await conn.close()

    async def _pause_dispatcher(self) -> bool:
        """Cancel and await the dispatcher, returning whether one was running."""
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher_if_needed(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='pendq-listener-dispatcher'
            )

    async def _dispatcher(self) -> None:
        """
        Single consumer of conn.notifies().

        On a connection failure, drops the connection, sleeps with capped
        exponential backoff and reconnects (which re-issues every LISTEN).
        """
        backoff = _RECONNECT_BACKOFF_INITIAL_S
        while True:
            try:
                conn = await self._ensure_connection()
                async for notification in conn.notifies():
                    backoff = _RECONNECT_BACKOFF_INITIAL_S
                    for q in list(self._subs.get(notification.channel, ())):
                        try:
                            q.put_nowait(notification)
                        except asyncio.QueueFull:
                            pass
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(
                    f'Listener connection lost ({type(exc).__name__}: {exc}); '
                    f'reconnecting in {backoff:.1f}s'
                )
                await self._close_connection()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _RECONNECT_BACKOFF_MAX_S)

    async def listen(self, channel_name: str) -> Queue[Notify]:
        """Subscribe to channel_name and return a fresh queue of notifications.

        The server-side LISTEN is issued once per channel, however many local
        subscribers there are.

        Raises StoreError(LISTENER_FAILED) on connection or SQL failure.
        """
        try:
            async with self._lock:
                if channel_name not in self._listen_channels:
                    dispatcher_was_running = await self._pause_dispatcher()
                    try:
                        conn = await self._ensure_connection()
                        await conn.execute(
                            sql.SQL('LISTEN {}').format(sql.Identifier(channel_name))
                        )
                        self._listen_channels.add(channel_name)
                    finally:
                        if dispatcher_was_running:
                            self._start_dispatcher_if_needed()
                    self._start_dispatcher_if_needed()

                q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
                self._subs[channel_name].add(q)
                return q
        except (OperationalError, InterfaceError, OSError) as exc:
            raise StoreError.wrap(
                StoreErrorCode.LISTENER_FAILED,
                f'Failed to subscribe to {channel_name!r}',
                exc,
            ) from exc

    async def unsubscribe(
        self, channel_name: str, q: Optional[Queue[Notify]] = None
    ) -> None:
        """
        Remove a local subscriber queue.

        When the last local subscriber of a channel goes away the server-side
        LISTEN is dropped as well. Errors while issuing UNLISTEN are logged;
        the local subscription is removed regardless.
        """
        async with self._lock:
            subs = self._subs.get(channel_name)
            if subs is not None and q is not None:
                subs.discard(q)
            if subs:
                return
            self._subs.pop(channel_name, None)
            if channel_name not in self._listen_channels:
                return
            self._listen_channels.discard(channel_name)
            # notifies() holds the connection, so the dispatcher must be paused
            # before any other statement can run on it.
            await self._pause_dispatcher()
            try:
                if self._conn is not None and not self._conn.closed:
                    await self._conn.execute(
                        sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                    )
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(f'UNLISTEN {channel_name} failed: {exc}')
            finally:
                if self._listen_channels:
                    self._start_dispatcher_if_needed()

    async def close(self) -> None:
        """Stop the dispatcher and close the connection. Safe to call more than once."""
        await self._pause_dispatcher()
        await self._close_connection()
        self._subs.clear()
        self._listen_channels.clear()
