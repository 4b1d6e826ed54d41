"""Integration test fixtures: a real PostgreSQL reached via PENDQ_TEST_DATABASE_URL."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from pendq.contrib.demo_tasks import register_demo_tasks
from pendq.core.brokers.postgres import PostgresBroker
from pendq.core.models.broker import PostgresConfig
from pendq.core.registry.tasks import TaskRegistry

DB_URL = os.environ.get('PENDQ_TEST_DATABASE_URL', '')


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if DB_URL:
        return
    skip = pytest.mark.skip(reason='PENDQ_TEST_DATABASE_URL not set')
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def registry() -> TaskRegistry:
    return register_demo_tasks(TaskRegistry())


async def _truncate(broker: PostgresBroker) -> None:
    async with broker.async_engine.begin() as conn:
        await conn.execute(text('DELETE FROM pendq_tasks'))


@pytest_asyncio.fixture
async def broker(registry: TaskRegistry) -> AsyncGenerator[PostgresBroker, None]:
    """PostgresBroker with schema initialized and an empty tasks table."""
    brk = PostgresBroker(PostgresConfig(database_url=DB_URL), registry)
    await brk.ensure_schema_initialized()
    await _truncate(brk)
    yield brk
    await _truncate(brk)
    await brk.close_async()


@pytest_asyncio.fixture
async def second_broker(registry: TaskRegistry) -> AsyncGenerator[PostgresBroker, None]:
    """An independent broker (own pool) on the same database."""
    brk = PostgresBroker(PostgresConfig(database_url=DB_URL), registry)
    await brk.ensure_schema_initialized()
    yield brk
    await brk.close_async()
