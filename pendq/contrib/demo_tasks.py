"""
Example task types.

    from pendq.contrib.demo_tasks import register_demo_tasks
    register_demo_tasks(app.registry)

SendEmail and ProcessData are on-demand; DailyReport and HealthCheck are
recurring and unique, so a slow runner never finds more than one of each
waiting.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import Field

from pendq.core.defaults import NO_RETRY
from pendq.core.logging import get_logger
from pendq.core.models.tasks import Task
from pendq.core.registry.tasks import TaskRegistry
from pendq.core.types.status import TaskStatus

logger = get_logger('demo')

DAY_MS = 24 * 60 * 60 * 1000
HEALTH_CHECK_INTERVAL_MS = 5_000
HEALTH_CHECK_RETRY_DELAY_MS = 60_000
HEALTH_CHECK_MAX_RETRIES = 3


class SendEmail(Task):
    type: str = 'SendEmail'
    to: str = ''
    subject: str = ''
    body: str = ''

    async def run(self) -> TaskStatus:
        if not self.to:
            logger.warning('SendEmail without recipient, ignoring')
            return TaskStatus.IGNORED
        logger.info(f'Sending email to {self.to}: {self.subject!r}')
        await asyncio.sleep(0)
        return TaskStatus.SUCCESS


class ProcessData(Task):
    type: str = 'ProcessData'
    records: list[dict[str, Any]] = Field(default_factory=list)

    async def run(self) -> TaskStatus:
        total = sum(len(r) for r in self.records)
        logger.info(f'Processed {len(self.records)} record(s), {total} field(s)')
        return TaskStatus.SUCCESS


class DailyReport(Task):
    type: str = 'DailyReport'

    async def run(self) -> TaskStatus:
        logger.info(f'Generating daily report (scheduled at {self.created_at:%Y-%m-%d %H:%M})')
        return TaskStatus.SUCCESS


class HealthCheck(Task):
    """Fails when `healthy` is False; retried after a minute, at most three times."""

    type: str = 'HealthCheck'
    priority: int = 200
    healthy: bool = True

    async def run(self) -> TaskStatus:
        if self.healthy:
            return TaskStatus.SUCCESS
        logger.warning(f'Health check failed (attempt {self.tries + 1})')
        return TaskStatus.FAILURE

    def next_try(self) -> int:
        if self.tries < HEALTH_CHECK_MAX_RETRIES:
            return HEALTH_CHECK_RETRY_DELAY_MS
        return NO_RETRY


def register_demo_tasks(registry: TaskRegistry) -> TaskRegistry:
    registry.register('SendEmail', SendEmail)
    registry.register('ProcessData', ProcessData)
    registry.register('DailyReport', DailyReport, DAY_MS, unique=True)
    registry.register(
        'HealthCheck', HealthCheck, HEALTH_CHECK_INTERVAL_MS, unique=True
    )
    return registry
