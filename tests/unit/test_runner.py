"""Unit tests for Runner (pendq/core/runner/runner.py).

The broker is a mock; the registry holds the demo task types plus a few
misbehaving ones.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from pendq.contrib.demo_tasks import HealthCheck, SendEmail, register_demo_tasks
from pendq.core.brokers.errors import StoreError, StoreErrorCode
from pendq.core.models.tasks import Task, TaskRecord
from pendq.core.registry.tasks import TaskRegistry
from pendq.core.runner.config import RunnerConfig
from pendq.core.runner.runner import Runner
from pendq.core.types.status import RunnerState, TaskStatus


class Raises(Task):
    type: str = 'Raises'

    async def run(self) -> TaskStatus:
        raise RuntimeError('boom')


class ReturnsNone(Task):
    type: str = 'ReturnsNone'

    async def run(self) -> TaskStatus:
        return None  # type: ignore[return-value]


class BadNextTry(Task):
    type: str = 'BadNextTry'

    async def run(self) -> TaskStatus:
        return TaskStatus.FAILURE

    def next_try(self) -> int:
        raise ValueError('no schedule')


def _registry() -> TaskRegistry:
    registry = register_demo_tasks(TaskRegistry())
    for cls in (Raises, ReturnsNone, BadNextTry):
        registry.task()(cls)
    return registry


def _record(task: Task, record_id: str = 'r-1') -> TaskRecord:
    now = datetime.now(timezone.utc)
    return TaskRecord(
        id=record_id,
        type=task.type,
        priority=task.priority,
        payload=task.to_payload(),
        maturity_at=now,
        created_at=now,
        updated_at=now,
    )


def _broker() -> MagicMock:
    broker = MagicMock()
    broker.ensure_schema_initialized = AsyncMock()
    broker.subscribe_new_tasks = AsyncMock(return_value=asyncio.Queue())
    broker.unsubscribe_new_tasks = AsyncMock()
    broker.claim_batch_async = AsyncMock(return_value=[])
    broker.close_async = AsyncMock()

    async def insert_async(task: Task, delay_ms: int = 0) -> Optional[TaskRecord]:
        return _record(task, f'retry-{task.tries}')

    broker.insert_async = AsyncMock(side_effect=insert_async)
    return broker


def _cfg(**overrides: Any) -> RunnerConfig:
    values: dict[str, Any] = {
        'batch_size': 5,
        'poll_interval_ms': 20,
        'error_backoff_ms': 1,
        'error_backoff_max_ms': 1,
    }
    values.update(overrides)
    return RunnerConfig(**values)


@pytest.mark.unit
class TestProcessTask:
    @pytest.mark.asyncio
    async def test_success_does_not_reinsert(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        status = await runner.process_task(_record(HealthCheck()))

        assert status is TaskStatus.SUCCESS
        broker.insert_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_ignored_is_not_retried(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        status = await runner.process_task(_record(SendEmail(to='')))

        assert status is TaskStatus.IGNORED
        broker.insert_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_check_retried_three_times_then_abandoned(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        record = _record(HealthCheck(healthy=False))
        for _ in range(4):
            assert await runner.process_task(record) is TaskStatus.FAILURE
            if broker.insert_async.await_count:
                retried_task = broker.insert_async.await_args.args[0]
                record = _record(retried_task)

        assert broker.insert_async.await_count == 3
        tries = [c.args[0].tries for c in broker.insert_async.await_args_list]
        delays = [c.args[1] for c in broker.insert_async.await_args_list]
        assert tries == [1, 2, 3]
        assert delays == [60_000, 60_000, 60_000]

    @pytest.mark.asyncio
    async def test_retry_keeps_payload_fields(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        await runner.process_task(_record(HealthCheck(healthy=False, priority=250)))

        retried = broker.insert_async.await_args.args[0]
        assert isinstance(retried, HealthCheck)
        assert retried.healthy is False
        assert retried.priority == 250

    @pytest.mark.asyncio
    async def test_unknown_type_fails_without_retry(self) -> None:
        broker = _broker()
        runner = Runner(broker, TaskRegistry(), _cfg())

        status = await runner.process_task(_record(HealthCheck()))

        assert status is TaskStatus.FAILURE
        broker.insert_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_payload_fails(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())
        now = datetime.now(timezone.utc)
        record = TaskRecord('r', 'HealthCheck', 200, {'tries': -4}, now, now, now)

        assert await runner.process_task(record) is TaskStatus.FAILURE
        broker.insert_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self) -> None:
        runner = Runner(_broker(), _registry(), _cfg())
        assert await runner.process_task(_record(Raises())) is TaskStatus.FAILURE

    @pytest.mark.asyncio
    async def test_non_status_result_counts_as_failure(self) -> None:
        runner = Runner(_broker(), _registry(), _cfg())
        assert await runner.process_task(_record(ReturnsNone())) is TaskStatus.FAILURE

    @pytest.mark.asyncio
    async def test_next_try_error_abandons(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        assert await runner.process_task(_record(BadNextTry())) is TaskStatus.FAILURE
        broker.insert_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_reinsert_store_error_is_swallowed(self) -> None:
        broker = _broker()
        broker.insert_async = AsyncMock(
            side_effect=StoreError(StoreErrorCode.INSERT_FAILED, 'db down')
        )
        runner = Runner(broker, _registry(), _cfg())

        status = await runner.process_task(_record(HealthCheck(healthy=False)))

        assert status is TaskStatus.FAILURE
        broker.insert_async.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_batch_preserves_input_order(self) -> None:
        runner = Runner(_broker(), _registry(), _cfg())
        records = [
            _record(HealthCheck(), 'a'),
            _record(Raises(), 'b'),
            _record(HealthCheck(), 'c'),
        ]

        statuses = await runner.process_batch(records)

        assert statuses == [TaskStatus.SUCCESS, TaskStatus.FAILURE, TaskStatus.SUCCESS]


@pytest.mark.unit
class TestRunnerLifecycle:
    @pytest.mark.asyncio
    async def test_initial_state(self) -> None:
        runner = Runner(_broker(), _registry(), _cfg())
        assert runner.state is RunnerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())

        await runner.stop()
        await runner.stop()

        assert runner.state is RunnerState.STOPPED
        broker.close_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_claims_processes_and_stops(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg())
        batches = [[_record(HealthCheck(), 'a')]]

        async def claim(batch_size: int) -> list[TaskRecord]:
            assert runner.state is RunnerState.RUNNING
            if batches:
                return batches.pop()
            runner.request_stop()
            return []

        broker.claim_batch_async = AsyncMock(side_effect=claim)
        runner.process_batch = AsyncMock(wraps=runner.process_batch)  # type: ignore[method-assign]

        await asyncio.wait_for(runner.start(), timeout=5)

        assert runner.state is RunnerState.STOPPED
        runner.process_batch.assert_awaited_once()
        broker.claim_batch_async.assert_awaited_with(5)
        broker.unsubscribe_new_tasks.assert_awaited_once()
        broker.close_async.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_from_outside_waits_for_loop(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg(poll_interval_ms=10_000))

        task = asyncio.create_task(runner.start())
        while runner.state is not RunnerState.RUNNING:
            await asyncio.sleep(0)
        await asyncio.sleep(0.01)

        await asyncio.wait_for(runner.stop(), timeout=5)

        assert runner.state is RunnerState.STOPPED
        await task

    @pytest.mark.asyncio
    async def test_notification_wakes_idle_runner(self) -> None:
        broker = _broker()
        wake_q: asyncio.Queue[Any] = asyncio.Queue()
        broker.subscribe_new_tasks = AsyncMock(return_value=wake_q)
        runner = Runner(broker, _registry(), _cfg(poll_interval_ms=60_000))

        task = asyncio.create_task(runner.start())
        while broker.claim_batch_async.await_count < 1:
            await asyncio.sleep(0.005)

        for _ in range(3):
            wake_q.put_nowait(object())
        while broker.claim_batch_async.await_count < 2:
            await asyncio.sleep(0.005)

        assert wake_q.empty()
        await runner.stop()
        await task

    @pytest.mark.asyncio
    async def test_runs_without_notifications(self) -> None:
        broker = _broker()
        broker.subscribe_new_tasks = AsyncMock(
            side_effect=StoreError(StoreErrorCode.LISTENER_FAILED, 'no listen')
        )
        runner = Runner(broker, _registry(), _cfg(poll_interval_ms=10))

        task = asyncio.create_task(runner.start())
        while broker.claim_batch_async.await_count < 3:
            await asyncio.sleep(0.005)
        await runner.stop()
        await task

        broker.unsubscribe_new_tasks.assert_not_called()

    @pytest.mark.asyncio
    async def test_schema_failure_propagates(self) -> None:
        broker = _broker()
        broker.ensure_schema_initialized = AsyncMock(
            side_effect=StoreError(StoreErrorCode.SCHEMA_INIT_FAILED, 'no db')
        )
        runner = Runner(broker, _registry(), _cfg())

        with pytest.raises(StoreError):
            await runner.start()

        assert runner.state is RunnerState.STOPPED
        broker.close_async.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_errors_exhaust_backoff(self) -> None:
        broker = _broker()
        broker.claim_batch_async = AsyncMock(
            side_effect=StoreError(StoreErrorCode.CLAIM_FAILED, 'db down', retryable=True)
        )
        runner = Runner(broker, _registry(), _cfg(error_backoff_max_attempts=2))

        with pytest.raises(StoreError):
            await asyncio.wait_for(runner.start(), timeout=5)

        assert broker.claim_batch_async.await_count == 3
        assert runner.state is RunnerState.STOPPED

    @pytest.mark.asyncio
    async def test_claim_error_then_recovery(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg(error_backoff_max_attempts=1))
        outcomes: list[Any] = [
            StoreError(StoreErrorCode.CLAIM_FAILED, 'blip'),
            [],
            StoreError(StoreErrorCode.CLAIM_FAILED, 'blip'),
        ]

        async def claim(batch_size: int) -> list[TaskRecord]:
            if not outcomes:
                runner.request_stop()
                return []
            outcome = outcomes.pop(0)
            if isinstance(outcome, StoreError):
                raise outcome
            return outcome

        broker.claim_batch_async = AsyncMock(side_effect=claim)

        await asyncio.wait_for(runner.start(), timeout=5)

        assert runner.state is RunnerState.STOPPED

    @pytest.mark.asyncio
    async def test_second_start_while_running_is_ignored(self) -> None:
        broker = _broker()
        runner = Runner(broker, _registry(), _cfg(poll_interval_ms=10_000))

        task = asyncio.create_task(runner.start())
        while runner.state is not RunnerState.RUNNING:
            await asyncio.sleep(0)

        await runner.start()
        broker.ensure_schema_initialized.assert_awaited_once()

        await runner.stop()
        await task
