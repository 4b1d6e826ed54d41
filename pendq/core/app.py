# pendq/core/app.py
from typing import Callable, Optional, TypeVar
import asyncio
import os
from pendq.core.brokers.postgres import PostgresBroker
from pendq.core.errors import (
    ConfigurationError,
    ErrorCode,
    PendqError,
    SourceLocation,
    TaskDefinitionError,
)
from pendq.core.logging import get_logger
from pendq.core.models.app import AppConfig
from pendq.core.models.tasks import RetryPolicy, Task
from pendq.core.registry.tasks import TaskDefinition, TaskRegistry
from pendq.core.runner.config import RunnerConfig
from pendq.core.runner.runner import Runner
from pendq.core.scheduler.service import Scheduler
from pendq.core.utils.imports import import_by_path, is_file_path

TaskT = TypeVar('TaskT', bound=type[Task])

_E = TypeVar('_E', bound=PendqError)


def _no_location(error: _E) -> _E:
    """Strip the auto-detected source location from a programmatic error.

    Used for errors built inside pendq where the detected frame (the CLI
    entry point) would be misleading.
    """
    error.location = None
    return error


class Pendq:
    """
    The application object: owns the config, the task registry and the
    producers' broker.

    One per process. Runner and Scheduler share the registry by reference
    but each get a broker of their own, which they close when they stop.
    """

    def __init__(self, config: AppConfig):
        self.config = config
        self.registry = TaskRegistry()
        self._broker: Optional[PostgresBroker] = None
        self._task_modules: list[str] = []
        self.logger = get_logger('app')

    # -------- registration --------
    def register(
        self,
        type_name: str,
        constructor: Callable[[], Task],
        interval_ms: Optional[int] = None,
        *,
        unique: bool = False,
    ) -> TaskDefinition:
        return self.registry.register(type_name, constructor, interval_ms, unique=unique)

    def task(
        self,
        type_name: Optional[str] = None,
        interval_ms: Optional[int] = None,
        *,
        unique: bool = False,
    ) -> Callable[[TaskT], TaskT]:
        """Class decorator: see TaskRegistry.task()."""
        return self.registry.task(type_name, interval_ms, unique=unique)

    def list_tasks(self) -> list[str]:
        """List task types registered with this app"""
        return self.registry.list_types()

    def discover_tasks(self, modules: list[str]) -> None:
        """
        Record modules that register tasks, imported later by import_task_modules().

        Args:
            modules: dotted module paths (['myapp.tasks']) or file paths (['tasks.py'])
        """
        if self._task_modules:
            self.logger.warning(
                f'discover_tasks() called again, replacing {len(self._task_modules)} '
                f'previously recorded module(s)'
            )
        self._task_modules = list(modules)

    def import_task_modules(self, modules: Optional[list[str]] = None) -> list[str]:
        """Import task modules so their registrations run. Returns what was imported."""
        imported: list[str] = []
        for module in self._task_modules if modules is None else modules:
            if is_file_path(module):
                module = os.path.realpath(module)
            import_by_path(module)
            imported.append(module)
        return imported

    # -------- components --------
    def get_broker(self) -> PostgresBroker:
        """Shared broker for producers inserting tasks from this process"""
        if self._broker is None:
            self._broker = self._new_broker()
        return self._broker

    def _new_broker(self) -> PostgresBroker:
        return PostgresBroker(self.config.broker, self.registry)

    def create_runner(self, cfg: Optional[RunnerConfig] = None) -> Runner:
        return Runner(
            self._new_broker(),
            self.registry,
            cfg or RunnerConfig.from_app_config(self.config),
        )

    def create_scheduler(self) -> Scheduler:
        return Scheduler(self._new_broker(), self.registry)

    # -------- validation --------
    def check(self, *, live: bool = False) -> list[PendqError]:
        """Run phased validation and return every error found.

        Phase 1: Config, validated at construction (implicit pass).
        Phase 2: Task module imports.
        Phase 3: Task definitions: each constructor builds a Task of its
            registered type with a valid retry policy.
        Phase 4 (if live): Broker connectivity via SELECT 1.

        An empty list means all validations passed.
        """
        errors: list[PendqError] = []

        errors.extend(self._check_task_imports())
        if errors:
            return errors

        errors.extend(self._check_task_definitions())
        if errors:
            return errors

        if live:
            errors.extend(self._check_broker_connectivity())
        return errors

    def _check_task_imports(self) -> list[PendqError]:
        errors: list[PendqError] = []
        for module in self._task_modules:
            try:
                self.import_task_modules([module])
            except PendqError as exc:
                errors.append(exc)
            except Exception as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f"failed to import task module '{module}'",
                            code=ErrorCode.CLI_INVALID_ARGS,
                            notes=[f'{type(exc).__name__}: {exc}'],
                            help_text='fix the import error or remove the module from discover_tasks()',
                        )
                    )
                )
        return errors

    def _check_task_definitions(self) -> list[PendqError]:
        errors: list[PendqError] = []
        for name, definition in self.registry.items():
            location = SourceLocation.from_callable(definition.constructor)
            try:
                task = definition.constructor()
            except Exception as exc:
                errors.append(
                    TaskDefinitionError(
                        message=f"constructor for '{name}' failed",
                        code=ErrorCode.TASK_INVALID_CONSTRUCTOR,
                        location=location,
                        notes=[f'{type(exc).__name__}: {exc}'],
                        help_text='the constructor is called with no arguments;\ngive every field (including `type`) a default',
                    )
                )
                continue

            if not isinstance(task, Task):
                errors.append(
                    TaskDefinitionError(
                        message=f"constructor for '{name}' did not return a Task",
                        code=ErrorCode.TASK_INVALID_CONSTRUCTOR,
                        location=location,
                        notes=[f'got {type(task).__name__}'],
                    )
                )
                continue

            policy = type(task).retry_policy
            if policy is not None and not isinstance(policy, RetryPolicy):
                errors.append(
                    TaskDefinitionError(
                        message=f"retry_policy of '{name}' is not a RetryPolicy",
                        code=ErrorCode.TASK_INVALID_RETRY_POLICY,
                        location=location,
                        notes=[f'got {type(policy).__name__}'],
                    )
                )
        return errors

    def _check_broker_connectivity(self) -> list[PendqError]:
        """SELECT 1 through a short-lived engine, so the app's broker pool is
        not bound to the temporary event loop."""
        from sqlalchemy import text
        from sqlalchemy.ext.asyncio import create_async_engine

        errors: list[PendqError] = []

        async def _test_connection() -> None:
            engine = create_async_engine(self.config.broker.database_url)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text('SELECT 1'))
            finally:
                await engine.dispose()

        try:
            asyncio.run(_test_connection())
        except Exception as exc:
            errors.append(
                _no_location(
                    ConfigurationError(
                        message='broker connectivity check failed',
                        code=ErrorCode.BROKER_INVALID_URL,
                        notes=[str(exc)],
                        help_text='check database_url in PostgresConfig',
                    )
                )
            )
        return errors
