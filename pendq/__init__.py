"""pendq - a priority task queue on one PostgreSQL table"""

# PendqError renders as a diagnostic, not a traceback
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Pendq
from .core.models.app import AppConfig
from .core.models.broker import PostgresConfig
from .core.models.resilience import RunnerResilienceConfig
from .core.models.tasks import RetryPolicy, Task, TaskRecord
from .core.types.status import RunnerState, TaskStatus
from .core.defaults import NO_RETRY
from .core.registry.tasks import TaskDefinition, TaskRegistry, NotRegistered
from .core.brokers import PostgresBroker, StoreError, StoreErrorCode
from .core.runner.config import RunnerConfig
from .core.runner.runner import Runner
from .core.scheduler import Scheduler
from .core.errors import (
    PendqError,
    ErrorCode,
    ConfigurationError,
    RegistryError,
    TaskDefinitionError,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'Pendq',
    'AppConfig',
    'PostgresConfig',
    'RunnerResilienceConfig',
    'RunnerConfig',
    # Tasks
    'Task',
    'TaskRecord',
    'TaskStatus',
    'RetryPolicy',
    'NO_RETRY',
    'TaskDefinition',
    'TaskRegistry',
    'NotRegistered',
    # Services
    'PostgresBroker',
    'Runner',
    'RunnerState',
    'Scheduler',
    # Errors
    'StoreError',
    'StoreErrorCode',
    'PendqError',
    'ErrorCode',
    'ConfigurationError',
    'RegistryError',
    'TaskDefinitionError',
    'MultipleValidationErrors',
]
