# pendq/core/registry/tasks.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, TypeVar
from pendq.core.errors import RegistryError, ErrorCode, SourceLocation
from pendq.core.logging import get_logger
from pendq.core.models.tasks import Task

logger = get_logger('registry')

TaskT = TypeVar('TaskT', bound=type[Task])


class NotRegistered(RegistryError, KeyError):
    """Raised when a task type is not present in the registry.

    Inherits from KeyError so Mapping.__contains__ and .get() work
    (they catch KeyError).
    """

    def __init__(self, type_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"task type '{type_name}' not registered",
            code=ErrorCode.TASK_NOT_REGISTERED,
            notes=[f"requested type: '{type_name}'"],
            help_text='register the type with registry.register() or @registry.task()\nbefore the runner or scheduler starts',
        )
        self.type_name = type_name


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    """
    Everything the registry knows about one task type.

    - type_name: str # registry key, stored in the `type` column
    - constructor: Callable[[], Task] # zero-argument factory, usually the Task subclass
    - interval_ms: int | None # recurring period; None for on-demand types
    - unique: bool # at most one pending row of this type
    """

    type_name: str
    constructor: Callable[[], Task]
    interval_ms: Optional[int] = None
    unique: bool = False

    @property
    def is_recurring(self) -> bool:
        return self.interval_ms is not None


class TaskRegistry(Mapping[str, TaskDefinition]):
    """Registry mapping task type name -> TaskDefinition.

    Registration is an upsert: registering a type again replaces the
    previous definition. Reads return snapshots, so callers never observe
    a definition being swapped underneath them.
    """

    def __init__(self) -> None:
        self._data: Dict[str, TaskDefinition] = {}

    def __getitem__(self, key: str) -> TaskDefinition:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    # --- registration ---
    def register(
        self,
        type_name: str,
        constructor: Callable[[], Task],
        interval_ms: Optional[int] = None,
        *,
        unique: bool = False,
    ) -> TaskDefinition:
        """Register (or replace) a task type.

        Args:
            type_name: Registry key; also the `type` stored on every row.
            constructor: Zero-argument callable returning a fresh Task.
            interval_ms: Run every interval_ms via the scheduler. Must be positive.
            unique: Never keep more than one pending row of this type.

        Raises:
            RegistryError: On an empty type name, a non-callable constructor
                or a non-positive interval.
        """
        if not isinstance(type_name, str) or not type_name.strip():
            raise RegistryError(
                message='task type name must be a non-empty string',
                code=ErrorCode.TASK_INVALID_TYPE_NAME,
                notes=[f'got {type_name!r}'],
            )
        if not callable(constructor):
            raise RegistryError(
                message=f"constructor for '{type_name}' is not callable",
                code=ErrorCode.TASK_INVALID_CONSTRUCTOR,
                notes=[f'got {type(constructor).__name__}'],
                help_text='pass the Task subclass itself or a zero-argument factory',
            )
        if interval_ms is not None and (
            isinstance(interval_ms, bool) or not isinstance(interval_ms, int) or interval_ms <= 0
        ):
            raise RegistryError(
                message=f"invalid interval for recurring task '{type_name}'",
                code=ErrorCode.TASK_INVALID_INTERVAL,
                location=SourceLocation.from_callable(constructor),
                notes=[f'got interval_ms={interval_ms!r}'],
                help_text='use a positive number of milliseconds, or None for on-demand tasks',
            )

        definition = TaskDefinition(
            type_name=type_name,
            constructor=constructor,
            interval_ms=interval_ms,
            unique=unique,
        )
        if type_name in self._data:
            logger.debug(f"Replacing registration for task type '{type_name}'")
        self._data[type_name] = definition
        return definition

    def task(
        self,
        type_name: Optional[str] = None,
        interval_ms: Optional[int] = None,
        *,
        unique: bool = False,
    ) -> Callable[[TaskT], TaskT]:
        """Class decorator registering a Task subclass as its own constructor.

        Without type_name, the class's `type` default is used, falling back
        to the class name.

        Example:
            @registry.task('HealthCheck', interval_ms=5_000, unique=True)
            class HealthCheck(Task):
                type: str = 'HealthCheck'
                async def run(self) -> TaskStatus: ...
        """

        def decorator(cls: TaskT) -> TaskT:
            name = type_name or _declared_type_name(cls)
            self.register(name, cls, interval_ms, unique=unique)
            return cls

        return decorator

    def unregister(self, type_name: str) -> None:
        self._data.pop(type_name, None)

    # --- lookups ---
    def build(
        self, type_name: str, overrides: Optional[Mapping[str, Any]] = None
    ) -> Optional[Task]:
        """Construct a fresh task of type_name and apply overrides (a stored payload).

        Returns None for an unknown type. Errors raised by the constructor or
        by field validation propagate.
        """
        definition = self._data.get(type_name)
        if definition is None:
            logger.warning(f"Cannot build task: type '{type_name}' is not registered")
            return None
        task = definition.constructor()
        if task.type != type_name:
            task.type = type_name
        if overrides:
            task.apply_overrides(overrides)
        return task

    def get_definition(self, type_name: str) -> Optional[TaskDefinition]:
        return self._data.get(type_name)

    def is_unique(self, type_name: str) -> bool:
        definition = self._data.get(type_name)
        return definition is not None and definition.unique

    def list_recurring(self) -> dict[str, int]:
        """Snapshot of type name -> interval_ms for every recurring type."""
        return {
            name: definition.interval_ms
            for name, definition in self._data.items()
            if definition.interval_ms is not None
        }

    def list_types(self) -> list[str]:
        return list(self._data.keys())


def _declared_type_name(cls: type[Task]) -> str:
    field = cls.model_fields.get('type')
    default = getattr(field, 'default', None)
    if isinstance(default, str) and default:
        return default
    return cls.__name__
