"""Error type raised by PostgresBroker operations.

Every broker method rolls back its transaction before raising, so a caller
that catches StoreError can assume the database is unchanged by the failed
call. Callers branch on ``retryable``: the runner backs off and claims again,
the scheduler drops the tick and waits for the next one.
"""

from __future__ import annotations

from enum import Enum

from pendq.core.utils.db import is_retryable_db_error


class StoreErrorCode(str, Enum):
    """Categorized broker operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    INSERT_FAILED = 'INSERT_FAILED'
    CLAIM_FAILED = 'CLAIM_FAILED'
    QUERY_FAILED = 'QUERY_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'
    LISTENER_FAILED = 'LISTENER_FAILED'


class StoreError(Exception):
    """
    A broker operation failed.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether repeating the operation may succeed
        exception: the original cause (if any)
    """

    def __init__(
        self,
        code: StoreErrorCode,
        message: str,
        retryable: bool = False,
        exception: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.exception = exception

    @classmethod
    def wrap(
        cls, code: StoreErrorCode, message: str, exc: BaseException
    ) -> StoreError:
        """Build a StoreError from a driver/ORM exception, classifying retryability."""
        return cls(
            code=code,
            message=f'{message}: {type(exc).__name__}: {exc}',
            retryable=is_retryable_db_error(exc),
            exception=exc,
        )

    def __repr__(self) -> str:
        return (
            f'StoreError(code={self.code.value}, retryable={self.retryable}, '
            f'message={self.message!r})'
        )
