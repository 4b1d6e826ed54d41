# pendq/core/utils/db.py
"""Shared helpers for classifying transient database errors."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES: frozenset[str] = frozenset({'40001', '40P01', '55P03'})


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def sqlstate_of(exc: BaseException) -> str | None:
    """Return the PostgreSQL SQLSTATE carried by exc (or the DBAPI error it wraps)."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        exc = exc.orig
    sqlstate = getattr(exc, 'sqlstate', None)
    return sqlstate if isinstance(sqlstate, str) else None


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def is_retryable_db_error(exc: BaseException) -> bool:
    """Connection loss, serialization failure, deadlock or lock timeout."""
    if sqlstate_of(exc) in RETRYABLE_SQLSTATES:
        return True
    return is_retryable_connection_error(exc)
