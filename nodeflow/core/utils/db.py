# nodeflow/core/utils/db.py
"""Helpers for classifying transient database errors."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying.

    Used by schema initialization, by the step executor, which treats a
    dropped connection inside a record-store handler as a retryable failure,
    and by the engine when a circuit result cannot be written.
    """
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False
