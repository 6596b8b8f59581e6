"""Failure classification: network (queue), capability (downgrade) or other (propagate).

Typed checks come first (our StoreError, SQLAlchemy / OS exception classes,
PostgreSQL SQLSTATE codes); text indicators are the fallback for stores that
only report a message.
"""
import asyncio

from sqlalchemy import exc as sa_exc

from app.core.errors import FailureKind, IdentityError, StoreError

NETWORK_INDICATORS = (
    "fetch",
    "network",
    "offline",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "could not connect",
    "connection is closed",
    "auth session",
    "signed in",
    "jwt expired",
)

CAPABILITY_INDICATORS = (
    "does not exist",
    "no such table",
    "no such column",
    "has no column",
    "column",
    "relation",
)

# undefined_table, undefined_column
CAPABILITY_SQLSTATES = {"42P01", "42703"}


def _message(error: BaseException) -> str:
    return str(error).lower()


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, StoreError):
        return error.kind is FailureKind.NETWORK
    if isinstance(error, IdentityError):
        return True
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (sa_exc.DisconnectionError, sa_exc.TimeoutError, sa_exc.InterfaceError)):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    message = _message(error)
    return any(indicator in message for indicator in NETWORK_INDICATORS)


def is_missing_relation_or_column(error: BaseException) -> bool:
    if isinstance(error, StoreError):
        return error.kind is FailureKind.CAPABILITY
    if _sqlstate(error) in CAPABILITY_SQLSTATES:
        return True
    message = _message(error)
    return any(indicator in message for indicator in CAPABILITY_INDICATORS)


def classify_failure(error: BaseException) -> FailureKind:
    """Network wins over capability when a message matches both."""
    if is_network_error(error):
        return FailureKind.NETWORK
    if is_missing_relation_or_column(error):
        return FailureKind.CAPABILITY
    return FailureKind.OTHER
