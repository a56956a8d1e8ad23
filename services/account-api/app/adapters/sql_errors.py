"""Translation of SQLAlchemy errors into store error classes."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..services.deletion_errors import PermanentStoreError, TransientStoreError


@asynccontextmanager
async def sql_transaction(
    session_factory: async_sessionmaker, operation: str
) -> AsyncIterator[AsyncSession]:
    """Open a session with a transaction, translating driver failures.

    Connection loss, lock timeouts and pool exhaustion become
    ``TransientStoreError``; anything else the database rejects becomes
    ``PermanentStoreError``. ``IntegrityError`` is re-raised unchanged so
    callers can treat a duplicate key as a signal.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError, PoolTimeoutError) as e:
        raise TransientStoreError(str(e), operation) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(str(e), operation) from e
        raise PermanentStoreError(str(e), operation) from e
