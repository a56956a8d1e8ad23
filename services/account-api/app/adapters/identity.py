"""Identity store adapter for authentication identities."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models.identity import Identity
from .sql_errors import sql_transaction

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Abstract base class for identity stores."""

    @abstractmethod
    async def get_identity(self, uid: str) -> Identity | None:
        """Return the identity for ``uid`` or None."""
        pass

    @abstractmethod
    async def delete_identity(self, uid: str) -> bool:
        """Delete the identity. Returns False if it was already gone."""
        pass

    @abstractmethod
    async def revoke_sessions(self, uid: str) -> bool:
        """Invalidate every session issued so far. Returns False if no identity."""
        pass


class SqlIdentityStore(IdentityStore):
    """Identity store on the ``identities`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_identity(self, uid: str) -> Identity | None:
        async with sql_transaction(self._session_factory, "identities.get") as session:
            result = await session.execute(select(Identity).where(Identity.uid == uid))
            return result.scalar_one_or_none()

    async def delete_identity(self, uid: str) -> bool:
        async with sql_transaction(
            self._session_factory, "identities.delete"
        ) as session:
            result = await session.execute(delete(Identity).where(Identity.uid == uid))

        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info("identity.deleted", extra={"uid": uid})
        else:
            logger.info("identity.already_removed", extra={"uid": uid})
        return removed

    async def revoke_sessions(self, uid: str) -> bool:
        async with sql_transaction(
            self._session_factory, "identities.revoke_sessions"
        ) as session:
            result = await session.execute(
                update(Identity)
                .where(Identity.uid == uid)
                .values(sessions_revoked_at=datetime.now(timezone.utc))
            )

        revoked = (result.rowcount or 0) > 0
        if revoked:
            logger.info("identity.sessions_revoked", extra={"uid": uid})
        return revoked
