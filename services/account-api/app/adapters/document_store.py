"""Document store adapter.

Application data is stored as JSON documents addressed by slash-separated
paths (``posts/{postId}/comments/{commentId}``). The adapter offers the small
surface account deletion needs: single-document get/set/delete, paginated
collection and collection-group scans with an equality filter, subtree scans,
and atomic batch writes bounded by ``MAX_BATCH_WRITES``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.document import Document
from ..services.deletion_errors import BatchTooLargeError, TransientStoreError
from .sql_errors import sql_transaction

logger = logging.getLogger(__name__)

# Upper bound on writes committed atomically in one batch
MAX_BATCH_WRITES = 500


def split_path(path: str) -> tuple[str, str]:
    """Return ``(collection, parent_path)`` for a document path.

    Raises:
        ValueError: If the path does not address a document (odd segments).
    """
    segments = path.strip("/").split("/")
    if len(segments) < 2 or len(segments) % 2 != 0 or not all(segments):
        raise ValueError(f"Not a document path: {path!r}")
    return segments[-2], "/".join(segments[:-2])


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document read from the store."""

    path: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def segments(self) -> list[str]:
        return self.path.split("/")

    @property
    def parent_path(self) -> str:
        return split_path(self.path)[1]


@dataclass(frozen=True)
class DocumentQuery:
    """Equality-filtered scan over a collection.

    ``parent_path=None`` makes it a collection-group query: every collection
    named ``collection`` at any depth. ``root`` narrows a group query to
    documents under one top-level collection.
    """

    collection: str
    parent_path: str | None = ""
    field: str | None = None
    value: str | None = None
    root: str | None = None

    @classmethod
    def group(
        cls,
        collection: str,
        field: str | None = None,
        value: str | None = None,
        root: str | None = None,
    ) -> "DocumentQuery":
        return cls(
            collection=collection,
            parent_path=None,
            field=field,
            value=value,
            root=root,
        )

    @classmethod
    def children(cls, parent_path: str, collection: str) -> "DocumentQuery":
        return cls(collection=collection, parent_path=parent_path)


@dataclass(frozen=True)
class DocumentWrite:
    """One write inside an atomic batch; ``data=None`` means delete."""

    path: str
    data: dict[str, Any] | None = None

    @classmethod
    def set(cls, path: str, data: dict[str, Any]) -> "DocumentWrite":
        return cls(path=path, data=dict(data))

    @classmethod
    def delete(cls, path: str) -> "DocumentWrite":
        return cls(path=path, data=None)

    @property
    def is_delete(self) -> bool:
        return self.data is None


class DocumentStore(ABC):
    """Abstract base class for document stores."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot | None:
        """Return the document at ``path`` or None."""
        pass

    @abstractmethod
    async def set(self, path: str, data: dict[str, Any]) -> None:
        """Create or replace the document at ``path``."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete the document at ``path``. Returns False if it was absent."""
        pass

    @abstractmethod
    async def scan(
        self,
        query: DocumentQuery,
        limit: int,
        start_after: str | None = None,
    ) -> list[DocumentSnapshot]:
        """Return up to ``limit`` matching documents ordered by path."""
        pass

    @abstractmethod
    async def scan_subtree(
        self,
        path: str,
        limit: int,
        start_after: str | None = None,
    ) -> list[DocumentSnapshot]:
        """Return up to ``limit`` descendants of ``path`` (not the document itself)."""
        pass

    @abstractmethod
    async def commit(self, writes: Sequence[DocumentWrite]) -> None:
        """Apply ``writes`` atomically. Deleting an absent document is a no-op."""
        pass


class SqlDocumentStore(DocumentStore):
    """Document store on the ``documents`` table (PostgreSQL or SQLite)."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_batch_writes: int = MAX_BATCH_WRITES,
    ):
        self._session_factory = session_factory
        self.max_batch_writes = max_batch_writes

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with sql_transaction(self._session_factory, operation) as session:
                yield session
        except IntegrityError as e:
            # Concurrent insert of the same path; a retry sees the row
            raise TransientStoreError(str(e), operation) from e

    async def get(self, path: str) -> DocumentSnapshot | None:
        async with self._transaction("documents.get") as session:
            doc = await session.get(Document, path)
            if doc is None:
                return None
            return DocumentSnapshot(path=doc.path, data=dict(doc.data or {}))

    async def set(self, path: str, data: dict[str, Any]) -> None:
        async with self._transaction("documents.set") as session:
            await self._upsert(session, path, data)

    async def delete(self, path: str) -> bool:
        async with self._transaction("documents.delete") as session:
            result = await session.execute(delete(Document).where(Document.path == path))
            return (result.rowcount or 0) > 0

    async def scan(
        self,
        query: DocumentQuery,
        limit: int,
        start_after: str | None = None,
    ) -> list[DocumentSnapshot]:
        stmt = select(Document).where(Document.collection == query.collection)
        if query.parent_path is not None:
            stmt = stmt.where(Document.parent_path == query.parent_path)
        if query.root:
            stmt = stmt.where(Document.path.startswith(f"{query.root}/", autoescape=True))
        if query.field is not None:
            stmt = stmt.where(Document.data[query.field].as_string() == query.value)
        if start_after is not None:
            stmt = stmt.where(Document.path > start_after)
        stmt = stmt.order_by(Document.path).limit(limit)

        async with self._transaction("documents.scan") as session:
            result = await session.execute(stmt)
            return [
                DocumentSnapshot(path=doc.path, data=dict(doc.data or {}))
                for doc in result.scalars().all()
            ]

    async def scan_subtree(
        self,
        path: str,
        limit: int,
        start_after: str | None = None,
    ) -> list[DocumentSnapshot]:
        stmt = select(Document).where(
            Document.path.startswith(f"{path}/", autoescape=True)
        )
        if start_after is not None:
            stmt = stmt.where(Document.path > start_after)
        stmt = stmt.order_by(Document.path).limit(limit)

        async with self._transaction("documents.scan_subtree") as session:
            result = await session.execute(stmt)
            return [
                DocumentSnapshot(path=doc.path, data=dict(doc.data or {}))
                for doc in result.scalars().all()
            ]

    async def commit(self, writes: Sequence[DocumentWrite]) -> None:
        if len(writes) > self.max_batch_writes:
            raise BatchTooLargeError(
                f"Batch of {len(writes)} writes exceeds limit of {self.max_batch_writes}",
                "documents.commit",
            )
        if not writes:
            return

        async with self._transaction("documents.commit") as session:
            pending_deletes: list[str] = []
            for write in writes:
                if write.is_delete:
                    pending_deletes.append(write.path)
                    continue
                if pending_deletes:
                    await self._delete_paths(session, pending_deletes)
                    pending_deletes = []
                await self._upsert(session, write.path, write.data or {})
            if pending_deletes:
                await self._delete_paths(session, pending_deletes)

        logger.debug("documents.batch_committed", extra={"writes": len(writes)})

    async def _upsert(
        self, session: AsyncSession, path: str, data: dict[str, Any]
    ) -> None:
        collection, parent_path = split_path(path)
        doc = await session.get(Document, path)
        if doc is None:
            session.add(
                Document(
                    path=path,
                    collection=collection,
                    parent_path=parent_path,
                    data=dict(data),
                )
            )
        else:
            doc.data = dict(data)
        await session.flush()

    async def _delete_paths(self, session: AsyncSession, paths: list[str]) -> None:
        await session.execute(delete(Document).where(Document.path.in_(paths)))
