"""Deleters that execute planned deletion steps against the stores.

Each strategy pages through its query, commits deletes in bounded atomic
batches and calls the context checkpoint between pages so the worker can
extend its lease. Blob references and dependent keys discovered while a
document is deleted go to the deletion ledger in the same batch as that
delete, which lets a re-run after a crash find work whose source document
is already gone.
"""

import hashlib
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..adapters.document_store import (
    DocumentQuery,
    DocumentSnapshot,
    DocumentStore,
    DocumentWrite,
)
from ..adapters.identity import IdentityStore
from ..adapters.storage import StorageAdapter
from ..observability.metrics import ACCOUNT_DELETION_RESOURCES_DELETED
from .deletion_errors import DeletionPlanError
from .deletion_graph import (
    LEDGER_COLLECTION,
    BlobPrefix,
    ChildCollection,
    CollectionScan,
    ConversationMembership,
    DeletionStep,
    IdentityResource,
    LedgerBlobs,
    LedgerReferences,
    OwnedDocuments,
    ResourceDescriptor,
    RetiredConversations,
    SingleDocument,
    message_attachment_paths,
)
from .store_retry import StoreRetryPolicy

logger = logging.getLogger(__name__)

DIRECT_CONVERSATION_POLICIES = ("delete", "retain")

Checkpoint = Callable[[], Awaitable[None]]


def ledger_root(owner_id: str) -> str:
    return f"{LEDGER_COLLECTION}/{owner_id}"


def ledger_path(owner_id: str, kind: str, key: str) -> str:
    return f"{ledger_root(owner_id)}/{kind}/{key}"


def blob_ledger_write(
    owner_id: str, *, path: str | None = None, prefix: str | None = None
) -> DocumentWrite:
    """Ledger entry for a blob object (``path``) or a blob prefix."""
    if (path is None) == (prefix is None):
        raise ValueError("Exactly one of path or prefix is required")
    kind, value = ("path", path) if path is not None else ("prefix", prefix)
    key = hashlib.sha1(f"{kind}:{value}".encode()).hexdigest()
    return DocumentWrite.set(ledger_path(owner_id, "blobs", key), {kind: value})


def is_direct_conversation(conversation_id: str, data: dict[str, Any] | None) -> bool:
    if conversation_id.startswith("dm_"):
        return True
    return bool(data) and data.get("type") == "direct"


@dataclass
class DeletionContext:
    """Stores, limits and bookkeeping shared by all steps of one worker pass."""

    owner_id: str
    documents: DocumentStore
    storage: StorageAdapter
    identities: IdentityStore
    retry: StoreRetryPolicy
    page_size: int = 200
    batch_size: int = 400
    direct_conversation_policy: str = "delete"
    checkpoint: Checkpoint | None = None
    counts: Counter = field(default_factory=Counter)

    async def heartbeat(self) -> None:
        if self.checkpoint is not None:
            await self.checkpoint()

    def record(self, resource_type: str, deleted: int) -> None:
        if deleted <= 0:
            return
        self.counts[resource_type] += deleted
        ACCOUNT_DELETION_RESOURCES_DELETED.labels(resource_type).inc(deleted)

    # Store calls, each under the per-operation timeout and retry policy

    async def get(self, path: str) -> DocumentSnapshot | None:
        return await self.retry.call("documents.get", lambda: self.documents.get(path))

    async def scan(
        self, query: DocumentQuery, start_after: str | None = None
    ) -> list[DocumentSnapshot]:
        return await self.retry.call(
            "documents.scan",
            lambda: self.documents.scan(query, self.page_size, start_after),
        )

    async def scan_subtree(
        self, path: str, start_after: str | None = None
    ) -> list[DocumentSnapshot]:
        return await self.retry.call(
            "documents.scan_subtree",
            lambda: self.documents.scan_subtree(path, self.page_size, start_after),
        )

    async def commit(self, writes: Sequence[DocumentWrite]) -> None:
        await self.retry.call("documents.commit", lambda: self.documents.commit(writes))

    async def pages(self, query: DocumentQuery):
        """Yield result pages of ``query``, checkpointing after each one."""
        cursor = None
        while True:
            page = await self.scan(query, cursor)
            if not page:
                return
            yield page
            await self.heartbeat()
            if len(page) < self.page_size:
                return
            cursor = page[-1].path

    async def subtree_pages(self, path: str):
        cursor = None
        while True:
            page = await self.scan_subtree(path, cursor)
            if not page:
                return
            yield page
            await self.heartbeat()
            if len(page) < self.page_size:
                return
            cursor = page[-1].path


class BatchWriter:
    """Accumulates write units and commits them in bounded atomic batches.

    A unit (a delete together with its ledger entries) is never split
    across two batches.
    """

    def __init__(self, ctx: DeletionContext, resource_type: str):
        self.ctx = ctx
        self.resource_type = resource_type
        self._writes: list[DocumentWrite] = []
        self._deleted = 0

    async def add(self, unit: Sequence[DocumentWrite], deleted: int = 1) -> None:
        if self._writes and len(self._writes) + len(unit) > self.ctx.batch_size:
            await self.flush()
        self._writes.extend(unit)
        self._deleted += deleted

    async def delete(self, path: str) -> None:
        await self.add([DocumentWrite.delete(path)])

    async def flush(self) -> None:
        if not self._writes:
            return
        writes, deleted = self._writes, self._deleted
        self._writes, self._deleted = [], 0
        await self.ctx.commit(writes)
        self.ctx.record(self.resource_type, deleted)


def _blob_writes(
    ctx: DeletionContext,
    snapshot: DocumentSnapshot,
    blob_paths: Callable[[dict[str, Any]], list[str]] | None,
    blob_prefixes: Callable[[str, str], list[str]] | None,
) -> list[DocumentWrite]:
    writes: list[DocumentWrite] = []
    if blob_paths is not None:
        for path in dict.fromkeys(blob_paths(snapshot.data)):
            writes.append(blob_ledger_write(ctx.owner_id, path=path))
    if blob_prefixes is not None:
        for prefix in dict.fromkeys(blob_prefixes(snapshot.path, ctx.owner_id)):
            writes.append(blob_ledger_write(ctx.owner_id, prefix=prefix))
    return writes


async def _delete_descendants(
    ctx: DeletionContext,
    path: str,
    writer: BatchWriter,
    on_descendant: Callable[[DocumentSnapshot], list[DocumentWrite]] | None = None,
) -> None:
    """Delete everything below ``path`` and flush, leaving the document itself."""
    async for page in ctx.subtree_pages(path):
        for snapshot in page:
            unit = on_descendant(snapshot) if on_descendant else []
            unit.append(DocumentWrite.delete(snapshot.path))
            await writer.add(unit)
    await writer.flush()


# --- Strategies ---

D = TypeVar("D", bound=ResourceDescriptor)


def _descriptor(step: DeletionStep, kind: type[D]) -> D:
    descriptor = step.descriptor
    if not isinstance(descriptor, kind):
        raise DeletionPlanError(
            f"{step.resource_type} is a {type(descriptor).__name__}, not a {kind.__name__}"
        )
    return descriptor



async def delete_collection_scan(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, CollectionScan)
    writer = BatchWriter(ctx, step.resource_type)
    query = DocumentQuery.group(
        descriptor.collection,
        field=descriptor.field,
        value=ctx.owner_id,
        root=descriptor.root,
    )
    async for page in ctx.pages(query):
        for snapshot in page:
            unit = _blob_writes(
                ctx, snapshot, descriptor.blob_paths, descriptor.blob_prefixes
            )
            unit.append(DocumentWrite.delete(snapshot.path))
            await writer.add(unit)
        await writer.flush()


async def delete_child_collection(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, ChildCollection)
    writer = BatchWriter(ctx, step.resource_type)
    parents = DocumentQuery(
        collection=descriptor.parent_collection,
        field=descriptor.parent_field,
        value=ctx.owner_id,
    )
    async for page in ctx.pages(parents):
        for parent in page:
            children = DocumentQuery.children(parent.path, descriptor.child_collection)
            async for child_page in ctx.pages(children):
                for child in child_page:
                    await writer.delete(child.path)
        await writer.flush()


async def delete_owned_documents(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, OwnedDocuments)
    writer = BatchWriter(ctx, step.resource_type)
    # Descendants are counted separately from the owned documents themselves
    subtree_writer = BatchWriter(ctx, f"{step.resource_type}Subtree")

    for owner_field in descriptor.fields:
        query = DocumentQuery(
            collection=descriptor.collection,
            field=owner_field,
            value=ctx.owner_id,
        )
        async for page in ctx.pages(query):
            for snapshot in page:
                await _delete_descendants(ctx, snapshot.path, subtree_writer)
                unit = _blob_writes(
                    ctx, snapshot, descriptor.blob_paths, descriptor.blob_prefixes
                )
                if descriptor.ledger_ids:
                    unit.append(
                        DocumentWrite.set(
                            ledger_path(ctx.owner_id, descriptor.ledger_ids, snapshot.id),
                            {"id": snapshot.id},
                        )
                    )
                if descriptor.conversations:
                    for conversation_id in descriptor.conversations(snapshot.path):
                        unit.append(
                            DocumentWrite.set(
                                ledger_path(ctx.owner_id, "conversations", conversation_id),
                                {"conversationId": conversation_id, "force": True},
                            )
                        )
                unit.append(DocumentWrite.delete(snapshot.path))
                await writer.add(unit)
            await writer.flush()


async def delete_conversation_memberships(
    ctx: DeletionContext, step: DeletionStep
) -> None:
    descriptor = _descriptor(step, ConversationMembership)
    writer = BatchWriter(ctx, step.resource_type)
    query = DocumentQuery.group(
        descriptor.collection,
        field=descriptor.field,
        value=ctx.owner_id,
        root=descriptor.root,
    )
    async for page in ctx.pages(query):
        for membership in page:
            conversation_id = membership.segments[1]
            conversation = await ctx.get(f"{descriptor.root}/{conversation_id}")
            force = ctx.direct_conversation_policy == "delete" and is_direct_conversation(
                conversation_id, conversation.data if conversation else None
            )
            entry_path = ledger_path(ctx.owner_id, "conversations", conversation_id)
            existing = await ctx.get(entry_path)
            if existing is not None and existing.data.get("force"):
                force = True
            await writer.add(
                [
                    DocumentWrite.set(
                        entry_path,
                        {"conversationId": conversation_id, "force": force},
                    ),
                    DocumentWrite.delete(membership.path),
                ]
            )
        await writer.flush()


async def delete_retired_conversations(
    ctx: DeletionContext, step: DeletionStep
) -> None:
    """Delete ledgered conversations nobody is left in, or that must go anyway."""
    descriptor = _descriptor(step, RetiredConversations)
    writer = BatchWriter(ctx, step.resource_type)
    subtree_writer = BatchWriter(ctx, "conversationContent")

    def message_blobs(snapshot: DocumentSnapshot) -> list[DocumentWrite]:
        if snapshot.segments[-2] != descriptor.messages_collection:
            return []
        return [
            blob_ledger_write(ctx.owner_id, path=path)
            for path in dict.fromkeys(message_attachment_paths(snapshot.data))
        ]

    entries = DocumentQuery.children(ledger_root(ctx.owner_id), "conversations")
    async for page in ctx.pages(entries):
        for entry in page:
            conversation_id = entry.data.get("conversationId") or entry.id
            conversation_path = f"{descriptor.root}/{conversation_id}"

            if not entry.data.get("force"):
                members = await ctx.retry.call(
                    "documents.scan",
                    lambda: ctx.documents.scan(
                        DocumentQuery.children(
                            conversation_path, descriptor.members_collection
                        ),
                        1,
                    ),
                )
                if members:
                    logger.info(
                        "account_deletion.conversation.retained",
                        extra={
                            "owner_id": ctx.owner_id,
                            "conversation_id": conversation_id,
                        },
                    )
                    await writer.add([DocumentWrite.delete(entry.path)], deleted=0)
                    continue

            await writer.flush()
            await _delete_descendants(
                ctx, conversation_path, subtree_writer, on_descendant=message_blobs
            )
            await writer.add(
                [
                    blob_ledger_write(
                        ctx.owner_id, prefix=f"{descriptor.root}/{conversation_id}/"
                    ),
                    DocumentWrite.set(
                        ledger_path(ctx.owner_id, "deletedConversations", conversation_id),
                        {"id": conversation_id},
                    ),
                    DocumentWrite.delete(conversation_path),
                    DocumentWrite.delete(entry.path),
                ]
            )
        await writer.flush()


async def delete_ledger_references(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, LedgerReferences)
    writer = BatchWriter(ctx, step.resource_type)
    entries = DocumentQuery.children(
        ledger_root(ctx.owner_id), descriptor.ledger_collection
    )
    async for page in ctx.pages(entries):
        for entry in page:
            for collection, key_field in descriptor.targets:
                query = DocumentQuery.group(collection, field=key_field, value=entry.id)
                async for refs in ctx.pages(query):
                    for ref in refs:
                        await writer.delete(ref.path)
            # References must be gone before the entry that leads to them
            await writer.flush()
            await writer.add([DocumentWrite.delete(entry.path)], deleted=0)
        await writer.flush()


async def delete_ledger_blobs(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, LedgerBlobs)
    writer = BatchWriter(ctx, step.resource_type)
    entries = DocumentQuery.children(
        ledger_root(ctx.owner_id), descriptor.ledger_collection
    )
    async for page in ctx.pages(entries):
        removed = 0
        for entry in page:
            path = entry.data.get("path")
            prefix = entry.data.get("prefix")
            if isinstance(path, str) and path:
                await ctx.retry.call_blocking(
                    "storage.delete_file", ctx.storage.delete_file, path
                )
                removed += 1
            elif isinstance(prefix, str) and prefix:
                removed += await ctx.retry.call_blocking(
                    "storage.delete_prefix", ctx.storage.delete_prefix, prefix
                )
            await writer.add([DocumentWrite.delete(entry.path)], deleted=0)
        await writer.flush()
        ctx.record(step.resource_type, removed)


async def delete_blob_prefixes(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, BlobPrefix)
    for prefix in descriptor.resolve(ctx.owner_id):
        removed = await ctx.retry.call_blocking(
            "storage.delete_prefix", ctx.storage.delete_prefix, prefix
        )
        ctx.record(step.resource_type, removed)
        await ctx.heartbeat()


async def delete_single_document(ctx: DeletionContext, step: DeletionStep) -> None:
    descriptor = _descriptor(step, SingleDocument)
    path = step.locator
    writer = BatchWriter(ctx, step.resource_type)
    if descriptor.recursive:
        await _delete_descendants(ctx, path, writer)
    existing = await ctx.get(path)
    if existing is not None:
        await writer.delete(path)
        await writer.flush()


async def delete_identity(ctx: DeletionContext, step: DeletionStep) -> None:
    removed = await ctx.retry.call(
        "identities.delete", lambda: ctx.identities.delete_identity(ctx.owner_id)
    )
    ctx.record(step.resource_type, 1 if removed else 0)


DELETERS: dict[str, Callable[[DeletionContext, DeletionStep], Awaitable[None]]] = {
    CollectionScan.strategy: delete_collection_scan,
    ChildCollection.strategy: delete_child_collection,
    OwnedDocuments.strategy: delete_owned_documents,
    ConversationMembership.strategy: delete_conversation_memberships,
    RetiredConversations.strategy: delete_retired_conversations,
    LedgerReferences.strategy: delete_ledger_references,
    LedgerBlobs.strategy: delete_ledger_blobs,
    BlobPrefix.strategy: delete_blob_prefixes,
    SingleDocument.strategy: delete_single_document,
    IdentityResource.strategy: delete_identity,
}


async def execute_step(ctx: DeletionContext, step: DeletionStep) -> None:
    """Run one planned step. Safe to repeat: absence is success."""
    deleter = DELETERS.get(step.strategy)
    if deleter is None:
        raise DeletionPlanError(f"No deleter for strategy {step.strategy}")
    await deleter(ctx, step)
