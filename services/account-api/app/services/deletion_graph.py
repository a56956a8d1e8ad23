"""Static resource graph for account deletion and the phase planner.

Every kind of stored data an account can own or be referenced from is
declared once as a ``ResourceDescriptor``. Descriptors are tagged variants
(one dataclass per deletion strategy) with explicit ``depends_on`` edges;
the planner validates the graph, sorts it topologically and groups the
resolved steps into strictly ordered phases. Nothing here touches a store.
"""

from __future__ import annotations

import heapq
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar

from .deletion_errors import DeletionPlanError

# Dependency marker meaning "every other resource type"
ALL_RESOURCES = "*"

LEDGER_COLLECTION = "deletionLedger"

YOUTUBE_MEDIA_PATH_TOKEN = "/videos/youtube-"
_YOUTUBE_HOSTS = ("youtube.com/", "youtu.be/", "youtube-nocookie.com/")

BlobPathExtractor = Callable[[dict[str, Any]], list[str]]
BlobPrefixExtractor = Callable[[str, str], list[str]]
ConversationExtractor = Callable[[str], list[str]]


class Phase(IntEnum):
    """Deletion phases, executed strictly in this order."""

    LEAF_COLLECTIONS = 1
    PARENT_DOCUMENTS = 2
    CONVERSATIONS = 3
    CROSS_REFERENCES = 4
    BLOBS = 5
    ACCOUNT_RECORDS = 6
    IDENTITY = 7


# --- Blob reference extraction ---


def is_storage_path(path: Any) -> bool:
    """True for object-store keys; False for URLs and external media ids."""
    if not isinstance(path, str) or not path:
        return False
    if path.startswith(("http://", "https://", "youtube:")):
        return False
    return True


def story_media_paths(data: dict[str, Any]) -> list[str]:
    return [
        path
        for path in (data.get("mediaPath"), data.get("thumbPath"))
        if is_storage_path(path)
    ]


def post_media_paths(data: dict[str, Any]) -> list[str]:
    media = data.get("media")
    if not isinstance(media, list):
        return []
    paths = []
    for item in media:
        if not isinstance(item, dict) or not is_storage_path(item.get("path")):
            continue
        path = item["path"]
        url = item.get("url") if isinstance(item.get("url"), str) else ""
        # Embedded YouTube media has a path-like id but no stored object
        if YOUTUBE_MEDIA_PATH_TOKEN in path or any(host in url for host in _YOUTUBE_HOSTS):
            continue
        paths.append(path)
    return paths


def contribution_file_paths(data: dict[str, Any]) -> list[str]:
    path = data.get("filePath")
    return [path] if is_storage_path(path) else []


def message_attachment_paths(data: dict[str, Any]) -> list[str]:
    attachments = data.get("attachments")
    if not isinstance(attachments, list):
        return []
    return [
        item["path"]
        for item in attachments
        if isinstance(item, dict) and is_storage_path(item.get("path"))
    ]


def message_thumbnail_prefixes(path: str, owner_id: str) -> list[str]:
    segments = path.split("/")
    if len(segments) >= 2 and segments[0] == "conversations":
        return [f"conversations/{segments[1]}/thumbnails/{owner_id}/"]
    return []


def group_storage_prefixes(path: str, owner_id: str) -> list[str]:
    group_id = path.rsplit("/", 1)[-1]
    return [f"groups/{owner_id}/{group_id}/"]


def group_conversation_ids(path: str) -> list[str]:
    return [f"grp_{path.rsplit('/', 1)[-1]}"]


# --- Descriptor variants ---


@dataclass(frozen=True, kw_only=True)
class ResourceDescriptor:
    """A declared resource type with its deletion dependencies."""

    strategy: ClassVar[str] = "abstract"

    resource_type: str
    phase: Phase
    depends_on: tuple[str, ...] = ()

    def locator(self, owner_id: str) -> str:
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class CollectionScan(ResourceDescriptor):
    """Documents in every ``collection`` (any parent) whose ``field`` is the owner."""

    strategy: ClassVar[str] = "collectionScan"

    collection: str
    field: str
    root: str | None = None
    blob_paths: BlobPathExtractor | None = None
    blob_prefixes: BlobPrefixExtractor | None = None

    def locator(self, owner_id: str) -> str:
        scope = f"{self.root}/**/" if self.root else "**/"
        return f"{scope}{self.collection}[{self.field}=={owner_id}]"


@dataclass(frozen=True, kw_only=True)
class ChildCollection(ResourceDescriptor):
    """Every document in ``child_collection`` under parents the owner owns."""

    strategy: ClassVar[str] = "childCollection"

    parent_collection: str
    parent_field: str
    child_collection: str

    def locator(self, owner_id: str) -> str:
        return (
            f"{self.parent_collection}[{self.parent_field}=={owner_id}]"
            f"/{self.child_collection}/*"
        )


@dataclass(frozen=True, kw_only=True)
class OwnedDocuments(ResourceDescriptor):
    """Top-level documents owned by the account, removed with their subtree.

    Blob references and dependent keys are written to the deletion ledger in
    the same atomic batch that removes the document.
    """

    strategy: ClassVar[str] = "ownedDocuments"

    collection: str
    fields: tuple[str, ...]
    blob_paths: BlobPathExtractor | None = None
    blob_prefixes: BlobPrefixExtractor | None = None
    ledger_ids: str | None = None
    conversations: ConversationExtractor | None = None

    def locator(self, owner_id: str) -> str:
        filters = "||".join(f"{f}=={owner_id}" for f in self.fields)
        return f"{self.collection}[{filters}]"


@dataclass(frozen=True, kw_only=True)
class ConversationMembership(ResourceDescriptor):
    """The owner's member documents in conversations; each conversation is ledgered."""

    strategy: ClassVar[str] = "conversationMembership"

    root: str = "conversations"
    collection: str = "members"
    field: str = "uid"

    def locator(self, owner_id: str) -> str:
        return f"{self.root}/*/{self.collection}[{self.field}=={owner_id}]"


@dataclass(frozen=True, kw_only=True)
class RetiredConversations(ResourceDescriptor):
    """Ledgered conversations, deleted once no members remain (or when forced)."""

    strategy: ClassVar[str] = "conversationCleanup"

    root: str = "conversations"
    members_collection: str = "members"
    messages_collection: str = "messages"

    def locator(self, owner_id: str) -> str:
        return f"{LEDGER_COLLECTION}/{owner_id}/conversations/*"


@dataclass(frozen=True, kw_only=True)
class LedgerReferences(ResourceDescriptor):
    """Peer documents that point at ledgered (already deleted) resources."""

    strategy: ClassVar[str] = "ledgerReferences"

    ledger_collection: str
    targets: tuple[tuple[str, str], ...]

    def locator(self, owner_id: str) -> str:
        targets = ",".join(f"{c}.{f}" for c, f in self.targets)
        return f"{LEDGER_COLLECTION}/{owner_id}/{self.ledger_collection}/* -> {targets}"


@dataclass(frozen=True, kw_only=True)
class LedgerBlobs(ResourceDescriptor):
    """Blob paths and prefixes recorded while their documents were deleted."""

    strategy: ClassVar[str] = "ledgerBlobs"

    ledger_collection: str = "blobs"

    def locator(self, owner_id: str) -> str:
        return f"{LEDGER_COLLECTION}/{owner_id}/{self.ledger_collection}/*"


@dataclass(frozen=True, kw_only=True)
class BlobPrefix(ResourceDescriptor):
    """Blob prefixes derived from the owner id."""

    strategy: ClassVar[str] = "blobPrefix"

    prefixes: tuple[str, ...]

    def resolve(self, owner_id: str) -> list[str]:
        return [prefix.format(owner_id=owner_id) for prefix in self.prefixes]

    def locator(self, owner_id: str) -> str:
        return ",".join(self.resolve(owner_id))


@dataclass(frozen=True, kw_only=True)
class SingleDocument(ResourceDescriptor):
    """One document addressed directly by the owner id."""

    strategy: ClassVar[str] = "singleDoc"

    path: str
    recursive: bool = False

    def locator(self, owner_id: str) -> str:
        return self.path.format(owner_id=owner_id)


@dataclass(frozen=True, kw_only=True)
class IdentityResource(ResourceDescriptor):
    """The authentication identity."""

    strategy: ClassVar[str] = "identity"

    def locator(self, owner_id: str) -> str:
        return f"identity:{owner_id}"


# --- Static graph ---

RESOURCE_GRAPH: tuple[ResourceDescriptor, ...] = (
    # 1. Owned leaf collections
    ChildCollection(
        resource_type="postComments",
        phase=Phase.LEAF_COLLECTIONS,
        parent_collection="posts",
        parent_field="authorId",
        child_collection="comments",
    ),
    ChildCollection(
        resource_type="postLikes",
        phase=Phase.LEAF_COLLECTIONS,
        parent_collection="posts",
        parent_field="authorId",
        child_collection="likes",
    ),
    ChildCollection(
        resource_type="eventAttendees",
        phase=Phase.LEAF_COLLECTIONS,
        parent_collection="events",
        parent_field="createdBy",
        child_collection="attendees",
    ),
    ChildCollection(
        resource_type="groupMembers",
        phase=Phase.LEAF_COLLECTIONS,
        parent_collection="groups",
        parent_field="ownerId",
        child_collection="members",
    ),
    CollectionScan(
        resource_type="authoredComments",
        phase=Phase.LEAF_COLLECTIONS,
        collection="comments",
        field="authorId",
    ),
    CollectionScan(
        resource_type="authoredLikes",
        phase=Phase.LEAF_COLLECTIONS,
        collection="likes",
        field="uid",
    ),
    CollectionScan(
        resource_type="eventAttendance",
        phase=Phase.LEAF_COLLECTIONS,
        collection="attendees",
        field="uid",
    ),
    CollectionScan(
        resource_type="groupMemberships",
        phase=Phase.LEAF_COLLECTIONS,
        collection="members",
        field="uid",
        root="groups",
    ),
    CollectionScan(
        resource_type="followerEdges",
        phase=Phase.LEAF_COLLECTIONS,
        collection="followers",
        field="uid",
    ),
    CollectionScan(
        resource_type="followingEdges",
        phase=Phase.LEAF_COLLECTIONS,
        collection="following",
        field="uid",
    ),
    CollectionScan(
        resource_type="friendEdges",
        phase=Phase.LEAF_COLLECTIONS,
        collection="friends",
        field="uid",
    ),
    # 2. Owned parent documents
    OwnedDocuments(
        resource_type="post",
        phase=Phase.PARENT_DOCUMENTS,
        depends_on=("postComments", "postLikes"),
        collection="posts",
        fields=("authorId",),
        blob_paths=post_media_paths,
        ledger_ids="posts",
    ),
    OwnedDocuments(
        resource_type="event",
        phase=Phase.PARENT_DOCUMENTS,
        depends_on=("eventAttendees",),
        collection="events",
        fields=("createdBy",),
    ),
    OwnedDocuments(
        resource_type="group",
        phase=Phase.PARENT_DOCUMENTS,
        depends_on=("groupMembers",),
        collection="groups",
        fields=("ownerId",),
        blob_prefixes=group_storage_prefixes,
        conversations=group_conversation_ids,
    ),
    OwnedDocuments(
        resource_type="story",
        phase=Phase.PARENT_DOCUMENTS,
        collection="stories",
        fields=("ownerId",),
        blob_paths=story_media_paths,
    ),
    OwnedDocuments(
        resource_type="contribution",
        phase=Phase.PARENT_DOCUMENTS,
        collection="contributions",
        fields=("userId",),
        blob_paths=contribution_file_paths,
    ),
    OwnedDocuments(
        resource_type="supportTicket",
        phase=Phase.PARENT_DOCUMENTS,
        collection="support_tickets",
        fields=("uid",),
    ),
    OwnedDocuments(
        resource_type="collaboration",
        phase=Phase.PARENT_DOCUMENTS,
        collection="collaborations",
        fields=("authorId",),
    ),
    OwnedDocuments(
        resource_type="arenaDebate",
        phase=Phase.PARENT_DOCUMENTS,
        collection="arenaDebates",
        fields=("createdBy",),
    ),
    OwnedDocuments(
        resource_type="notification",
        phase=Phase.PARENT_DOCUMENTS,
        collection="notifications",
        fields=("toUid", "fromUid"),
    ),
    OwnedDocuments(
        resource_type="followRequest",
        phase=Phase.PARENT_DOCUMENTS,
        collection="follow_requests",
        fields=("fromUid", "toUid"),
    ),
    OwnedDocuments(
        resource_type="friendRequest",
        phase=Phase.PARENT_DOCUMENTS,
        collection="friend_requests",
        fields=("fromUid", "toUid"),
    ),
    OwnedDocuments(
        resource_type="groupRequest",
        phase=Phase.PARENT_DOCUMENTS,
        collection="group_requests",
        fields=("fromUid", "toUid"),
    ),
    OwnedDocuments(
        resource_type="collaborationRequest",
        phase=Phase.PARENT_DOCUMENTS,
        collection="collaboration_requests",
        fields=("fromUid", "toUid"),
    ),
    OwnedDocuments(
        resource_type="report",
        phase=Phase.PARENT_DOCUMENTS,
        collection="reports",
        fields=("reporterUid", "reportedUid"),
    ),
    OwnedDocuments(
        resource_type="moderationQueueEntry",
        phase=Phase.PARENT_DOCUMENTS,
        collection="moderation_queue",
        fields=("reporterUid", "reportedUid"),
    ),
    # 3. Conversations
    CollectionScan(
        resource_type="conversationMessages",
        phase=Phase.CONVERSATIONS,
        collection="messages",
        field="senderId",
        root="conversations",
        blob_paths=message_attachment_paths,
        blob_prefixes=message_thumbnail_prefixes,
    ),
    ConversationMembership(
        resource_type="conversationMembership",
        phase=Phase.CONVERSATIONS,
    ),
    RetiredConversations(
        resource_type="conversation",
        phase=Phase.CONVERSATIONS,
        depends_on=("conversationMessages", "conversationMembership", "group"),
    ),
    # 4. Cross-references owned by other accounts
    LedgerReferences(
        resource_type="postReferences",
        phase=Phase.CROSS_REFERENCES,
        depends_on=("post",),
        ledger_collection="posts",
        targets=(("savedPosts", "postId"), ("likes", "postId")),
    ),
    LedgerReferences(
        resource_type="conversationReferences",
        phase=Phase.CROSS_REFERENCES,
        depends_on=("conversation",),
        ledger_collection="deletedConversations",
        targets=(("directConversations", "conversationId"),),
    ),
    CollectionScan(
        resource_type="blockedByOthers",
        phase=Phase.CROSS_REFERENCES,
        collection="blockedUsers",
        field="blockedUid",
    ),
    # 5. Blobs
    LedgerBlobs(
        resource_type="ledgerBlobs",
        phase=Phase.BLOBS,
        depends_on=(
            "post",
            "story",
            "contribution",
            "group",
            "conversationMessages",
            "conversation",
        ),
    ),
    BlobPrefix(
        resource_type="ownerBlobPrefixes",
        phase=Phase.BLOBS,
        depends_on=("post", "story", "contribution", "group"),
        prefixes=(
            "profiles/{owner_id}/",
            "posts/{owner_id}/",
            "stories/{owner_id}/",
            "collections/{owner_id}/",
            "contributions/{owner_id}/",
            "groups/{owner_id}/",
        ),
    ),
    # 6. Top-level account records
    SingleDocument(
        resource_type="userProfile",
        phase=Phase.ACCOUNT_RECORDS,
        path="users/{owner_id}",
        recursive=True,
    ),
    SingleDocument(
        resource_type="publicProfile",
        phase=Phase.ACCOUNT_RECORDS,
        path="users_public/{owner_id}",
    ),
    SingleDocument(
        resource_type="arenaUsage",
        phase=Phase.ACCOUNT_RECORDS,
        path="arenaUsage/{owner_id}",
        recursive=True,
    ),
    SingleDocument(
        resource_type="deletionLedger",
        phase=Phase.ACCOUNT_RECORDS,
        depends_on=(
            "ledgerBlobs",
            "postReferences",
            "conversationReferences",
            "conversation",
        ),
        path=LEDGER_COLLECTION + "/{owner_id}",
        recursive=True,
    ),
    # 7. Authentication identity
    IdentityResource(
        resource_type="identity",
        phase=Phase.IDENTITY,
        depends_on=(ALL_RESOURCES,),
    ),
)


# --- Planning ---


@dataclass(frozen=True)
class DeletionStep:
    """A resolved deletion action for one owner. Never persisted."""

    owner_id: str
    descriptor: ResourceDescriptor
    locator: str

    @property
    def resource_type(self) -> str:
        return self.descriptor.resource_type

    @property
    def phase(self) -> Phase:
        return self.descriptor.phase

    @property
    def strategy(self) -> str:
        return self.descriptor.strategy


@dataclass(frozen=True)
class DeletionPhase:
    phase: Phase
    steps: tuple[DeletionStep, ...] = field(default_factory=tuple)


class GraphPlanner:
    """Validates the resource graph once and resolves per-owner plans."""

    def __init__(self, descriptors: Sequence[ResourceDescriptor] = RESOURCE_GRAPH):
        self._ordered = self._topological_order(descriptors)

    @property
    def resource_types(self) -> list[str]:
        return [d.resource_type for d in self._ordered]

    def plan(self, owner_id: str) -> list[DeletionPhase]:
        """Ordered phases of steps for ``owner_id``.

        Within a phase steps follow the topological order, but any order
        is valid; across phases the order is strict.
        """
        phases: list[DeletionPhase] = []
        for phase in Phase:
            steps = tuple(
                DeletionStep(
                    owner_id=owner_id,
                    descriptor=descriptor,
                    locator=descriptor.locator(owner_id),
                )
                for descriptor in self._ordered
                if descriptor.phase is phase
            )
            if steps:
                phases.append(DeletionPhase(phase=phase, steps=steps))
        return phases

    @staticmethod
    def _topological_order(
        descriptors: Sequence[ResourceDescriptor],
    ) -> list[ResourceDescriptor]:
        by_type: dict[str, ResourceDescriptor] = {}
        position: dict[str, int] = {}
        for index, descriptor in enumerate(descriptors):
            if descriptor.resource_type in by_type:
                raise DeletionPlanError(
                    f"Duplicate resource type: {descriptor.resource_type}"
                )
            by_type[descriptor.resource_type] = descriptor
            position[descriptor.resource_type] = index

        edges: dict[str, set[str]] = {name: set() for name in by_type}
        for descriptor in descriptors:
            name = descriptor.resource_type
            deps: set[str] = set()
            for dep in descriptor.depends_on:
                if dep == ALL_RESOURCES:
                    deps.update(other for other in by_type if other != name)
                    continue
                if dep not in by_type:
                    raise DeletionPlanError(f"{name} depends on unknown resource {dep}")
                if dep == name:
                    raise DeletionPlanError(f"{name} depends on itself")
                if by_type[dep].phase > descriptor.phase:
                    raise DeletionPlanError(
                        f"{name} (phase {descriptor.phase.value}) depends on {dep} "
                        f"in later phase {by_type[dep].phase.value}"
                    )
                deps.add(dep)
            edges[name] = deps

        dependents: dict[str, list[str]] = {name: [] for name in by_type}
        remaining = {name: len(deps) for name, deps in edges.items()}
        for name, deps in edges.items():
            for dep in deps:
                dependents[dep].append(name)

        # Kahn's algorithm, stable by (phase, declaration order)
        ready = [
            (by_type[name].phase.value, position[name], name)
            for name, count in remaining.items()
            if count == 0
        ]
        heapq.heapify(ready)
        ordered: list[ResourceDescriptor] = []
        while ready:
            _, _, name = heapq.heappop(ready)
            ordered.append(by_type[name])
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(
                        ready,
                        (by_type[dependent].phase.value, position[dependent], dependent),
                    )

        if len(ordered) != len(by_type):
            cyclic = sorted(name for name, count in remaining.items() if count > 0)
            raise DeletionPlanError(f"Dependency cycle among: {', '.join(cyclic)}")
        return ordered
