"""Shared test fixtures and configuration."""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set up test environment BEFORE importing app modules that use get_settings
_test_media_dir = tempfile.mkdtemp(prefix="account_test_media_")
os.environ["LOCAL_MEDIA_PATH"] = _test_media_dir
os.environ["STORAGE_BACKEND"] = "local"
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{_test_media_dir}/readyz.db"
os.environ["DELETION_WORKER_ENABLED"] = "false"

import app.models  # noqa: E402,F401
from app.adapters.document_store import DocumentWrite, SqlDocumentStore  # noqa: E402
from app.adapters.identity import SqlIdentityStore  # noqa: E402
from app.adapters.storage import LocalStorageAdapter  # noqa: E402
from app.auth.middleware import create_session_cookie  # noqa: E402
from app.auth.models import SessionData  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.models.identity import Identity  # noqa: E402
from app.services.deletion_jobs import DeletionJobStore  # noqa: E402
from app.services.deletion_worker import (  # noqa: E402
    DeletionWorker,
    get_deletion_job_store,
    get_deletion_worker,
    get_identity_store,
)
from app.services.store_retry import StoreRetryPolicy  # noqa: E402

# Clear the lru_cache on get_settings to pick up test env vars
get_settings.cache_clear()

OWNER = "alice"
PEER = "bob"
THIRD = "carol"


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment cleanup after all tests run."""
    yield

    import shutil

    shutil.rmtree(_test_media_dir, ignore_errors=True)


class FakeClock:
    """Controllable UTC clock for lease expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def job_store(session_factory, clock) -> DeletionJobStore:
    return DeletionJobStore(session_factory, clock=clock)


@pytest.fixture
def documents(session_factory) -> SqlDocumentStore:
    return SqlDocumentStore(session_factory)


@pytest.fixture
def identities(session_factory) -> SqlIdentityStore:
    return SqlIdentityStore(session_factory)


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    return tmp_path / "media"


@pytest.fixture
def storage(media_root: Path) -> LocalStorageAdapter:
    return LocalStorageAdapter(base_path=str(media_root))


@pytest.fixture
def retry_policy() -> StoreRetryPolicy:
    return StoreRetryPolicy(
        timeout_seconds=10.0,
        attempts=2,
        initial_backoff_seconds=0.01,
        max_backoff_seconds=0.02,
    )


@pytest.fixture
def make_worker(
    job_store, documents, storage, identities, retry_policy
) -> Callable[..., DeletionWorker]:
    """Build workers sharing the test stores; keyword args override."""

    def _make(**overrides) -> DeletionWorker:
        options = {
            "job_store": job_store,
            "documents": documents,
            "storage": storage,
            "identities": identities,
            "retry": retry_policy,
            "max_attempts": 3,
            "lease_seconds": 90.0,
            "page_size": 2,
            "batch_size": 5,
        }
        options.update(overrides)
        return DeletionWorker(**options)

    return _make


# --- Seeded account graph ---


OWNER_DOCUMENTS: dict[str, dict] = {
    # Account records
    f"users/{OWNER}": {"displayName": "Alice"},
    f"users/{OWNER}/likes/p_bob1": {"postId": "p_bob1"},
    f"users/{OWNER}/savedPosts/p_bob1": {"postId": "p_bob1"},
    f"users/{OWNER}/directConversations/dm_alice_bob": {"conversationId": "dm_alice_bob"},
    f"users/{OWNER}/followers/{PEER}": {"uid": PEER},
    f"users_public/{OWNER}": {"displayName": "Alice"},
    f"arenaUsage/{OWNER}": {"count": 3},
    f"arenaUsage/{OWNER}/days/2026-10-01": {"count": 1},
    # Peer documents referencing the owner
    f"users/{PEER}/savedPosts/p_alice1": {"postId": "p_alice1"},
    f"users/{PEER}/likes/p_alice1": {"postId": "p_alice1"},
    f"users/{PEER}/directConversations/dm_alice_bob": {"conversationId": "dm_alice_bob"},
    f"users/{PEER}/followers/{OWNER}": {"uid": OWNER},
    f"users/{PEER}/following/{OWNER}": {"uid": OWNER},
    f"users/{PEER}/friends/{OWNER}": {"uid": OWNER},
    f"users/{PEER}/blockedUsers/{OWNER}": {"blockedUid": OWNER},
    # Posts
    "posts/p_alice1": {
        "authorId": OWNER,
        "media": [
            {"path": f"posts/{OWNER}/p_alice1/photo.jpg"},
            {
                "path": f"posts/{OWNER}/videos/youtube-abc",
                "url": "https://www.youtube.com/watch?v=abc",
            },
        ],
    },
    "posts/p_alice1/comments/c1": {"authorId": PEER},
    f"posts/p_alice1/likes/{PEER}": {"uid": PEER},
    "posts/p_bob1/comments/c2": {"authorId": OWNER},
    f"posts/p_bob1/likes/{OWNER}": {"uid": OWNER},
    # Events
    "events/e_alice": {"createdBy": OWNER},
    f"events/e_alice/attendees/{PEER}": {"uid": PEER},
    f"events/e_bob/attendees/{OWNER}": {"uid": OWNER},
    # Groups and their conversations
    "groups/g_alice": {"ownerId": OWNER},
    f"groups/g_alice/members/{PEER}": {"uid": PEER},
    "conversations/grp_g_alice": {"type": "group"},
    f"conversations/grp_g_alice/members/{PEER}": {"uid": PEER},
    "conversations/grp_g_alice/messages/m1": {
        "senderId": PEER,
        "attachments": [{"path": "conversations/grp_g_alice/attachments/m1.png"}],
    },
    f"groups/g_bob/members/{OWNER}": {"uid": OWNER},
    # Direct conversation
    "conversations/dm_alice_bob": {"type": "direct"},
    f"conversations/dm_alice_bob/members/{OWNER}": {"uid": OWNER},
    f"conversations/dm_alice_bob/members/{PEER}": {"uid": PEER},
    "conversations/dm_alice_bob/messages/m2": {
        "senderId": OWNER,
        "attachments": [{"path": "conversations/dm_alice_bob/attachments/m2.png"}],
    },
    "conversations/dm_alice_bob/messages/m3": {"senderId": PEER},
    # Peer group conversation the owner participated in
    f"conversations/grp_g_bob/members/{OWNER}": {"uid": OWNER},
    "conversations/grp_g_bob/messages/m4": {"senderId": OWNER},
    # Stories, contributions, tickets, notifications, requests
    "stories/s_alice": {
        "ownerId": OWNER,
        "mediaPath": f"stories/{OWNER}/s1.mp4",
        "thumbPath": f"stories/{OWNER}/s1.jpg",
    },
    "contributions/k_alice": {
        "userId": OWNER,
        "filePath": f"contributions/{OWNER}/k1.pdf",
    },
    "support_tickets/t1": {"uid": OWNER},
    "notifications/n1": {"toUid": OWNER, "fromUid": PEER},
    "notifications/n2": {"toUid": PEER, "fromUid": OWNER},
    "follow_requests/fr1": {"fromUid": OWNER, "toUid": THIRD},
    "friend_requests/fq1": {"fromUid": THIRD, "toUid": OWNER},
    "collaboration_requests/cr1": {"fromUid": OWNER, "toUid": PEER},
    "collaboration_requests/cr2": {"fromUid": THIRD, "toUid": OWNER},
    "reports/r1": {"reporterUid": OWNER, "reportedUid": THIRD},
    "reports/r2": {"reporterUid": PEER, "reportedUid": OWNER},
    "moderation_queue/q1": {"reporterUid": PEER, "reportedUid": OWNER},
    "moderation_queue/q2": {"reporterUid": OWNER, "reportedUid": PEER},
}

# Everything here must survive deleting OWNER
PEER_DOCUMENTS: dict[str, dict] = {
    f"users/{PEER}": {"displayName": "Bob"},
    f"users_public/{PEER}": {"displayName": "Bob"},
    "posts/p_bob1": {"authorId": PEER, "commentCount": 2},
    "posts/p_bob1/comments/c3": {"authorId": PEER},
    f"posts/p_bob1/likes/{THIRD}": {"uid": THIRD},
    "events/e_bob": {"createdBy": PEER},
    f"events/e_bob/attendees/{THIRD}": {"uid": THIRD},
    "groups/g_bob": {"ownerId": PEER},
    f"groups/g_bob/members/{THIRD}": {"uid": THIRD},
    "conversations/grp_g_bob": {"type": "group"},
    f"conversations/grp_g_bob/members/{PEER}": {"uid": PEER},
    f"conversations/grp_g_bob/members/{THIRD}": {"uid": THIRD},
    "conversations/grp_g_bob/messages/m5": {"senderId": PEER},
    "stories/s_bob": {"ownerId": PEER, "mediaPath": f"stories/{PEER}/s2.mp4"},
    "notifications/n3": {"toUid": PEER, "fromUid": THIRD},
    "collaboration_requests/cr3": {"fromUid": PEER, "toUid": THIRD},
    "reports/r3": {"reporterUid": THIRD, "reportedUid": PEER},
    "moderation_queue/q3": {"reporterUid": THIRD, "reportedUid": PEER},
}

OWNER_BLOBS = [
    f"posts/{OWNER}/p_alice1/photo.jpg",
    f"profiles/{OWNER}/avatar.jpg",
    f"stories/{OWNER}/s1.mp4",
    f"stories/{OWNER}/s1.jpg",
    f"contributions/{OWNER}/k1.pdf",
    f"groups/{OWNER}/g_alice/cover.jpg",
    "conversations/grp_g_alice/attachments/m1.png",
    "conversations/dm_alice_bob/attachments/m2.png",
    f"conversations/dm_alice_bob/thumbnails/{PEER}/t.jpg",
    f"conversations/grp_g_bob/thumbnails/{OWNER}/t.jpg",
]

PEER_BLOBS = [
    f"stories/{PEER}/s2.mp4",
    f"profiles/{PEER}/avatar.jpg",
    f"conversations/grp_g_bob/thumbnails/{PEER}/t.jpg",
    # Shares a string prefix with the owner id but not the owner's folder
    f"profiles/{OWNER}x/avatar.jpg",
]


async def seed_documents(documents: SqlDocumentStore, docs: dict[str, dict]) -> None:
    writes = [DocumentWrite.set(path, data) for path, data in docs.items()]
    for start in range(0, len(writes), 100):
        await documents.commit(writes[start : start + 100])


def seed_blobs(media_root: Path, paths: list[str]) -> None:
    for path in paths:
        target = media_root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"blob")


def list_blobs(media_root: Path) -> set[str]:
    return {
        str(p.relative_to(media_root)) for p in media_root.rglob("*") if p.is_file()
    }


async def list_documents(documents: SqlDocumentStore) -> set[str]:
    paths: set[str] = set()
    for root in {path.split("/", 1)[0] for path in OWNER_DOCUMENTS | PEER_DOCUMENTS} | {
        "deletionLedger"
    }:
        cursor = None
        while True:
            page = await documents.scan_subtree(root, limit=500, start_after=cursor)
            if not page:
                break
            paths.update(snapshot.path for snapshot in page)
            cursor = page[-1].path
    return paths


@pytest_asyncio.fixture
async def seeded_account(documents, media_root, db_session: AsyncSession):
    """Owner and peer data: documents, blobs and identities."""
    await seed_documents(documents, OWNER_DOCUMENTS)
    await seed_documents(documents, PEER_DOCUMENTS)
    seed_blobs(media_root, OWNER_BLOBS + PEER_BLOBS)
    db_session.add_all(
        [
            Identity(uid=OWNER, email="alice@example.com", provider="google"),
            Identity(uid=PEER, email="bob@example.com", provider="google"),
        ]
    )
    await db_session.commit()
    return OWNER


# --- HTTP client ---


def create_auth_headers_for_user(user_id: str, email: str | None = None) -> dict[str, str]:
    """Create authentication headers for an account."""
    settings = get_settings()

    now = datetime.now(timezone.utc)
    session_data = SessionData(
        user_id=user_id,
        email=email or f"{user_id}@example.com",
        name=user_id.title(),
        provider="google",
        created_at=now,
        expires_at=now + timedelta(hours=24),
    )

    cookie_name, cookie_value = create_session_cookie(settings, session_data)
    return {"Cookie": f"{cookie_name}={cookie_value}"}


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return create_auth_headers_for_user(OWNER)


@pytest_asyncio.fixture
async def client(
    job_store, identities, make_worker
) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to the per-test stores."""
    worker = make_worker()
    app.dependency_overrides[get_deletion_job_store] = lambda: job_store
    app.dependency_overrides[get_deletion_worker] = lambda: worker
    app.dependency_overrides[get_identity_store] = lambda: identities

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
