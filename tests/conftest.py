"""Shared fixtures: sqlite database, in-memory bucket and wired service instances."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, Mapping

import pytest
from sqlalchemy import delete

# Configure the application before any mediahub module reads settings.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_mediahub.db")
os.environ.setdefault("KV_BACKEND", "memory")
os.environ.setdefault("DISABLE_RATE_LIMIT_SWEEP", "true")

from mediahub.database import Base, SessionLocal, engine  # noqa: E402
from mediahub.models import DraftPost, MediaAsset, Post  # noqa: E402
from mediahub.services.access_control import AccessMiddleware  # noqa: E402
from mediahub.services.cache_service import CacheService  # noqa: E402
from mediahub.services.deletion_service import CascadeDeletionService  # noqa: E402
from mediahub.services.kv_store import InMemoryKeyValueStore  # noqa: E402
from mediahub.services.media_service import ImageService  # noqa: E402
from mediahub.services.metadata_service import MetadataService, resolve_storage_key  # noqa: E402
from mediahub.services.object_storage import StorageError, StoredObject  # noqa: E402
from mediahub.services.rate_limiter import InMemoryRateLimiter  # noqa: E402
from mediahub.services.search_service import SearchIndex, SearchService  # noqa: E402


class FakeStorage:
    """Dict-backed stand-in for :class:`ObjectStorage`."""

    bucket = "test-bucket"

    def __init__(self) -> None:
        self.objects: dict[str, StoredObject] = {}
        self.deleted: list[str] = []
        self.fail_deletes: set[str] = set()

    def seed(self, key: str, body: bytes = b"image-bytes", content_type: str = "image/jpeg") -> None:
        self.objects[key] = StoredObject(key=key, size=len(body), content_type=content_type, body=body)

    async def put(self, key, body, *, content_type=None, metadata=None) -> None:
        self.objects[key] = StoredObject(
            key=key, size=len(body), content_type=content_type, metadata=dict(metadata or {}), body=body
        )

    async def head(self, key: str) -> StoredObject | None:
        stored = self.objects.get(key)
        if stored is None:
            return None
        return StoredObject(
            key=key, size=stored.size, content_type=stored.content_type, metadata=dict(stored.metadata)
        )

    async def get(self, key: str) -> StoredObject | None:
        return self.objects.get(key)

    async def delete(self, key: str) -> None:
        if key in self.fail_deletes:
            raise StorageError(f"Unable to delete object {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def list(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))

    async def replace_metadata(self, key: str, metadata: Mapping[str, str]) -> None:
        stored = self.objects[key]
        self.objects[key] = StoredObject(
            key=key, size=stored.size, content_type=stored.content_type, metadata=dict(metadata), body=stored.body
        )

    async def create_presigned_url(self, key, method, *, expires_in=3600, content_type=None, headers=None) -> str:
        return f"https://{self.bucket}.storage.test/{key}?method={method.upper()}&expires={expires_in}"


@dataclass
class ServiceBundle:
    storage: FakeStorage
    kv: InMemoryKeyValueStore
    cache: CacheService
    index: SearchIndex
    search: SearchService
    metadata: MetadataService
    access: AccessMiddleware
    rate_limiter: InMemoryRateLimiter
    deletion: CascadeDeletionService
    images: ImageService


def build_services(storage: FakeStorage | None = None) -> ServiceBundle:
    storage = storage or FakeStorage()
    kv = InMemoryKeyValueStore()
    cache = CacheService(kv)
    index = SearchIndex(kv)
    metadata = MetadataService(kv, cache, index, storage=storage, key_resolver=resolve_storage_key)
    access = AccessMiddleware()
    rate_limiter = InMemoryRateLimiter()
    deletion = CascadeDeletionService(
        storage=storage,
        metadata=metadata,
        cache=cache,
        access=access,
        session_factory=SessionLocal,
        batch_delay_seconds=0,
    )
    images = ImageService(
        storage=storage,
        metadata=metadata,
        cache=cache,
        access=access,
        rate_limiter=rate_limiter,
        deletion=deletion,
        session_factory=SessionLocal,
    )
    return ServiceBundle(
        storage=storage,
        kv=kv,
        cache=cache,
        index=index,
        search=SearchService(index, cache),
        metadata=metadata,
        access=access,
        rate_limiter=rate_limiter,
        deletion=deletion,
        images=images,
    )


@pytest.fixture(scope="session", autouse=True)
def _create_schema() -> Iterator[None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_database() -> Iterator[None]:
    with SessionLocal() as session:
        session.execute(delete(Post))
        session.execute(delete(DraftPost))
        session.execute(delete(MediaAsset))
        session.commit()
    yield


@pytest.fixture
def services() -> ServiceBundle:
    return build_services()


def insert_asset(
    asset_id: str,
    owner_id: str = "alice",
    *,
    storage_key: str | None = None,
    is_deleted: bool = False,
) -> str:
    """Persist a media row and return its storage key."""

    key = storage_key or f"images/{owner_id}_{asset_id}.jpg"
    with SessionLocal() as session:
        session.add(
            MediaAsset(
                id=asset_id,
                owner_id=owner_id,
                storage_key=key,
                mime_type="image/jpeg",
                size=2048,
                is_deleted=is_deleted,
            )
        )
        session.commit()
    return key


def insert_post(post_id: str, asset_id: str | None, user_id: str = "alice", *, draft: bool = False) -> None:
    model = DraftPost if draft else Post
    with SessionLocal() as session:
        session.add(model(id=post_id, user_id=user_id, media_asset_id=asset_id))
        session.commit()
