"""Cascade deletion across storage, metadata, database references and caches."""
from __future__ import annotations

import asyncio
import json

import httpx

from conftest import ServiceBundle, insert_asset, insert_post
from mediahub.database import SessionLocal
from mediahub.models import DraftPost, MediaAsset, Post
from mediahub.schemas.metadata import ImageMetadata, ImageVariant, SearchQuery
from mediahub.services.cache_service import CacheError, CacheKeys, CacheService
from mediahub.services.cdn_service import CdnPurger
from mediahub.services.deletion_service import CascadeDeletionService, DeletionOptions, DeletionState


def seed_asset(services: ServiceBundle, asset_id: str, owner_id: str = "alice", variants: int = 0) -> str:
    key = insert_asset(asset_id, owner_id)
    services.storage.seed(key)
    variant_records = []
    for width in range(100, 100 * (variants + 1), 100):
        variant_key = f"images/{asset_id}/variants/{width}w.webp"
        services.storage.seed(variant_key, content_type="image/webp")
        variant_records.append(
            ImageVariant(
                id=f"{asset_id}-{width}",
                parent_asset_id=asset_id,
                name=f"w{width}",
                storage_key=variant_key,
                width=width,
                height=width,
                format="webp",
            )
        )
    metadata = ImageMetadata(
        id=asset_id,
        filename=f"{asset_id}.jpg",
        owner_id=owner_id,
        storage_key=key,
        size=2048,
        tags=["nature"],
        variants=variant_records,
    )
    asyncio.run(services.metadata.store(asset_id, metadata))
    return key


def _row(asset_id: str) -> MediaAsset | None:
    with SessionLocal() as session:
        return session.get(MediaAsset, asset_id)


def _post_reference(model, post_id: str) -> str | None:
    with SessionLocal() as session:
        return session.get(model, post_id).media_asset_id


def test_plan_lists_variants_references_and_steps(services):
    seed_asset(services, "a1", variants=2)
    insert_post("p1", "a1")
    insert_post("d1", "a1", draft=True)

    plan = asyncio.run(services.deletion.plan_cascade_deletion("a1", "alice"))

    assert [variant.id for variant in plan.variants] == ["a1-100", "a1-200"]
    assert plan.post_ids == ["p1"] and plan.draft_post_ids == ["d1"]
    assert plan.estimated_steps == 5
    assert plan.warnings == ["Asset is referenced by 1 post(s) and 1 draft(s)"]


def test_plan_warns_about_many_variants(services):
    seed_asset(services, "a1", variants=11)
    plan = asyncio.run(services.deletion.plan_cascade_deletion("a1", "alice"))
    assert plan.warnings == ["Asset has 11 variants; deletion will take longer than usual"]


def test_permanent_deletion_removes_everything(services):
    key = seed_asset(services, "a1", variants=2)
    insert_post("p1", "a1")
    insert_post("d1", "a1", draft=True)

    async def _scenario():
        await services.cache.set(CacheKeys.media("a1"), {"id": "a1"})
        result = await services.deletion.execute_cascade_deletion("a1", "alice")
        return result, await services.cache.get(CacheKeys.media("a1")), await services.metadata.get("a1")

    result, cached, metadata = asyncio.run(_scenario())

    assert result.success
    assert result.state == DeletionState.SUCCEEDED
    assert result.errors == []
    assert result.storage_deleted.main_image
    assert sorted(result.deleted_variants) == ["a1-100", "a1-200"]
    assert result.detached_posts == ["p1"] and result.detached_drafts == ["d1"]
    assert key not in services.storage.objects
    assert _row("a1") is None
    assert _post_reference(Post, "p1") is None
    assert _post_reference(DraftPost, "d1") is None
    assert cached is None
    assert metadata is None


def test_deleting_twice_reports_not_found(services):
    seed_asset(services, "a1")

    first = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice"))
    second = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice"))

    assert first.success
    assert not second.success
    assert second.state == DeletionState.REJECTED
    assert second.errors == ["Media not found: a1"]
    assert second.failure_status == 404


def test_soft_deletion_keeps_record_and_bytes(services):
    key = seed_asset(services, "a1")
    options = DeletionOptions(soft_delete=True, permanent=False)

    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice", options))

    assert result.success
    assert not result.storage_deleted.main_image
    assert key in services.storage.objects
    row = _row("a1")
    assert row.is_deleted and row.deleted_at is not None
    assert asyncio.run(services.metadata.get("a1")).is_deleted

    again = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice", options))
    assert not again.success
    assert again.errors == ["Media not found: a1"]


def test_dry_run_changes_nothing(services):
    key = seed_asset(services, "a1", variants=1)
    insert_post("p1", "a1")

    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice", DeletionOptions(dry_run=True)))

    assert result.success and result.dry_run
    assert result.state == DeletionState.PLANNED
    assert result.estimated_steps == 3
    assert key in services.storage.objects
    assert _row("a1") is not None
    assert _post_reference(Post, "p1") == "a1"


def test_other_users_cannot_delete(services):
    seed_asset(services, "a1")

    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "mallory"))

    assert not result.success
    assert result.state == DeletionState.REJECTED
    assert result.errors[0].startswith("Access denied")
    assert result.failure_status == 403
    assert _row("a1") is not None


def test_admin_can_delete_any_asset(services):
    seed_asset(services, "a1")
    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "root", role="admin"))
    assert result.success


def test_variant_failure_is_non_critical(services):
    seed_asset(services, "a1", variants=2)
    services.storage.fail_deletes.add("images/a1/variants/200w.webp")

    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice"))

    assert result.success
    assert result.state == DeletionState.PARTIALLY_FAILED
    assert result.deleted_variants == ["a1-100"]
    assert result.errors == ["Failed to delete variant a1-200: Unable to delete object images/a1/variants/200w.webp"]
    assert _row("a1") is None


def test_main_object_failure_rolls_back_references(services):
    key = seed_asset(services, "a1")
    insert_post("p1", "a1")
    services.storage.fail_deletes.add(key)

    result = asyncio.run(services.deletion.execute_cascade_deletion("a1", "alice"))

    assert not result.success
    assert result.state == DeletionState.ROLLBACK_ATTEMPTED
    assert result.rollback_possible
    assert result.detached_posts == []
    assert _post_reference(Post, "p1") == "a1"
    assert _row("a1") is not None
    assert asyncio.run(services.metadata.get("a1")) is not None


class FailingRecordDeletion(CascadeDeletionService):
    async def _remove_record(self, asset_id: str, *, soft: bool) -> None:
        raise RuntimeError("database unavailable")


def test_record_failure_restores_metadata_but_not_bytes(services):
    key = seed_asset(services, "a1")
    insert_post("p1", "a1")
    deletion = FailingRecordDeletion(
        storage=services.storage,
        metadata=services.metadata,
        cache=services.cache,
        access=services.access,
        session_factory=SessionLocal,
    )

    result = asyncio.run(deletion.execute_cascade_deletion("a1", "alice"))

    assert result.state == DeletionState.ROLLBACK_ATTEMPTED
    assert "Failed to delete database record: database unavailable" in result.errors
    assert result.rollback_possible
    assert asyncio.run(services.metadata.get("a1")) is not None
    assert _post_reference(Post, "p1") == "a1"
    # Bytes already purged from storage are reported, not restored.
    assert result.storage_deleted.main_image
    assert key not in services.storage.objects


def test_preserved_references_are_not_detached(services):
    seed_asset(services, "a1")
    insert_post("p1", "a1")

    result = asyncio.run(
        services.deletion.execute_cascade_deletion("a1", "alice", DeletionOptions(preserve_references=True))
    )

    assert result.success
    assert result.detached_posts == []


def test_concurrent_deletion_of_same_asset_is_rejected(services):
    seed_asset(services, "a1")

    async def _scenario():
        return await asyncio.gather(
            services.deletion.execute_cascade_deletion("a1", "alice"),
            services.deletion.execute_cascade_deletion("a1", "alice"),
        )

    first, second = asyncio.run(_scenario())

    assert first.success
    assert not second.success
    assert second.errors == ["Deletion already in progress for a1"]
    assert second.failure_status == 409


def test_batch_deletion_reports_every_id_once(services):
    ids = [f"b{i:02d}" for i in range(12)]
    for asset_id in ids[:-1]:
        seed_asset(services, asset_id)

    outcome = asyncio.run(services.deletion.execute_batch_cascade_deletion(ids, "alice"))

    assert outcome.summary.total == 12
    assert outcome.summary.failed >= 1
    assert outcome.summary.successful == 11
    assert sorted(result.asset_id for result in outcome.results) == sorted(ids)
    missing = next(result for result in outcome.results if result.asset_id == ids[-1])
    assert missing.errors == [f"Media not found: {ids[-1]}"]


def test_permanent_deletion_purges_cdn_copies(services):
    sent: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200)

    seed_asset(services, "a1", variants=1)
    deletion = CascadeDeletionService(
        storage=services.storage,
        metadata=services.metadata,
        cache=services.cache,
        access=services.access,
        session_factory=SessionLocal,
        cdn=CdnPurger(
            public_base_url="https://cdn.example.com",
            purge_url="https://api.example.com/purge",
            transport=httpx.MockTransport(_handler),
        ),
    )

    result = asyncio.run(deletion.execute_cascade_deletion("a1", "alice"))

    assert result.success and result.errors == []
    assert sent == [
        {
            "files": [
                "https://cdn.example.com/images/a1/variants/100w.webp",
                "https://cdn.example.com/images/alice_a1.jpg",
            ]
        }
    ]


def test_purge_without_cdn_is_a_no_op(services):
    assert asyncio.run(services.deletion.purge_cdn_cache(["images/alice_a1.jpg"])) == []


def test_soft_deletion_drops_asset_from_search(services):
    key = seed_asset(services, "a1")

    async def _scenario():
        # Warm the search cache so a stale hit would surface the asset.
        await services.search.search_images(SearchQuery(tags=["nature"]))
        result = await services.deletion.execute_cascade_deletion("a1", "alice", DeletionOptions(soft_delete=True))
        return (
            result,
            await services.search.search_by_tags(["nature"]),
            await services.search.search_images(SearchQuery(tags=["nature"])),
            await services.search.get_facets(),
        )

    result, tagged, found, facets = asyncio.run(_scenario())

    assert result.success
    assert result.storage_deleted.main_image
    assert key not in services.storage.objects
    assert _row("a1").is_deleted
    assert tagged == []
    assert found.results == [] and found.total == 0
    assert facets.tags == []


class FailingPatternCache(CacheService):
    """Refuses to invalidate patterns naming one asset id."""

    def __init__(self, store, failing_pattern: str) -> None:
        super().__init__(store)
        self.failing_pattern = failing_pattern

    async def invalidate_pattern(self, pattern: str) -> int:
        if pattern == self.failing_pattern:
            raise CacheError(f"Failed to invalidate cache pattern {pattern}")
        return await super().invalidate_pattern(pattern)


def test_cache_failure_does_not_skip_later_invalidations(services):
    seed_asset(services, "a1")
    cache = FailingPatternCache(services.kv, "*a1*")
    deletion = CascadeDeletionService(
        storage=services.storage,
        metadata=services.metadata,
        cache=cache,
        access=services.access,
        session_factory=SessionLocal,
    )

    async def _scenario():
        await cache.set(CacheKeys.search("recent"), {"results": ["a1"]})
        result = await deletion.execute_cascade_deletion("a1", "alice")
        return result, await cache.get(CacheKeys.search("recent"))

    result, cached_search = asyncio.run(_scenario())

    assert result.success
    assert result.state == DeletionState.PARTIALLY_FAILED
    assert result.errors == ["Failed to clear cache: Failed to invalidate cache pattern *a1*"]
    assert cached_search is None
