"""Tag/owner indexes, filtered search and facet counts."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from mediahub.schemas.metadata import FacetCount, ImageMetadata, SearchQuery
from mediahub.services.cache_service import CacheService
from mediahub.services.kv_store import InMemoryKeyValueStore
from mediahub.services.search_service import SearchIndex, SearchService, size_bucket


def _metadata(asset_id: str, owner_id: str = "alice", **fields) -> ImageMetadata:
    base = {
        "id": asset_id,
        "filename": f"{asset_id}.jpg",
        "owner_id": owner_id,
        "storage_key": f"images/{owner_id}_{asset_id}.jpg",
        "format": "jpeg",
        "size": 50 * 1024,
        "width": 800,
        "height": 600,
        "visibility": "public",
    }
    base.update(fields)
    return ImageMetadata(**base)


def _service() -> SearchService:
    kv = InMemoryKeyValueStore()
    return SearchService(SearchIndex(kv), CacheService(kv), max_scan=100, default_limit=10)


def _index_all(service: SearchService, *records: ImageMetadata) -> None:
    async def _run():
        for record in records:
            await service.index.index(record)

    asyncio.run(_run())


def test_facets_count_tags_across_indexed_assets():
    service = _service()
    _index_all(
        service,
        _metadata("a1", tags=["nature"]),
        _metadata("a2", tags=["nature", "sunset"]),
        _metadata("a3", tags=["city"]),
    )

    facets = asyncio.run(service.get_facets(SearchQuery()))

    assert {facet.value: facet.count for facet in facets.tags} == {"nature": 2, "sunset": 1, "city": 1}
    assert facets.tags[0] == FacetCount(value="nature", count=2)
    assert facets.formats == [FacetCount(value="jpeg", count=3)]


def test_size_facets_follow_bucket_order():
    service = _service()
    _index_all(
        service,
        _metadata("big", size=20 * 1024 * 1024),
        _metadata("small", size=10 * 1024),
        _metadata("mid", size=700 * 1024),
        _metadata("small2", size=20 * 1024),
    )

    facets = asyncio.run(service.get_facets())

    assert [(f.value, f.count) for f in facets.sizes] == [("<100KB", 2), ("500KB-1MB", 1), (">10MB", 1)]


def test_size_bucket_boundaries():
    assert size_bucket(100 * 1024 - 1) == "<100KB"
    assert size_bucket(100 * 1024) == "100KB-500KB"
    assert size_bucket(10 * 1024 * 1024) == ">10MB"


def test_search_by_tags_unions_then_intersects_owner():
    service = _service()
    _index_all(
        service,
        _metadata("a1", tags=["nature"]),
        _metadata("a2", owner_id="bob", tags=["sunset"]),
        _metadata("a3", tags=["sunset", "nature"]),
    )

    assert asyncio.run(service.search_by_tags(["nature", "sunset"])) == ["a1", "a3", "a2"]
    assert asyncio.run(service.search_by_tags(["nature", "sunset"], owner_id="bob")) == ["a2"]


def test_search_by_owner_sorts_and_paginates():
    service = _service()
    _index_all(
        service,
        _metadata("a1", size=3000),
        _metadata("a2", size=1000),
        _metadata("a3", size=2000),
        _metadata("b1", owner_id="bob"),
    )

    ids = asyncio.run(service.search_by_owner("alice", limit=2, offset=0, sort_by="size", sort_order="desc"))
    assert ids == ["a1", "a3"]
    assert asyncio.run(service.search_by_owner("alice", limit=2, offset=2, sort_by="size")) == ["a1"]


def test_search_applies_filters_and_pagination():
    service = _service()
    now = datetime.now(timezone.utc)
    _index_all(
        service,
        _metadata("a1", tags=["nature"], width=200, format="png"),
        _metadata("a2", tags=["nature"], width=1200, uploaded_at=now - timedelta(days=10)),
        _metadata("a3", tags=["nature"], width=1600, visibility="private"),
        _metadata("a4", tags=["nature"], width=2000, description="Misty lake"),
    )

    result = asyncio.run(
        service.search_images(SearchQuery(tags=["nature"], min_width=1000, formats=["jpeg"], sort_by="width"))
    )
    assert [item.id for item in result.results] == ["a2", "a3", "a4"]
    assert result.total == 3 and not result.has_more

    recent = asyncio.run(
        service.search_images(SearchQuery(tags=["nature"], uploaded_after=now - timedelta(days=1), limit=1))
    )
    assert recent.total == 3
    assert recent.limit == 1 and recent.has_more

    public = asyncio.run(service.search_images(SearchQuery(tags=["nature"], visibility="public", query="misty")))
    assert [item.id for item in public.results] == ["a4"]


def test_search_without_filters_scans_the_index():
    service = _service()
    _index_all(service, _metadata("a1"), _metadata("b1", owner_id="bob"))

    result = asyncio.run(service.search_images(SearchQuery()))

    assert sorted(item.id for item in result.results) == ["a1", "b1"]


def test_reindex_moves_tags_and_owner():
    service = _service()
    _index_all(service, _metadata("a1", tags=["nature"]))
    _index_all(service, _metadata("a1", owner_id="bob", tags=["city"]))

    async def _lookups():
        index = service.index
        return (
            await index.ids_for_tag("nature"),
            await index.ids_for_tag("city"),
            await index.ids_for_owner("alice"),
            await index.ids_for_owner("bob"),
        )

    assert asyncio.run(_lookups()) == ([], ["a1"], [], ["a1"])


def test_remove_clears_every_index_entry():
    service = _service()
    _index_all(service, _metadata("a1", tags=["nature", "city"]))

    async def _scenario():
        removed = await service.index.remove("a1")
        again = await service.index.remove("a1")
        return removed, again, await service.index.ids_for_tag("city"), await service.index.all_ids(10)

    assert asyncio.run(_scenario()) == (True, False, [], [])
