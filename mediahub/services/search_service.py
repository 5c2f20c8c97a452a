"""Inverted tag/owner indexes over image metadata plus filtered, faceted search."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterable

from ..config import get_settings
from ..schemas.metadata import (
    FacetCount,
    ImageMetadata,
    SearchFacets,
    SearchQuery,
    SearchResult,
)
from .cache_service import CacheKeys, CacheService, get_cache_service
from .kv_store import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

TAG_PREFIX = "tag:"
USER_PREFIX = "user:"
DOC_PREFIX = "search:"

SIZE_BUCKETS: tuple[tuple[str, float], ...] = (
    ("<100KB", 100 * 1024),
    ("100KB-500KB", 500 * 1024),
    ("500KB-1MB", 1024 * 1024),
    ("1MB-5MB", 5 * 1024 * 1024),
    ("5MB-10MB", 10 * 1024 * 1024),
    (">10MB", float("inf")),
)
SIZE_BUCKET_ORDER = [label for label, _ in SIZE_BUCKETS]
MAX_TAG_FACETS = 20


def size_bucket(size: int) -> str:
    for label, upper in SIZE_BUCKETS:
        if size < upper:
            return label
    return SIZE_BUCKETS[-1][0]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    try:
        return _as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def search_document(metadata: ImageMetadata) -> dict[str, Any]:
    """Flattened projection of a metadata record used for filtering and facets."""

    return {
        "id": metadata.id,
        "owner_id": metadata.owner_id,
        "filename": metadata.filename,
        "description": metadata.description,
        "alt_text": metadata.alt_text,
        "tags": list(dict.fromkeys(metadata.tags)),
        "category": metadata.category,
        "format": metadata.format,
        "mime_type": metadata.mime_type,
        "size": metadata.size,
        "width": metadata.width,
        "height": metadata.height,
        "visibility": metadata.visibility,
        "storage_key": metadata.storage_key,
        "is_processed": metadata.is_processed,
        "variant_count": len(metadata.variants),
        "uploaded_at": metadata.uploaded_at.isoformat(),
        "created_at": metadata.created_at.isoformat(),
        "updated_at": metadata.updated_at.isoformat(),
    }


class SearchIndex:
    """``tag:{tag}`` and ``user:{owner}`` id lists plus a ``search:{id}`` document.

    Read-modify-write of the id lists is serialized with a lock, which only
    protects writers inside this process.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    async def _read_ids(self, key: str) -> list[str]:
        raw = await self._store.get(key)
        if not raw:
            return []
        try:
            ids = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt index entry %s", key)
            return []
        return [str(item) for item in ids] if isinstance(ids, list) else []

    async def _add_id(self, key: str, asset_id: str) -> None:
        ids = await self._read_ids(key)
        if asset_id not in ids:
            ids.append(asset_id)
            await self._store.put(key, json.dumps(ids))

    async def _remove_id(self, key: str, asset_id: str) -> None:
        ids = await self._read_ids(key)
        if asset_id not in ids:
            return
        remaining = [item for item in ids if item != asset_id]
        if remaining:
            await self._store.put(key, json.dumps(remaining))
        else:
            await self._store.delete(key)

    async def document(self, asset_id: str) -> dict[str, Any] | None:
        raw = await self._store.get(f"{DOC_PREFIX}{asset_id}")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt search document for %s", asset_id)
            return None

    async def documents(self, asset_ids: Iterable[str]) -> list[dict[str, Any]]:
        docs = []
        for asset_id in asset_ids:
            doc = await self.document(asset_id)
            if doc is not None:
                docs.append(doc)
        return docs

    async def index(self, metadata: ImageMetadata) -> None:
        asset_id = metadata.id
        document = search_document(metadata)
        async with self._lock:
            previous = await self.document(asset_id)
            if previous:
                for tag in set(previous.get("tags") or []) - set(document["tags"]):
                    await self._remove_id(f"{TAG_PREFIX}{tag}", asset_id)
                old_owner = previous.get("owner_id")
                if old_owner and old_owner != document["owner_id"]:
                    await self._remove_id(f"{USER_PREFIX}{old_owner}", asset_id)

            for tag in document["tags"]:
                await self._add_id(f"{TAG_PREFIX}{tag}", asset_id)
            if document["owner_id"]:
                await self._add_id(f"{USER_PREFIX}{document['owner_id']}", asset_id)
            await self._store.put(f"{DOC_PREFIX}{asset_id}", json.dumps(document))

    async def remove(self, asset_id: str) -> bool:
        """Drop every index trace of ``asset_id``; returns False when it was not indexed."""

        async with self._lock:
            previous = await self.document(asset_id)
            if previous is None:
                return False
            for tag in previous.get("tags") or []:
                await self._remove_id(f"{TAG_PREFIX}{tag}", asset_id)
            if previous.get("owner_id"):
                await self._remove_id(f"{USER_PREFIX}{previous['owner_id']}", asset_id)
            await self._store.delete(f"{DOC_PREFIX}{asset_id}")
        return True

    async def ids_for_tag(self, tag: str) -> list[str]:
        return await self._read_ids(f"{TAG_PREFIX}{tag}")

    async def ids_for_owner(self, owner_id: str) -> list[str]:
        return await self._read_ids(f"{USER_PREFIX}{owner_id}")

    async def all_ids(self, limit: int) -> list[str]:
        keys = await self._store.list(DOC_PREFIX)
        return [key[len(DOC_PREFIX):] for key in keys[:limit]]


def _sorted_docs(docs: list[dict[str, Any]], sort_by: str | None, sort_order: str) -> list[dict[str, Any]]:
    if not sort_by:
        return docs
    present = [doc for doc in docs if doc.get(sort_by) is not None]
    missing = [doc for doc in docs if doc.get(sort_by) is None]
    present.sort(key=lambda doc: doc[sort_by], reverse=sort_order == "desc")
    return present + missing


def _counts(counter: Counter) -> list[FacetCount]:
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [FacetCount(value=value, count=count) for value, count in ordered]


def matches_query(doc: dict[str, Any], query: SearchQuery) -> bool:
    if query.query:
        needle = query.query.lower()
        parts = [doc.get("filename"), doc.get("description"), doc.get("alt_text"), *(doc.get("tags") or [])]
        haystack = " ".join(str(part) for part in parts if part).lower()
        if needle not in haystack:
            return False

    if query.category and doc.get("category") != query.category:
        return False
    if query.visibility and doc.get("visibility") != query.visibility.value:
        return False

    for field_name, low, high in (
        ("size", query.min_size, query.max_size),
        ("width", query.min_width, query.max_width),
        ("height", query.min_height, query.max_height),
    ):
        value = doc.get(field_name)
        if low is not None and (value is None or value < low):
            return False
        if high is not None and (value is None or value > high):
            return False

    if query.formats and doc.get("format") not in query.formats:
        return False

    if query.uploaded_after or query.uploaded_before:
        uploaded_at = _parse_datetime(doc.get("uploaded_at"))
        if uploaded_at is None:
            return False
        if query.uploaded_after and uploaded_at < _as_utc(query.uploaded_after):
            return False
        if query.uploaded_before and uploaded_at > _as_utc(query.uploaded_before):
            return False

    if query.is_processed is not None and bool(doc.get("is_processed")) != query.is_processed:
        return False
    if query.has_variants is not None and (int(doc.get("variant_count") or 0) > 0) != query.has_variants:
        return False
    return True


class SearchService:
    def __init__(
        self,
        index: SearchIndex,
        cache: CacheService,
        *,
        max_scan: int = 1000,
        default_limit: int = 20,
        cache_ttl: int = 300,
    ) -> None:
        self.index = index
        self._cache = cache
        self._max_scan = max_scan
        self._default_limit = default_limit
        self._cache_ttl = cache_ttl

    async def search_by_tags(self, tags: Iterable[str], owner_id: str | None = None) -> list[str]:
        """Union of the ids under each tag, narrowed to ``owner_id`` when given."""

        found: dict[str, None] = {}
        for tag in tags:
            for asset_id in await self.index.ids_for_tag(tag):
                found.setdefault(asset_id, None)
        results = list(found)
        if owner_id:
            owned = set(await self.index.ids_for_owner(owner_id))
            results = [asset_id for asset_id in results if asset_id in owned]
        return results

    async def search_by_owner(
        self,
        owner_id: str,
        limit: int = 50,
        offset: int = 0,
        sort_by: str | None = None,
        sort_order: str = "asc",
    ) -> list[str]:
        ids = await self.index.ids_for_owner(owner_id)
        if sort_by:
            docs = _sorted_docs(await self.index.documents(ids), sort_by, sort_order)
            ids = [doc["id"] for doc in docs]
        return ids[offset : offset + limit]

    async def _candidate_ids(self, query: SearchQuery) -> list[str]:
        if query.tags:
            return await self.search_by_tags(query.tags, query.owner_id)
        if query.owner_id:
            return await self.index.ids_for_owner(query.owner_id)
        logger.warning(
            "Search without tag or owner filter scans up to %d indexed documents", self._max_scan
        )
        return await self.index.all_ids(self._max_scan)

    async def _filtered_documents(self, query: SearchQuery) -> list[dict[str, Any]]:
        candidates = await self._candidate_ids(query)
        docs = await self.index.documents(candidates)
        return [doc for doc in docs if matches_query(doc, query)]

    @staticmethod
    def _facets_for(docs: list[dict[str, Any]]) -> SearchFacets:
        formats: Counter = Counter()
        tags: Counter = Counter()
        categories: Counter = Counter()
        sizes: Counter = Counter()
        for doc in docs:
            if doc.get("format"):
                formats[doc["format"]] += 1
            for tag in doc.get("tags") or []:
                tags[tag] += 1
            if doc.get("category"):
                categories[doc["category"]] += 1
            if doc.get("size"):
                sizes[size_bucket(int(doc["size"]))] += 1

        return SearchFacets(
            formats=_counts(formats),
            tags=_counts(tags)[:MAX_TAG_FACETS],
            categories=_counts(categories),
            sizes=[FacetCount(value=label, count=sizes[label]) for label in SIZE_BUCKET_ORDER if sizes[label]],
        )

    async def get_facets(self, query: SearchQuery | None = None) -> SearchFacets:
        docs = await self._filtered_documents(query or SearchQuery())
        return self._facets_for(docs)

    async def search_images(self, query: SearchQuery | None = None) -> SearchResult:
        """Filtered, sorted and paginated search with facets; results are cached briefly."""

        query = query or SearchQuery()
        fingerprint = hashlib.sha256(query.model_dump_json().encode("utf-8")).hexdigest()[:32]
        cache_key = CacheKeys.search(fingerprint)

        async def _load() -> dict[str, Any]:
            result = await self._perform_search(query)
            return result.model_dump(mode="json")

        payload = await self._cache.get_or_set(cache_key, _load, self._cache_ttl)
        return SearchResult.model_validate(payload)

    async def _perform_search(self, query: SearchQuery) -> SearchResult:
        docs = await self._filtered_documents(query)
        docs = _sorted_docs(docs, query.sort_by, query.sort_order)
        limit = query.limit or self._default_limit
        total = len(docs)
        page = docs[query.offset : query.offset + limit]
        return SearchResult(
            results=[ImageMetadata.model_validate({**doc, "tags": doc.get("tags") or []}) for doc in page],
            total=total,
            offset=query.offset,
            limit=limit,
            has_more=query.offset + limit < total,
            facets=self._facets_for(docs),
        )


@lru_cache(maxsize=1)
def get_search_index() -> SearchIndex:
    return SearchIndex(get_kv_store())


@lru_cache(maxsize=1)
def get_search_service() -> SearchService:
    settings = get_settings()
    return SearchService(
        get_search_index(),
        get_cache_service(),
        max_scan=settings.search_max_scan,
        default_limit=settings.search_default_limit,
        cache_ttl=settings.search_cache_ttl,
    )


__all__ = [
    "SearchIndex",
    "SearchService",
    "SIZE_BUCKETS",
    "SIZE_BUCKET_ORDER",
    "size_bucket",
    "search_document",
    "matches_query",
    "get_search_index",
    "get_search_service",
]
