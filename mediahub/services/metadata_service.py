"""Canonical image metadata persisted to object storage, the key-value store and the cache.

Writes are an ordered sequence of independent steps with no atomic commit:

1. custom metadata on the existing storage object (best effort),
2. the durable ``metadata:{id}`` key-value entry,
3. search index maintenance,
4. an advisory cache write.

``update`` is read-modify-write over the whole record, so two concurrent
updates of one asset can lose one of the changes.
"""
from __future__ import annotations

import json
import logging
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select

from ..config import get_settings
from ..database import create_session
from ..errors import DependencyError, NotFoundError, ValidationError
from ..models import MediaAsset
from ..schemas.metadata import (
    VISIBILITY_VALUES,
    ImageMetadata,
    ImageTransformation,
    ImageVariant,
    MetadataValidationResult,
    utcnow,
)
from .cache_service import CacheError, CacheKeys, CacheService, get_cache_service
from .kv_store import KeyValueStore, get_kv_store
from .object_storage import ObjectStorage, get_object_storage
from .search_service import SearchIndex, get_search_index

logger = logging.getLogger(__name__)

METADATA_PREFIX = "metadata:"

_EXTENSION_TYPES: dict[str, tuple[str, str]] = {
    "jpg": ("image/jpeg", "jpeg"),
    "jpeg": ("image/jpeg", "jpeg"),
    "png": ("image/png", "png"),
    "webp": ("image/webp", "webp"),
    "avif": ("image/avif", "avif"),
    "heic": ("image/heic", "heic"),
    "heif": ("image/heif", "heif"),
}

StorageKeyResolver = Callable[[str], Awaitable[str | None]]


def detect_image_type(filename: str) -> tuple[str, str]:
    """Return ``(mime_type, format)`` guessed from the file extension."""

    extension = Path(filename).suffix.lower().lstrip(".")
    return _EXTENSION_TYPES.get(extension, ("application/octet-stream", "unknown"))


def metadata_key(asset_id: str) -> str:
    return f"{METADATA_PREFIX}{asset_id}"


class MetadataService:
    def __init__(
        self,
        store: KeyValueStore,
        cache: CacheService,
        index: SearchIndex,
        *,
        storage: ObjectStorage | None = None,
        key_resolver: StorageKeyResolver | None = None,
        cache_ttl: int = 3600,
        kv_ttl: int | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._index = index
        self._storage = storage
        self._key_resolver = key_resolver
        self._cache_ttl = cache_ttl
        self._kv_ttl = kv_ttl

    @staticmethod
    def validate_metadata(metadata: ImageMetadata) -> MetadataValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not metadata.id:
            errors.append("ID is required")
        if not metadata.filename:
            errors.append("Filename is required")
        if not metadata.owner_id:
            errors.append("Owner ID is required")
        if not metadata.storage_key:
            errors.append("Storage key is required")

        if metadata.width is not None and metadata.width <= 0:
            errors.append("Width must be positive")
        if metadata.height is not None and metadata.height <= 0:
            errors.append("Height must be positive")
        if metadata.size is not None and metadata.size <= 0:
            errors.append("Size must be positive")

        if metadata.visibility not in VISIBILITY_VALUES:
            errors.append("Invalid visibility value")

        if not metadata.tags:
            warnings.append("No tags provided - may affect discoverability")

        return MetadataValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _coerce(metadata: ImageMetadata | Mapping[str, Any]) -> ImageMetadata:
        if isinstance(metadata, ImageMetadata):
            return metadata
        try:
            return ImageMetadata.model_validate(dict(metadata))
        except ValueError as exc:
            raise ValidationError([str(exc)]) from exc

    async def store(self, asset_id: str, metadata: ImageMetadata | Mapping[str, Any]) -> ImageMetadata:
        """Validate and persist a full metadata record."""

        record = self._coerce(metadata)
        validation = self.validate_metadata(record)
        errors = list(validation.errors)
        if record.id and record.id != asset_id:
            errors.append("ID does not match the asset being written")
        if errors:
            raise ValidationError(errors, "Invalid metadata: " + ", ".join(errors))

        payload = record.model_dump_json()

        await self._write_object_metadata(record, payload)

        await self._store.put(metadata_key(asset_id), payload, ttl=self._kv_ttl)

        try:
            if record.is_deleted:
                await self._index.remove(asset_id)
            else:
                await self._index.index(record)
        except DependencyError as exc:
            logger.warning("Search index update failed for %s: %s", asset_id, exc)

        await self._cache.set(CacheKeys.metadata(asset_id), record.model_dump(mode="json"), self._cache_ttl)
        try:
            await self._cache.invalidate_pattern(CacheKeys.search("*"))
        except CacheError as exc:
            logger.warning("Could not invalidate cached searches after writing %s: %s", asset_id, exc)

        return record

    async def _write_object_metadata(self, record: ImageMetadata, payload: str) -> None:
        if self._storage is None:
            return
        try:
            existing = await self._storage.head(record.storage_key)
            if existing is None:
                return
            await self._storage.replace_metadata(
                record.storage_key,
                {"metadata": payload, "updated-at": record.updated_at.isoformat()},
            )
        except DependencyError as exc:
            logger.warning("Failed to store object metadata for %s: %s", record.id, exc)

    async def _load(self, asset_id: str) -> dict[str, Any] | None:
        raw = await self._store.get(metadata_key(asset_id))
        if raw:
            try:
                return json.loads(raw)
            except ValueError:
                logger.warning("Discarding corrupt metadata entry for %s", asset_id)
        return await self._load_from_object(asset_id)

    async def _load_from_object(self, asset_id: str) -> dict[str, Any] | None:
        if self._storage is None or self._key_resolver is None:
            return None
        storage_key = await self._key_resolver(asset_id)
        if not storage_key:
            return None
        try:
            head = await self._storage.head(storage_key)
        except DependencyError as exc:
            logger.warning("Failed to read object metadata for %s: %s", asset_id, exc)
            return None
        if head is None or not head.metadata.get("metadata"):
            return None
        try:
            return json.loads(head.metadata["metadata"])
        except ValueError:
            logger.warning("Object metadata for %s is not valid JSON", asset_id)
            return None

    async def get(self, asset_id: str) -> ImageMetadata | None:
        payload = await self._cache.get_or_set(
            CacheKeys.metadata(asset_id), lambda: self._load(asset_id), self._cache_ttl
        )
        if payload is None:
            return None
        return ImageMetadata.model_validate(payload)

    async def _require(self, asset_id: str) -> ImageMetadata:
        metadata = await self.get(asset_id)
        if metadata is None:
            raise NotFoundError(f"Metadata not found for image: {asset_id}")
        return metadata

    async def update(self, asset_id: str, changes: Mapping[str, Any]) -> ImageMetadata:
        existing = await self._require(asset_id)
        for immutable in ("id", "storage_key"):
            if immutable in changes and changes[immutable] != getattr(existing, immutable):
                raise ValidationError([f"{immutable} cannot be changed"])

        merged = existing.model_dump()
        merged.update(changes)
        merged["updated_at"] = utcnow()
        return await self.store(asset_id, self._coerce(merged))

    async def delete(self, asset_id: str) -> None:
        """Remove the durable entry, its index traces and its cache entry.

        Every step runs even if an earlier one fails; failures are re-raised
        together afterwards.
        """

        failures: list[str] = []
        try:
            await self._store.delete(metadata_key(asset_id))
        except DependencyError as exc:
            failures.append(f"metadata entry: {exc}")
        try:
            await self._index.remove(asset_id)
        except DependencyError as exc:
            failures.append(f"search index: {exc}")
        try:
            await self._cache.delete(CacheKeys.metadata(asset_id))
        except CacheError as exc:
            failures.append(f"cache: {exc}")

        if failures:
            raise DependencyError(f"Metadata cleanup for {asset_id} incomplete: " + "; ".join(failures))

    async def mark_deleted(self, asset_id: str) -> ImageMetadata:
        return await self.update(asset_id, {"is_deleted": True, "deleted_at": utcnow()})

    async def add_variant(self, asset_id: str, variant: ImageVariant) -> ImageMetadata:
        """Attach ``variant``, replacing an existing variant with the same name."""

        metadata = await self._require(asset_id)
        variants = [variant if item.name == variant.name else item for item in metadata.variants]
        if not any(item.name == variant.name for item in metadata.variants):
            variants.append(variant)
        return await self.update(asset_id, {"variants": variants})

    async def add_transformation(self, asset_id: str, transformation: ImageTransformation) -> ImageMetadata:
        metadata = await self._require(asset_id)
        return await self.update(
            asset_id,
            {"transformations": [*metadata.transformations, transformation], "is_processed": True},
        )

    @staticmethod
    def extract_metadata_from_file(data: bytes, filename: str, owner_id: str) -> ImageMetadata:
        """Basic metadata derived from the upload itself; dimensions are left unset."""

        mime_type, image_format = detect_image_type(filename)
        now = utcnow()
        return ImageMetadata(
            id=uuid.uuid4().hex,
            filename=filename,
            original_name=filename,
            size=len(data),
            mime_type=mime_type,
            format=image_format,
            owner_id=owner_id,
            uploaded_at=now,
            created_at=now,
            updated_at=now,
        )


async def resolve_storage_key(asset_id: str) -> str | None:
    """Look up the storage key of ``asset_id`` in the database."""

    def _lookup() -> str | None:
        with create_session() as session:
            return session.scalar(select(MediaAsset.storage_key).where(MediaAsset.id == asset_id))

    return await run_in_threadpool(_lookup)


@lru_cache(maxsize=1)
def get_metadata_service() -> MetadataService:
    settings = get_settings()
    return MetadataService(
        get_kv_store(),
        get_cache_service(),
        get_search_index(),
        storage=get_object_storage(),
        key_resolver=resolve_storage_key,
        cache_ttl=settings.metadata_cache_ttl,
        kv_ttl=settings.metadata_kv_ttl,
    )


__all__ = [
    "MetadataService",
    "METADATA_PREFIX",
    "detect_image_type",
    "metadata_key",
    "resolve_storage_key",
    "get_metadata_service",
]
