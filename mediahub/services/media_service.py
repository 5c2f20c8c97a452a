"""Upload issuance, asset records, download URLs and metadata edits for images."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import create_session
from ..errors import AuthorizationError, MediaError, NotFoundError, PartialFailure, ValidationError
from ..models import DraftPost, MediaAsset, Post
from ..schemas.metadata import VISIBILITY_VALUES, ImageMetadata, ImageVariant, utcnow
from .access_control import AccessMiddleware, StorageAction, get_access_middleware
from .cache_service import CacheKeys, CacheService, CacheTTL, get_cache_service
from .deletion_service import (
    BatchDeletionResult,
    CascadeDeletionService,
    DeletionOptions,
    DeletionPlan,
    DeletionResult,
    get_deletion_service,
)
from .metadata_service import MetadataService, detect_image_type, get_metadata_service
from .object_storage import ObjectStorage, get_object_storage, original_object_key, variant_object_key
from .rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

_MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
}


def file_extension(content_type: str | None) -> str:
    if not content_type:
        return ".bin"
    return _MIME_EXTENSIONS.get(content_type, ".bin")


@dataclass(frozen=True)
class UploadTicket:
    upload_url: str
    id: str
    storage_key: str
    expires_in: int


@dataclass
class AssetRecord:
    id: str
    owner_id: str
    storage_key: str
    type: str
    mime_type: str
    size: int | None
    display_order: int
    is_deleted: bool
    created_at: datetime | None
    metadata: ImageMetadata | None = None

    @classmethod
    def from_row(cls, asset: MediaAsset) -> "AssetRecord":
        return cls(
            id=asset.id,
            owner_id=asset.owner_id,
            storage_key=asset.storage_key,
            type=asset.type,
            mime_type=asset.mime_type,
            size=asset.size,
            display_order=asset.display_order or 0,
            is_deleted=bool(asset.is_deleted),
            created_at=asset.created_at,
        )

    def to_cache(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "storage_key": self.storage_key,
            "type": self.type,
            "mime_type": self.mime_type,
            "size": self.size,
            "display_order": self.display_order,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_cache(cls, payload: Mapping[str, Any]) -> "AssetRecord":
        created_at = payload.get("created_at")
        return cls(
            id=payload["id"],
            owner_id=payload["owner_id"],
            storage_key=payload["storage_key"],
            type=payload.get("type") or "image",
            mime_type=payload.get("mime_type") or "application/octet-stream",
            size=payload.get("size"),
            display_order=int(payload.get("display_order") or 0),
            is_deleted=bool(payload.get("is_deleted")),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
        )


@dataclass
class CreateAssetInput:
    image_id: str
    type: str = "image"
    display_order: int = 0
    post_id: str | None = None
    draft_post_id: str | None = None
    visibility: str = "private"
    tags: list[str] = field(default_factory=list)
    category: str | None = None
    description: str | None = None
    alt_text: str | None = None
    width: int | None = None
    height: int | None = None


BULK_OPERATIONS = ("update", "tag", "untag", "categorize", "visibility")
EDITABLE_FIELDS = frozenset({"tags", "category", "description", "alt_text", "visibility", "width", "height"})
MAX_BULK_ITEMS = 100


@dataclass(frozen=True)
class BulkItemError:
    asset_id: str
    error: str


@dataclass
class BulkOperationResult:
    operation: str
    total: int
    successful: int = 0
    failed: int = 0
    errors: list[BulkItemError] = field(default_factory=list)


ChangeBuilder = Callable[[ImageMetadata], dict[str, Any]]


def _string_list(parameters: Mapping[str, Any], name: str) -> list[str]:
    value = parameters.get(name)
    if not isinstance(value, list) or not value or not all(isinstance(item, str) and item for item in value):
        raise ValidationError([f"{name} must be a non-empty list of strings"])
    return list(dict.fromkeys(value))


def bulk_change_builder(operation: str, parameters: Mapping[str, Any]) -> ChangeBuilder:
    """Validate a bulk operation once and return the per-asset change function."""

    if operation == "update":
        unknown = sorted(set(parameters) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError([f"Fields cannot be bulk updated: {', '.join(unknown)}"])
        if not parameters:
            raise ValidationError(["No fields to update"])
        changes = dict(parameters)
        return lambda metadata: changes

    if operation == "tag":
        tags = _string_list(parameters, "tags")
        if parameters.get("replace"):
            return lambda metadata: {"tags": tags}
        return lambda metadata: {"tags": list(dict.fromkeys([*metadata.tags, *tags]))}

    if operation == "untag":
        removed = set(_string_list(parameters, "tags"))
        return lambda metadata: {"tags": [tag for tag in metadata.tags if tag not in removed]}

    if operation == "categorize":
        category = parameters.get("category")
        if not isinstance(category, str) or not category.strip():
            raise ValidationError(["category must be a non-empty string"])
        return lambda metadata: {"category": category.strip()}

    if operation == "visibility":
        visibility = parameters.get("visibility")
        if visibility not in VISIBILITY_VALUES:
            raise ValidationError(["Invalid visibility value"])
        return lambda metadata: {"visibility": visibility}

    raise ValidationError([f"Unsupported bulk operation: {operation}"])


class ImageService:
    def __init__(
        self,
        *,
        storage: ObjectStorage,
        metadata: MetadataService,
        cache: CacheService,
        access: AccessMiddleware,
        rate_limiter: RateLimiter,
        deletion: CascadeDeletionService,
        session_factory: Callable[[], Session] = create_session,
    ) -> None:
        settings = get_settings()
        self._storage = storage
        self._metadata = metadata
        self._cache = cache
        self._access = access
        self._rate_limiter = rate_limiter
        self._deletion = deletion
        self._session_factory = session_factory
        self._settings = settings

    @property
    def default_download_expiry(self) -> int:
        return self._settings.download_url_expiry

    async def _enforce_rate_limit(self, actor_id: str, action: str, limit: int) -> None:
        decision = await self._rate_limiter.check_rate_limit(
            actor_id, action, limit, self._settings.rate_limit_window_seconds
        )
        if not decision.allowed:
            reset_at = datetime.fromtimestamp(decision.reset_time, tz=timezone.utc).isoformat()
            raise AuthorizationError(
                f"Rate limit exceeded. Try again after {reset_at}",
                retry_after=decision.retry_after(),
            )

    async def get_upload_url(
        self,
        actor_id: str,
        role: str = "user",
        content_type: str | None = None,
        file_size: int | None = None,
    ) -> UploadTicket:
        """Issue a presigned PUT URL for a new original image."""

        if content_type and content_type not in self._settings.allowed_mime_types:
            raise ValidationError([f"Unsupported file type: {content_type}"])
        if file_size is not None and file_size < 0:
            raise ValidationError(["File size must not be negative"])

        await self._enforce_rate_limit(actor_id, "upload", self._settings.upload_rate_limit)

        file_name = f"{uuid.uuid4().hex}{file_extension(content_type)}"
        decision = await self._access.validate_upload(
            actor_id, role, file_name, file_size or 0, content_type or "application/octet-stream"
        )
        if not decision.allowed:
            raise AuthorizationError(decision.reason or "Access denied")

        storage_key = original_object_key(actor_id, file_name)
        expires_in = self._settings.presigned_upload_expiry
        upload_url = await self._storage.create_presigned_url(
            storage_key,
            "PUT",
            expires_in=expires_in,
            content_type=content_type,
            headers={"x-amz-server-side-encryption": "AES256"},
        )
        return UploadTicket(upload_url=upload_url, id=file_name, storage_key=storage_key, expires_in=expires_in)

    async def get_batch_upload_urls(
        self,
        actor_id: str,
        role: str,
        count: int,
        content_type: str | None = None,
    ) -> list[UploadTicket]:
        maximum = self._settings.max_batch_uploads
        if count < 1 or count > maximum:
            raise ValidationError([f"Maximum {maximum} uploads per batch"])

        tickets: list[UploadTicket] = []
        for _ in range(count):
            try:
                tickets.append(await self.get_upload_url(actor_id, role, content_type))
            except MediaError as exc:
                if not tickets:
                    raise
                raise PartialFailure(
                    f"Issued {len(tickets)} of {count} upload URLs: {exc.message}", tickets
                ) from exc
        return tickets

    async def create(self, actor_id: str, data: CreateAssetInput) -> AssetRecord:
        """Register an uploaded object as an asset and write its metadata."""

        file_name = Path(data.image_id).name
        if not file_name or file_name != data.image_id:
            raise ValidationError([f"Invalid image id: {data.image_id}"])
        asset_id = Path(file_name).stem
        storage_key = original_object_key(actor_id, file_name)

        stored = await self._storage.head(storage_key)
        if stored is None:
            raise NotFoundError(f"Upload not found for image: {data.image_id}")

        detected_mime, image_format = detect_image_type(file_name)
        mime_type = stored.content_type or detected_mime
        now = utcnow()
        metadata = ImageMetadata(
            id=asset_id,
            filename=file_name,
            original_name=file_name,
            size=stored.size or None,
            mime_type=mime_type,
            format=image_format,
            width=data.width,
            height=data.height,
            owner_id=actor_id,
            storage_key=storage_key,
            visibility=data.visibility,
            tags=list(data.tags),
            category=data.category,
            description=data.description,
            alt_text=data.alt_text,
            uploaded_at=now,
            created_at=now,
            updated_at=now,
        )
        validation = self._metadata.validate_metadata(metadata)
        if not validation.is_valid:
            raise ValidationError(validation.errors)

        def _insert() -> AssetRecord:
            with self._session_factory() as session:
                for model, ref_id in ((Post, data.post_id), (DraftPost, data.draft_post_id)):
                    if ref_id is None:
                        continue
                    owner = session.get(model, ref_id)
                    if owner is None or owner.user_id != actor_id:
                        raise NotFoundError(f"{model.__name__} not found: {ref_id}")
                asset = MediaAsset(
                    id=asset_id,
                    owner_id=actor_id,
                    storage_key=storage_key,
                    type=data.type,
                    mime_type=mime_type,
                    size=metadata.size,
                    display_order=data.display_order,
                )
                session.add(asset)
                try:
                    session.flush()
                except IntegrityError as exc:
                    session.rollback()
                    raise ValidationError([f"Image {file_name} is already registered"]) from exc
                if data.post_id is not None:
                    session.get(Post, data.post_id).media_asset_id = asset_id
                if data.draft_post_id is not None:
                    session.get(DraftPost, data.draft_post_id).media_asset_id = asset_id
                session.commit()
                session.refresh(asset)
                return AssetRecord.from_row(asset)

        record = await run_in_threadpool(_insert)

        try:
            record.metadata = await self._metadata.store(asset_id, metadata)
        except MediaError:
            logger.exception("Metadata write failed for new asset %s; removing record", asset_id)
            await run_in_threadpool(self._discard_record, asset_id)
            raise
        logger.info("Registered media asset %s for %s", asset_id, actor_id)
        return record

    def _discard_record(self, asset_id: str) -> None:
        with self._session_factory() as session:
            asset = session.get(MediaAsset, asset_id)
            if asset is not None:
                session.delete(asset)
                session.commit()

    async def _load_record(self, asset_id: str) -> dict[str, Any] | None:
        def _query() -> dict[str, Any] | None:
            with self._session_factory() as session:
                asset = session.get(MediaAsset, asset_id)
                return AssetRecord.from_row(asset).to_cache() if asset is not None else None

        return await run_in_threadpool(_query)

    async def find_by_id(self, asset_id: str, actor_id: str, role: str = "user") -> AssetRecord:
        payload = await self._cache.get_or_set(
            CacheKeys.media(asset_id), lambda: self._load_record(asset_id), CacheTTL.MEDIA
        )
        if payload is None or payload.get("is_deleted"):
            raise NotFoundError(f"Media not found: {asset_id}")
        record = AssetRecord.from_cache(payload)

        decision = await self._access.validate_download(actor_id, role, record.storage_key, owner_id=record.owner_id)
        if not decision.allowed:
            raise AuthorizationError(decision.reason or "Access denied")
        return record

    async def get_image_url(
        self,
        asset_id: str,
        actor_id: str,
        role: str = "user",
        expiry_seconds: int | None = None,
    ) -> str:
        """Presigned GET URL; long-lived URLs are cached for half their lifetime."""

        expiry = expiry_seconds or self._settings.download_url_expiry
        if expiry < 1 or expiry > self._settings.max_download_url_expiry:
            raise ValidationError(
                [f"Expiry must be between 1 and {self._settings.max_download_url_expiry} seconds"]
            )
        record = await self.find_by_id(asset_id, actor_id, role)

        async def _presign() -> str:
            return await self._storage.create_presigned_url(record.storage_key, "GET", expires_in=expiry)

        if expiry > 3600:
            return await self._cache.get_or_set(
                CacheKeys.image_url(record.storage_key, expiry),
                _presign,
                min(expiry // 2, CacheTTL.LONG),
            )
        return await _presign()

    async def get_metadata(self, asset_id: str, actor_id: str, role: str = "user") -> ImageMetadata:
        await self.find_by_id(asset_id, actor_id, role)
        metadata = await self._metadata.get(asset_id)
        if metadata is None:
            raise NotFoundError(f"Metadata not found for image: {asset_id}")
        return metadata

    async def _require_write(self, asset_id: str, actor_id: str, role: str) -> AssetRecord:
        record = await self.find_by_id(asset_id, actor_id, role)
        decision = await self._access.validate_access(
            actor_id, role, StorageAction.WRITE, record.storage_key, {"owner_id": record.owner_id}
        )
        if not decision.allowed:
            raise AuthorizationError(decision.reason or "Access denied")
        return record

    async def update_metadata(
        self, asset_id: str, actor_id: str, role: str, changes: Mapping[str, Any]
    ) -> ImageMetadata:
        await self._require_write(asset_id, actor_id, role)
        return await self._metadata.update(asset_id, changes)

    async def bulk_update_metadata(
        self,
        asset_ids: Iterable[str],
        actor_id: str,
        role: str,
        operation: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> BulkOperationResult:
        """Apply one metadata edit to many assets.

        Invalid parameters reject the whole request. Per-asset failures (missing
        asset, no write access, invalid result) are collected and the remaining
        assets are still processed.
        """

        build_changes = bulk_change_builder(operation, parameters or {})
        ids = list(dict.fromkeys(asset_ids))
        if not ids:
            raise ValidationError(["At least one image id is required"])
        if len(ids) > MAX_BULK_ITEMS:
            raise ValidationError([f"Maximum {MAX_BULK_ITEMS} images per bulk operation"])

        result = BulkOperationResult(operation=operation, total=len(ids))
        for asset_id in ids:
            try:
                await self._require_write(asset_id, actor_id, role)
                existing = await self._metadata.get(asset_id)
                if existing is None:
                    raise NotFoundError(f"Metadata not found for image: {asset_id}")
                await self._metadata.update(asset_id, build_changes(existing))
            except MediaError as exc:
                result.failed += 1
                result.errors.append(BulkItemError(asset_id=asset_id, error=exc.message))
            else:
                result.successful += 1

        logger.info(
            "Bulk %s by %s: %d succeeded, %d failed", operation, actor_id, result.successful, result.failed
        )
        return result

    async def add_variant(
        self,
        asset_id: str,
        actor_id: str,
        role: str,
        *,
        name: str,
        width: int,
        height: int,
        image_format: str,
        quality: int = 100,
        size: int = 0,
    ) -> ImageMetadata:
        """Record a derivative stored at ``images/{asset}/variants/{width}w.{format}``."""

        await self._require_write(asset_id, actor_id, role)
        variant = ImageVariant(
            id=uuid.uuid4().hex,
            parent_asset_id=asset_id,
            name=name,
            storage_key=variant_object_key(asset_id, width, image_format),
            width=width,
            height=height,
            size=size,
            format=image_format.lower(),
            quality=quality,
        )
        return await self._metadata.add_variant(asset_id, variant)

    async def plan_deletion(self, asset_id: str, actor_id: str, role: str = "user") -> DeletionPlan:
        return await self._deletion.plan_cascade_deletion(asset_id, actor_id, role)

    async def delete(
        self,
        asset_id: str,
        actor_id: str,
        role: str = "user",
        options: DeletionOptions | None = None,
    ) -> DeletionResult:
        options = options or DeletionOptions()
        if not options.dry_run:
            await self._enforce_rate_limit(actor_id, "delete", self._settings.delete_rate_limit)
        return await self._deletion.execute_cascade_deletion(asset_id, actor_id, options, role)

    async def delete_batch(
        self,
        asset_ids: Iterable[str],
        actor_id: str,
        role: str = "user",
        options: DeletionOptions | None = None,
    ) -> BatchDeletionResult:
        """Delete many assets; one batch request counts once against the delete limit."""

        options = options or DeletionOptions()
        if not options.dry_run:
            await self._enforce_rate_limit(actor_id, "delete", self._settings.delete_rate_limit)
        return await self._deletion.execute_batch_cascade_deletion(asset_ids, actor_id, options, role)


@lru_cache(maxsize=1)
def get_image_service() -> ImageService:
    return ImageService(
        storage=get_object_storage(),
        metadata=get_metadata_service(),
        cache=get_cache_service(),
        access=get_access_middleware(),
        rate_limiter=get_rate_limiter(),
        deletion=get_deletion_service(),
    )


__all__ = [
    "AssetRecord",
    "BULK_OPERATIONS",
    "BulkItemError",
    "BulkOperationResult",
    "bulk_change_builder",
    "CreateAssetInput",
    "ImageService",
    "UploadTicket",
    "file_extension",
    "get_image_service",
]
