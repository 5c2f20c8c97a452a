"""Request and response schemas for the media HTTP API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .metadata import ImageMetadata, ImageVariant, TransformationOptions, Visibility


class UploadUrlRequest(BaseModel):
    content_type: str | None = Field(default=None, description="MIME type the client will upload")
    file_size: int | None = Field(default=None, ge=0, description="Declared size of the upload in bytes")


class BatchUploadUrlRequest(BaseModel):
    count: int = Field(..., ge=1)
    content_type: str | None = None


class UploadUrlResponse(BaseModel):
    """Presigned PUT URL plus the image id to confirm the upload with."""

    model_config = ConfigDict(from_attributes=True)

    upload_url: str
    id: str = Field(..., description="File name of the upload; pass it back when creating the asset")
    storage_key: str
    expires_in: int


class BatchUploadUrlResponse(BaseModel):
    items: list[UploadUrlResponse]
    error: str | None = None


class MediaCreateRequest(BaseModel):
    image_id: str = Field(..., min_length=1)
    type: str = "image"
    display_order: int = Field(default=0, ge=0)
    post_id: str | None = None
    draft_post_id: str | None = None
    visibility: Visibility = Visibility.PRIVATE
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    description: str | None = None
    alt_text: str | None = None
    width: int | None = None
    height: int | None = None


class MediaAssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    storage_key: str
    type: str
    mime_type: str
    size: int | None = None
    display_order: int = 0
    is_deleted: bool = False
    created_at: datetime | None = None
    metadata: ImageMetadata | None = None


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int


class MetadataUpdateRequest(BaseModel):
    """Editable metadata fields; unset fields are left unchanged."""

    tags: list[str] | None = None
    category: str | None = None
    description: str | None = None
    alt_text: str | None = None
    visibility: Visibility | None = None
    width: int | None = None
    height: int | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, mode="json")


class VariantCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    width: int = Field(..., ge=1, le=4000)
    height: int = Field(..., ge=1, le=4000)
    format: str = Field(..., min_length=1)
    quality: int = Field(default=100, ge=1, le=100)
    size: int = Field(default=0, ge=0)


class DeletionOptionsRequest(BaseModel):
    permanent: bool = True
    soft_delete: bool = False
    preserve_references: bool = False
    dry_run: bool = False


class BatchDeleteRequest(DeletionOptionsRequest):
    ids: list[str] = Field(..., min_length=1, max_length=100)


class StorageDeletionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    main_image: bool
    variants: list[str]


class DeletionResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    asset_id: str
    success: bool
    state: str
    dry_run: bool
    estimated_steps: int
    deleted_variants: list[str]
    storage_deleted: StorageDeletionResponse
    detached_posts: list[str]
    detached_drafts: list[str]
    warnings: list[str]
    errors: list[str]
    rollback_possible: bool


class BatchDeletionSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    successful: int
    failed: int


class BatchDeletionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    results: list[DeletionResultResponse]
    summary: BatchDeletionSummaryResponse


class DeletionPlanResponse(BaseModel):
    asset_id: str
    storage_key: str
    variants: list[ImageVariant]
    post_ids: list[str]
    draft_post_ids: list[str]
    warnings: list[str]
    estimated_steps: int


class BulkMetadataRequest(BaseModel):
    """One metadata edit applied to many images.

    ``parameters`` depends on ``operation``: ``update`` takes editable fields,
    ``tag``/``untag`` take ``tags`` (``tag`` also accepts ``replace``),
    ``categorize`` takes ``category`` and ``visibility`` takes ``visibility``.
    """

    ids: list[str] = Field(..., min_length=1, max_length=100)
    operation: Literal["update", "tag", "untag", "categorize", "visibility"]
    parameters: dict[str, Any] = Field(default_factory=dict)


class BulkItemErrorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    asset_id: str
    error: str


class BulkMetadataResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    operation: str
    total: int
    successful: int
    failed: int
    errors: list[BulkItemErrorResponse]


class TransformUrlRequest(BaseModel):
    asset_id: str = Field(..., min_length=1)
    transformations: TransformationOptions = Field(default_factory=TransformationOptions)


class TransformUrlResponse(BaseModel):
    url: str


class VerifyUrlRequest(BaseModel):
    url: str = Field(..., min_length=1)


class VerifyUrlResponse(BaseModel):
    valid: bool
    id: str | None = None
    transformations: TransformationOptions | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class PresetUrlsResponse(BaseModel):
    urls: dict[str, str]


__all__ = [
    "UploadUrlRequest",
    "BatchUploadUrlRequest",
    "UploadUrlResponse",
    "BatchUploadUrlResponse",
    "MediaCreateRequest",
    "MediaAssetResponse",
    "DownloadUrlResponse",
    "MetadataUpdateRequest",
    "VariantCreateRequest",
    "DeletionOptionsRequest",
    "BatchDeleteRequest",
    "DeletionResultResponse",
    "BatchDeletionResponse",
    "DeletionPlanResponse",
    "BulkMetadataRequest",
    "BulkItemErrorResponse",
    "BulkMetadataResponse",
    "TransformUrlRequest",
    "TransformUrlResponse",
    "VerifyUrlRequest",
    "VerifyUrlResponse",
    "PresetUrlsResponse",
]
