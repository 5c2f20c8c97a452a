"""Metadata records, transformation options and search models for images."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


VISIBILITY_VALUES: frozenset[str] = frozenset(item.value for item in Visibility)


class TransformationType(str, Enum):
    RESIZE = "resize"
    CROP = "crop"
    ROTATE = "rotate"
    FILTER = "filter"
    ENHANCEMENT = "enhancement"


class ImageVariant(BaseModel):
    """A resized or reformatted derivative stored next to the original."""

    id: str
    parent_asset_id: str
    name: str
    storage_key: str
    width: int
    height: int
    size: int = 0
    format: str
    quality: int = 100
    created_at: datetime = Field(default_factory=utcnow)


class ImageTransformation(BaseModel):
    """Append-only audit entry describing a transformation applied to an asset."""

    id: str
    type: TransformationType
    parameters: dict[str, Any] = Field(default_factory=dict)
    applied_at: datetime = Field(default_factory=utcnow)
    applied_by: str


class ImageMetadata(BaseModel):
    """Canonical metadata record for an uploaded image.

    Business rules (required identifiers, positive dimensions, visibility enum)
    are checked by ``MetadataService.validate_metadata`` so every problem can be
    reported at once instead of failing on the first field.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str = ""
    filename: str = ""
    original_name: str | None = None
    size: int | None = None
    mime_type: str = "application/octet-stream"
    format: str = "unknown"
    width: int | None = None
    height: int | None = None

    owner_id: str = ""
    storage_key: str = ""
    visibility: str = Visibility.PRIVATE.value

    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    description: str | None = None
    alt_text: str | None = None

    variants: list[ImageVariant] = Field(default_factory=list)
    transformations: list[ImageTransformation] = Field(default_factory=list)
    is_processed: bool = False

    is_deleted: bool = False
    deleted_at: datetime | None = None

    uploaded_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MetadataValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TransformationOptions(BaseModel):
    """Typed transformation parameter set encoded into image URLs."""

    model_config = ConfigDict(extra="ignore")

    width: int | None = None
    height: int | None = None
    quality: int | None = None
    format: str | None = None
    fit: str | None = None
    blur: float | None = None
    brightness: float | None = None
    contrast: float | None = None
    saturation: float | None = None
    rotate: float | None = None
    flip_horizontal: bool | None = None
    flip_vertical: bool | None = None


SortField = Literal["uploaded_at", "created_at", "size", "width", "height"]


class SearchQuery(BaseModel):
    """Filters, sorting and pagination accepted by the image search."""

    query: str | None = None
    tags: list[str] | None = None
    owner_id: str | None = None
    category: str | None = None
    visibility: Visibility | None = None

    min_width: int | None = None
    max_width: int | None = None
    min_height: int | None = None
    max_height: int | None = None
    min_size: int | None = None
    max_size: int | None = None

    uploaded_after: datetime | None = None
    uploaded_before: datetime | None = None

    formats: list[str] | None = None
    is_processed: bool | None = None
    has_variants: bool | None = None

    sort_by: SortField | None = None
    sort_order: Literal["asc", "desc"] = "asc"
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1)


class FacetCount(BaseModel):
    value: str
    count: int


class SearchFacets(BaseModel):
    formats: list[FacetCount] = Field(default_factory=list)
    tags: list[FacetCount] = Field(default_factory=list)
    categories: list[FacetCount] = Field(default_factory=list)
    sizes: list[FacetCount] = Field(default_factory=list)


class SearchResult(BaseModel):
    results: list[ImageMetadata]
    total: int
    offset: int
    limit: int
    has_more: bool
    facets: SearchFacets | None = None


__all__ = [
    "Visibility",
    "VISIBILITY_VALUES",
    "TransformationType",
    "ImageVariant",
    "ImageTransformation",
    "ImageMetadata",
    "MetadataValidationResult",
    "TransformationOptions",
    "SearchQuery",
    "FacetCount",
    "SearchFacets",
    "SearchResult",
    "utcnow",
]
