"""Convenience exports for schema layer."""
from .media import (
    BatchDeleteRequest,
    BatchDeletionResponse,
    BatchUploadUrlRequest,
    BatchUploadUrlResponse,
    BulkItemErrorResponse,
    BulkMetadataRequest,
    BulkMetadataResponse,
    DeletionOptionsRequest,
    DeletionPlanResponse,
    DeletionResultResponse,
    DownloadUrlResponse,
    MediaAssetResponse,
    MediaCreateRequest,
    MetadataUpdateRequest,
    PresetUrlsResponse,
    TransformUrlRequest,
    TransformUrlResponse,
    UploadUrlRequest,
    UploadUrlResponse,
    VariantCreateRequest,
    VerifyUrlRequest,
    VerifyUrlResponse,
)
from .metadata import (
    FacetCount,
    ImageMetadata,
    ImageTransformation,
    ImageVariant,
    MetadataValidationResult,
    SearchFacets,
    SearchQuery,
    SearchResult,
    TransformationOptions,
    TransformationType,
    Visibility,
)

__all__ = [
    "BatchDeleteRequest",
    "BatchDeletionResponse",
    "BatchUploadUrlRequest",
    "BatchUploadUrlResponse",
    "BulkItemErrorResponse",
    "BulkMetadataRequest",
    "BulkMetadataResponse",
    "DeletionOptionsRequest",
    "DeletionPlanResponse",
    "DeletionResultResponse",
    "DownloadUrlResponse",
    "MediaAssetResponse",
    "MediaCreateRequest",
    "MetadataUpdateRequest",
    "PresetUrlsResponse",
    "TransformUrlRequest",
    "TransformUrlResponse",
    "UploadUrlRequest",
    "UploadUrlResponse",
    "VariantCreateRequest",
    "VerifyUrlRequest",
    "VerifyUrlResponse",
    "FacetCount",
    "ImageMetadata",
    "ImageTransformation",
    "ImageVariant",
    "MetadataValidationResult",
    "SearchFacets",
    "SearchQuery",
    "SearchResult",
    "TransformationOptions",
    "TransformationType",
    "Visibility",
]
