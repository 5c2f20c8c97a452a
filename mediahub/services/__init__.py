"""Convenience exports for service layer."""
from .access_control import (
    AccessController,
    AccessDecision,
    AccessMiddleware,
    AccessPolicy,
    PolicyEffect,
    PolicyStore,
    StorageAction,
    get_access_middleware,
)
from .cache_service import CacheError, CacheKeys, CacheService, CacheTTL, get_cache_service
from .cdn_service import CdnPurgeError, CdnPurger, get_cdn_purger
from .deletion_service import (
    BatchDeletionResult,
    CascadeDeletionService,
    DeletionOptions,
    DeletionPlan,
    DeletionResult,
    DeletionState,
    get_deletion_service,
)
from .identity import Identity, get_current_identity
from .kv_store import InMemoryKeyValueStore, KeyValueStore, KeyValueStoreError, RedisKeyValueStore, get_kv_store
from .media_service import (
    AssetRecord,
    BulkOperationResult,
    CreateAssetInput,
    ImageService,
    UploadTicket,
    get_image_service,
)
from .metadata_service import MetadataService, get_metadata_service
from .object_storage import (
    ObjectStorage,
    StorageConfigurationError,
    StorageError,
    StoredObject,
    get_object_storage,
)
from .rate_limiter import InMemoryRateLimiter, KeyValueRateLimiter, RateLimitDecision, get_rate_limiter
from .search_service import SearchIndex, SearchService, get_search_index, get_search_service
from .url_service import ImageUrlService, ParsedImageUrl, get_image_url_service

__all__ = [
    "AccessController",
    "AccessDecision",
    "AccessMiddleware",
    "AccessPolicy",
    "PolicyEffect",
    "PolicyStore",
    "StorageAction",
    "get_access_middleware",
    "CacheError",
    "CacheKeys",
    "CacheService",
    "CacheTTL",
    "get_cache_service",
    "CdnPurgeError",
    "CdnPurger",
    "get_cdn_purger",
    "BatchDeletionResult",
    "CascadeDeletionService",
    "DeletionOptions",
    "DeletionPlan",
    "DeletionResult",
    "DeletionState",
    "get_deletion_service",
    "Identity",
    "get_current_identity",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "KeyValueStoreError",
    "RedisKeyValueStore",
    "get_kv_store",
    "AssetRecord",
    "BulkOperationResult",
    "CreateAssetInput",
    "ImageService",
    "UploadTicket",
    "get_image_service",
    "MetadataService",
    "get_metadata_service",
    "ObjectStorage",
    "StorageConfigurationError",
    "StorageError",
    "StoredObject",
    "get_object_storage",
    "InMemoryRateLimiter",
    "KeyValueRateLimiter",
    "RateLimitDecision",
    "get_rate_limiter",
    "SearchIndex",
    "SearchService",
    "get_search_index",
    "get_search_service",
    "ImageUrlService",
    "ParsedImageUrl",
    "get_image_url_service",
]
