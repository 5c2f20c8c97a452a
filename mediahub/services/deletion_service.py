"""Cascade deletion of an image across storage, metadata, the database and caches.

A single deletion walks ``planned -> executing -> succeeded | partially_failed``.
Removing the original bytes and removing the database record are critical: a
failure in either stops the remaining destructive steps and triggers a
best-effort rollback (``rollback_attempted``). Every other failure is recorded
on the result without affecting ``success``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable, Iterable

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import create_session
from ..errors import AuthorizationError, NotFoundError
from ..models import DraftPost, MediaAsset, Post
from ..schemas.metadata import ImageMetadata, ImageVariant
from .access_control import AccessMiddleware, get_access_middleware
from .cache_service import CacheKeys, CacheService, get_cache_service
from .cdn_service import CdnPurger, get_cdn_purger
from .metadata_service import MetadataService, get_metadata_service
from .object_storage import ObjectStorage, get_object_storage

logger = logging.getLogger(__name__)


class DeletionState(str, Enum):
    PLANNED = "planned"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    ROLLBACK_ATTEMPTED = "rollback_attempted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DeletionOptions:
    permanent: bool = True
    soft_delete: bool = False
    preserve_references: bool = False
    dry_run: bool = False

    @property
    def soft(self) -> bool:
        """Keep the record (flagged deleted) instead of removing it."""

        return self.soft_delete or not self.permanent


@dataclass(frozen=True)
class AssetSnapshot:
    id: str
    owner_id: str
    storage_key: str
    mime_type: str
    size: int | None
    is_deleted: bool

    @classmethod
    def from_row(cls, asset: MediaAsset) -> "AssetSnapshot":
        return cls(
            id=asset.id,
            owner_id=asset.owner_id,
            storage_key=asset.storage_key,
            mime_type=asset.mime_type,
            size=asset.size,
            is_deleted=bool(asset.is_deleted),
        )


@dataclass
class DeletionPlan:
    asset: AssetSnapshot
    metadata: ImageMetadata | None = None
    variants: list[ImageVariant] = field(default_factory=list)
    post_ids: list[str] = field(default_factory=list)
    draft_post_ids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def reference_count(self) -> int:
        return len(self.post_ids) + len(self.draft_post_ids)

    @property
    def estimated_steps(self) -> int:
        return 1 + len(self.variants) + self.reference_count


@dataclass
class StorageDeletion:
    main_image: bool = False
    variants: list[str] = field(default_factory=list)


@dataclass
class DeletionResult:
    asset_id: str
    success: bool = False
    state: DeletionState = DeletionState.PLANNED
    dry_run: bool = False
    estimated_steps: int = 0
    deleted_variants: list[str] = field(default_factory=list)
    storage_deleted: StorageDeletion = field(default_factory=StorageDeletion)
    detached_posts: list[str] = field(default_factory=list)
    detached_drafts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    rollback_possible: bool = True
    failure_status: int | None = None


@dataclass(frozen=True)
class BatchDeletionSummary:
    total: int
    successful: int
    failed: int


@dataclass
class BatchDeletionResult:
    results: list[DeletionResult]
    summary: BatchDeletionSummary


@dataclass
class _Progress:
    references_detached: bool = False
    metadata_removed: bool = False
    purged_keys: list[str] = field(default_factory=list)


class _CriticalStepFailed(Exception):
    pass


class CascadeDeletionService:
    def __init__(
        self,
        *,
        storage: ObjectStorage,
        metadata: MetadataService,
        cache: CacheService,
        access: AccessMiddleware,
        session_factory: Callable[[], Session] = create_session,
        cdn: CdnPurger | None = None,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.1,
        variant_warning_threshold: int = 10,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._storage = storage
        self._metadata = metadata
        self._cache = cache
        self._access = access
        self._session_factory = session_factory
        self._cdn = cdn
        self._batch_size = batch_size
        self._batch_delay = batch_delay_seconds
        self._variant_warning_threshold = variant_warning_threshold
        self._in_flight: set[str] = set()

    # Database helpers run in the threadpool with one session per call.

    async def _load_references(self, asset_id: str) -> tuple[AssetSnapshot | None, list[str], list[str]]:
        def _query() -> tuple[AssetSnapshot | None, list[str], list[str]]:
            with self._session_factory() as session:
                asset = session.get(MediaAsset, asset_id)
                if asset is None:
                    return None, [], []
                post_ids = list(session.scalars(select(Post.id).where(Post.media_asset_id == asset_id)))
                draft_ids = list(session.scalars(select(DraftPost.id).where(DraftPost.media_asset_id == asset_id)))
                return AssetSnapshot.from_row(asset), post_ids, draft_ids

        return await run_in_threadpool(_query)

    async def _set_references(self, asset_id: str | None, post_ids: list[str], draft_ids: list[str]) -> None:
        def _apply() -> None:
            with self._session_factory() as session:
                if post_ids:
                    session.execute(update(Post).where(Post.id.in_(post_ids)).values(media_asset_id=asset_id))
                if draft_ids:
                    session.execute(
                        update(DraftPost).where(DraftPost.id.in_(draft_ids)).values(media_asset_id=asset_id)
                    )
                session.commit()

        await run_in_threadpool(_apply)

    async def _remove_record(self, asset_id: str, *, soft: bool) -> None:
        def _apply() -> None:
            with self._session_factory() as session:
                asset = session.get(MediaAsset, asset_id)
                if asset is None:
                    raise NotFoundError(f"Media not found: {asset_id}")
                if soft:
                    asset.is_deleted = True
                    asset.deleted_at = datetime.now(timezone.utc)
                else:
                    session.delete(asset)
                session.commit()

        await run_in_threadpool(_apply)

    async def plan_cascade_deletion(self, asset_id: str, actor_id: str, role: str = "user") -> DeletionPlan:
        """Describe what deleting ``asset_id`` will touch, without side effects.

        Raises :class:`NotFoundError` or :class:`AuthorizationError`.
        """

        snapshot, post_ids, draft_ids = await self._load_references(asset_id)
        if snapshot is None:
            raise NotFoundError(f"Media not found: {asset_id}")

        decision = await self._access.validate_delete(
            actor_id, role, snapshot.storage_key, owner_id=snapshot.owner_id
        )
        if not decision.allowed:
            raise AuthorizationError(decision.reason or "Access denied")

        plan = DeletionPlan(asset=snapshot, post_ids=post_ids, draft_post_ids=draft_ids)
        try:
            plan.metadata = await self._metadata.get(asset_id)
        except Exception as exc:
            logger.warning("Metadata unavailable while planning deletion of %s: %s", asset_id, exc)
            plan.warnings.append(f"Metadata unavailable; variants may be left in storage: {exc}")
        if plan.metadata is not None:
            plan.variants = list(plan.metadata.variants)

        if len(plan.variants) > self._variant_warning_threshold:
            plan.warnings.append(f"Asset has {len(plan.variants)} variants; deletion will take longer than usual")
        if plan.reference_count:
            plan.warnings.append(
                f"Asset is referenced by {len(post_ids)} post(s) and {len(draft_ids)} draft(s)"
            )
        return plan

    async def execute_cascade_deletion(
        self,
        asset_id: str,
        actor_id: str,
        options: DeletionOptions | None = None,
        role: str = "user",
    ) -> DeletionResult:
        options = options or DeletionOptions()
        result = DeletionResult(asset_id=asset_id, dry_run=options.dry_run)

        if asset_id in self._in_flight:
            result.state = DeletionState.REJECTED
            result.errors.append(f"Deletion already in progress for {asset_id}")
            result.failure_status = 409
            return result

        self._in_flight.add(asset_id)
        try:
            return await self._execute(asset_id, actor_id, options, role, result)
        finally:
            self._in_flight.discard(asset_id)

    async def _execute(
        self,
        asset_id: str,
        actor_id: str,
        options: DeletionOptions,
        role: str,
        result: DeletionResult,
    ) -> DeletionResult:
        try:
            plan = await self.plan_cascade_deletion(asset_id, actor_id, role)
        except (NotFoundError, AuthorizationError) as exc:
            result.state = DeletionState.REJECTED
            result.errors.append(exc.message)
            result.failure_status = exc.status_code
            return result
        except Exception as exc:
            logger.exception("Planning deletion of %s failed", asset_id)
            result.state = DeletionState.REJECTED
            result.errors.append(f"Failed to plan deletion: {exc}")
            result.failure_status = 502
            return result

        result.estimated_steps = plan.estimated_steps
        result.warnings = list(plan.warnings)

        if plan.asset.is_deleted and options.soft:
            result.state = DeletionState.REJECTED
            result.errors.append(f"Media not found: {asset_id}")
            result.failure_status = 404
            return result

        if options.dry_run:
            result.success = True
            return result

        result.state = DeletionState.EXECUTING
        logger.info("Starting deletion for media %s (%d steps)", asset_id, plan.estimated_steps)
        progress = _Progress()

        try:
            await self._detach_references(plan, options, result, progress)
            await self._delete_variants(plan, result, progress)
            if options.permanent:
                await self._delete_main_object(plan, result, progress)
            await self._remove_metadata(plan, options, result, progress)
            await self._remove_database_record(plan, options, result)
        except _CriticalStepFailed:
            await self._rollback(plan, result, progress)
            logger.error("Deletion of media %s aborted: %s", asset_id, "; ".join(result.errors))
            return result

        await self._invalidate_caches(plan, result, progress)

        result.success = True
        result.state = DeletionState.PARTIALLY_FAILED if result.errors else DeletionState.SUCCEEDED
        logger.info("Deletion completed for media %s: %s", asset_id, result.state.value)
        return result

    async def _detach_references(
        self, plan: DeletionPlan, options: DeletionOptions, result: DeletionResult, progress: _Progress
    ) -> None:
        if not plan.reference_count:
            return
        if options.preserve_references:
            logger.info(
                "Preserving references to %s from posts %s and drafts %s",
                plan.asset.id,
                plan.post_ids,
                plan.draft_post_ids,
            )
            return
        try:
            await self._set_references(None, plan.post_ids, plan.draft_post_ids)
        except Exception as exc:
            logger.warning("Failed to detach references to %s: %s", plan.asset.id, exc)
            result.errors.append(f"Failed to detach references: {exc}")
            return
        progress.references_detached = True
        result.detached_posts = list(plan.post_ids)
        result.detached_drafts = list(plan.draft_post_ids)

    async def _delete_variants(self, plan: DeletionPlan, result: DeletionResult, progress: _Progress) -> None:
        for variant in plan.variants:
            try:
                await self._storage.delete(variant.storage_key)
            except Exception as exc:
                result.errors.append(f"Failed to delete variant {variant.id}: {exc}")
                continue
            progress.purged_keys.append(variant.storage_key)
            result.deleted_variants.append(variant.id)
            result.storage_deleted.variants.append(variant.id)

    async def _delete_main_object(self, plan: DeletionPlan, result: DeletionResult, progress: _Progress) -> None:
        try:
            await self._storage.delete(plan.asset.storage_key)
        except Exception as exc:
            result.errors.append(f"Failed to delete main image: {exc}")
            raise _CriticalStepFailed from exc
        progress.purged_keys.append(plan.asset.storage_key)
        result.storage_deleted.main_image = True

    async def _remove_metadata(
        self, plan: DeletionPlan, options: DeletionOptions, result: DeletionResult, progress: _Progress
    ) -> None:
        if plan.metadata is None:
            return
        try:
            if options.soft:
                await self._metadata.mark_deleted(plan.asset.id)
            else:
                await self._metadata.delete(plan.asset.id)
        except Exception as exc:
            result.errors.append(f"Failed to delete metadata: {exc}")
            return
        progress.metadata_removed = True

    async def _remove_database_record(
        self, plan: DeletionPlan, options: DeletionOptions, result: DeletionResult
    ) -> None:
        try:
            await self._remove_record(plan.asset.id, soft=options.soft)
        except Exception as exc:
            result.errors.append(f"Failed to delete database record: {exc}")
            raise _CriticalStepFailed from exc

    async def _invalidate_caches(self, plan: DeletionPlan, result: DeletionResult, progress: _Progress) -> None:
        asset = plan.asset
        steps = (
            lambda: self._cache.delete(CacheKeys.media(asset.id)),
            lambda: self._cache.invalidate_pattern(f"*{asset.id}*"),
            lambda: self._cache.invalidate_pattern(f"*{asset.storage_key}*"),
            lambda: self._cache.invalidate_pattern(CacheKeys.search("*")),
        )
        for step in steps:
            try:
                await step()
            except Exception as exc:
                result.errors.append(f"Failed to clear cache: {exc}")

        if progress.purged_keys:
            try:
                await self.purge_cdn_cache(progress.purged_keys)
            except Exception as exc:
                result.errors.append(f"Failed to purge CDN cache: {exc}")

    async def purge_cdn_cache(self, storage_keys: list[str]) -> list[str]:
        """Drop edge copies of removed objects; returns the URLs purged."""

        if self._cdn is None:
            return []
        return await self._cdn.purge(storage_keys)

    async def _rollback(self, plan: DeletionPlan, result: DeletionResult, progress: _Progress) -> None:
        """Restore what can be restored; purged bytes are only reported."""

        result.state = DeletionState.ROLLBACK_ATTEMPTED
        result.success = False
        result.failure_status = 502
        try:
            if progress.references_detached:
                await self._set_references(plan.asset.id, plan.post_ids, plan.draft_post_ids)
                result.detached_posts = []
                result.detached_drafts = []
            if progress.metadata_removed and plan.metadata is not None:
                await self._metadata.store(plan.asset.id, plan.metadata)
        except Exception as exc:
            logger.exception("Rollback of media %s failed", plan.asset.id)
            result.rollback_possible = False
            result.errors.append(f"Rollback failed: {exc}")

        if progress.purged_keys:
            logger.error(
                "Media %s: objects already removed from storage cannot be restored: %s",
                plan.asset.id,
                progress.purged_keys,
            )

    async def execute_batch_cascade_deletion(
        self,
        asset_ids: Iterable[str],
        actor_id: str,
        options: DeletionOptions | None = None,
        role: str = "user",
    ) -> BatchDeletionResult:
        ids = list(asset_ids)
        logger.info("Starting batch deletion of %d media items", len(ids))

        results: list[DeletionResult] = []
        for start in range(0, len(ids), self._batch_size):
            if start:
                await asyncio.sleep(self._batch_delay)
            batch = ids[start : start + self._batch_size]
            outcomes = await asyncio.gather(
                *(self.execute_cascade_deletion(asset_id, actor_id, options, role) for asset_id in batch),
                return_exceptions=True,
            )
            for asset_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, DeletionResult):
                    results.append(outcome)
                    continue
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Deletion of media %s raised: %s", asset_id, outcome)
                results.append(
                    DeletionResult(
                        asset_id=asset_id,
                        state=DeletionState.REJECTED,
                        errors=[str(outcome) or type(outcome).__name__],
                        failure_status=500,
                    )
                )

        successful = sum(1 for item in results if item.success)
        summary = BatchDeletionSummary(total=len(ids), successful=successful, failed=len(results) - successful)
        logger.info("Batch deletion completed: %d successful, %d failed", summary.successful, summary.failed)
        return BatchDeletionResult(results=results, summary=summary)


@lru_cache(maxsize=1)
def get_deletion_service() -> CascadeDeletionService:
    settings = get_settings()
    return CascadeDeletionService(
        storage=get_object_storage(),
        metadata=get_metadata_service(),
        cache=get_cache_service(),
        access=get_access_middleware(),
        cdn=get_cdn_purger(),
        batch_size=settings.deletion_batch_size,
        batch_delay_seconds=settings.deletion_batch_delay_seconds,
        variant_warning_threshold=settings.deletion_variant_warning_threshold,
    )


__all__ = [
    "DeletionState",
    "DeletionOptions",
    "AssetSnapshot",
    "DeletionPlan",
    "StorageDeletion",
    "DeletionResult",
    "BatchDeletionSummary",
    "BatchDeletionResult",
    "CascadeDeletionService",
    "get_deletion_service",
]
