"""Media asset endpoints: upload issuance, registration, downloads, metadata and deletion."""
from __future__ import annotations

import dataclasses
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from ..errors import MediaError, PartialFailure
from ..schemas import (
    BatchDeleteRequest,
    BatchDeletionResponse,
    BatchUploadUrlRequest,
    BatchUploadUrlResponse,
    BulkMetadataRequest,
    BulkMetadataResponse,
    DeletionOptionsRequest,
    DeletionPlanResponse,
    DeletionResultResponse,
    DownloadUrlResponse,
    ImageMetadata,
    MediaAssetResponse,
    MediaCreateRequest,
    MetadataUpdateRequest,
    UploadUrlRequest,
    UploadUrlResponse,
    VariantCreateRequest,
)
from ..services import (
    CreateAssetInput,
    DeletionOptions,
    DeletionResult,
    Identity,
    ImageService,
    get_current_identity,
    get_image_service,
)

router = APIRouter(prefix="/media", tags=["media"])


def http_error(exc: MediaError) -> HTTPException:
    """Translate a service failure into the matching HTTP error."""

    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return HTTPException(status_code=exc.status_code, detail=exc.message, headers=headers)


def _deletion_payload(result: DeletionResult) -> dict[str, Any]:
    payload = dataclasses.asdict(result)
    payload["state"] = result.state.value
    return DeletionResultResponse.model_validate(payload).model_dump(mode="json")


def _deletion_options(body: DeletionOptionsRequest) -> DeletionOptions:
    return DeletionOptions(
        permanent=body.permanent,
        soft_delete=body.soft_delete,
        preserve_references=body.preserve_references,
        dry_run=body.dry_run,
    )


@router.post("/upload-url", response_model=UploadUrlResponse)
async def request_upload_url(
    body: UploadUrlRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> UploadUrlResponse:
    """Issue a presigned PUT URL; the client uploads bytes directly to storage."""

    try:
        ticket = await service.get_upload_url(identity.actor_id, identity.role, body.content_type, body.file_size)
    except MediaError as exc:
        raise http_error(exc) from exc
    return UploadUrlResponse.model_validate(ticket)


@router.post("/upload-urls", response_model=BatchUploadUrlResponse)
async def request_batch_upload_urls(
    body: BatchUploadUrlRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
):
    try:
        tickets = await service.get_batch_upload_urls(identity.actor_id, identity.role, body.count, body.content_type)
    except PartialFailure as exc:
        items = [UploadUrlResponse.model_validate(ticket).model_dump() for ticket in exc.results]
        return JSONResponse(status_code=exc.status_code, content={"items": items, "error": exc.message})
    except MediaError as exc:
        raise http_error(exc) from exc
    return BatchUploadUrlResponse(items=[UploadUrlResponse.model_validate(ticket) for ticket in tickets])


@router.post("", response_model=MediaAssetResponse, status_code=status.HTTP_201_CREATED)
async def create_media_asset(
    body: MediaCreateRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> MediaAssetResponse:
    """Register an uploaded object and write its metadata."""

    data = CreateAssetInput(**body.model_dump(mode="json"))
    try:
        record = await service.create(identity.actor_id, data)
    except MediaError as exc:
        raise http_error(exc) from exc
    return MediaAssetResponse.model_validate(record)


@router.get("/{asset_id}", response_model=MediaAssetResponse)
async def get_media_asset(
    asset_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> MediaAssetResponse:
    try:
        record = await service.find_by_id(asset_id, identity.actor_id, identity.role)
    except MediaError as exc:
        raise http_error(exc) from exc
    return MediaAssetResponse.model_validate(record)


@router.get("/{asset_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    asset_id: str,
    expires_in: int | None = Query(default=None),
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> DownloadUrlResponse:
    try:
        url = await service.get_image_url(asset_id, identity.actor_id, identity.role, expires_in)
    except MediaError as exc:
        raise http_error(exc) from exc
    return DownloadUrlResponse(url=url, expires_in=expires_in or service.default_download_expiry)


@router.get("/{asset_id}/metadata", response_model=ImageMetadata)
async def get_media_metadata(
    asset_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> ImageMetadata:
    try:
        return await service.get_metadata(asset_id, identity.actor_id, identity.role)
    except MediaError as exc:
        raise http_error(exc) from exc


@router.patch("/{asset_id}/metadata", response_model=ImageMetadata)
async def update_media_metadata(
    asset_id: str,
    body: MetadataUpdateRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> ImageMetadata:
    try:
        return await service.update_metadata(asset_id, identity.actor_id, identity.role, body.changes())
    except MediaError as exc:
        raise http_error(exc) from exc


@router.post("/{asset_id}/variants", response_model=ImageMetadata, status_code=status.HTTP_201_CREATED)
async def add_media_variant(
    asset_id: str,
    body: VariantCreateRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> ImageMetadata:
    try:
        return await service.add_variant(
            asset_id,
            identity.actor_id,
            identity.role,
            name=body.name,
            width=body.width,
            height=body.height,
            image_format=body.format,
            quality=body.quality,
            size=body.size,
        )
    except MediaError as exc:
        raise http_error(exc) from exc


@router.get("/{asset_id}/deletion-plan", response_model=DeletionPlanResponse)
async def get_deletion_plan(
    asset_id: str,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
) -> DeletionPlanResponse:
    try:
        plan = await service.plan_deletion(asset_id, identity.actor_id, identity.role)
    except MediaError as exc:
        raise http_error(exc) from exc
    return DeletionPlanResponse(
        asset_id=plan.asset.id,
        storage_key=plan.asset.storage_key,
        variants=plan.variants,
        post_ids=plan.post_ids,
        draft_post_ids=plan.draft_post_ids,
        warnings=plan.warnings,
        estimated_steps=plan.estimated_steps,
    )


@router.post("/batch-delete", response_model=BatchDeletionResponse)
async def delete_media_batch(
    body: BatchDeleteRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
):
    """Delete many assets; answers 207 when some deletions failed and others did not."""

    options = _deletion_options(body)
    try:
        outcome = await service.delete_batch(body.ids, identity.actor_id, identity.role, options)
    except MediaError as exc:
        raise http_error(exc) from exc

    content = {
        "results": [_deletion_payload(result) for result in outcome.results],
        "summary": dataclasses.asdict(outcome.summary),
    }
    if outcome.summary.successful and outcome.summary.failed:
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=content)
    return content


@router.post("/metadata/bulk", response_model=BulkMetadataResponse)
async def bulk_update_media_metadata(
    body: BulkMetadataRequest,
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
):
    """Apply one metadata edit to many images; answers 207 when only some were updated."""

    try:
        result = await service.bulk_update_metadata(
            body.ids, identity.actor_id, identity.role, body.operation, body.parameters
        )
    except MediaError as exc:
        raise http_error(exc) from exc

    content = dataclasses.asdict(result)
    if result.successful and result.failed:
        return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=content)
    return content


@router.delete("/{asset_id}", response_model=DeletionResultResponse)
async def delete_media_asset(
    asset_id: str,
    permanent: bool = Query(default=True),
    soft_delete: bool = Query(default=False),
    preserve_references: bool = Query(default=False),
    dry_run: bool = Query(default=False),
    identity: Identity = Depends(get_current_identity),
    service: ImageService = Depends(get_image_service),
):
    """Cascade-delete one asset; a rejected or rolled-back deletion is reported with its status code."""

    options = DeletionOptions(
        permanent=permanent,
        soft_delete=soft_delete,
        preserve_references=preserve_references,
        dry_run=dry_run,
    )
    try:
        result = await service.delete(asset_id, identity.actor_id, identity.role, options)
    except MediaError as exc:
        raise http_error(exc) from exc

    payload = _deletion_payload(result)
    if not result.success:
        return JSONResponse(status_code=result.failure_status or status.HTTP_502_BAD_GATEWAY, content=payload)
    return payload


__all__ = ["router", "http_error"]
