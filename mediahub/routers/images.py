"""Transformation URLs and image search endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..errors import MediaError
from ..schemas import (
    PresetUrlsResponse,
    SearchFacets,
    SearchQuery,
    SearchResult,
    TransformUrlRequest,
    TransformUrlResponse,
    VerifyUrlRequest,
    VerifyUrlResponse,
    Visibility,
)
from ..services import (
    Identity,
    ImageService,
    ImageUrlService,
    SearchService,
    get_current_identity,
    get_image_service,
    get_image_url_service,
    get_search_service,
)
from .media import http_error

router = APIRouter(prefix="/images", tags=["images"])


def _scoped_query(query: SearchQuery, identity: Identity) -> SearchQuery:
    """Plain users only see public images of other owners."""

    if identity.role == "user" and query.owner_id != identity.actor_id:
        return query.model_copy(update={"visibility": Visibility.PUBLIC})
    return query


@router.post("/url", response_model=TransformUrlResponse)
async def create_transform_url(
    body: TransformUrlRequest,
    identity: Identity = Depends(get_current_identity),
    urls: ImageUrlService = Depends(get_image_url_service),
    service: ImageService = Depends(get_image_service),
) -> TransformUrlResponse:
    """Sign a transformation URL for an image the caller may read."""

    validation = urls.validate_transformations(body.transformations)
    if not validation.valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=", ".join(validation.errors))
    try:
        await service.find_by_id(body.asset_id, identity.actor_id, identity.role)
    except MediaError as exc:
        raise http_error(exc) from exc
    return TransformUrlResponse(url=urls.generate_url(body.asset_id, body.transformations))


@router.post("/verify", response_model=VerifyUrlResponse)
async def verify_transform_url(
    body: VerifyUrlRequest,
    urls: ImageUrlService = Depends(get_image_url_service),
) -> VerifyUrlResponse:
    """Check a transformation URL and return the parameters the transformer should apply."""

    parsed = urls.parse_url(body.url)
    if parsed is None:
        return VerifyUrlResponse(valid=False, errors=["Not an image transformation URL"])
    if not urls.validate_signature(parsed):
        return VerifyUrlResponse(valid=False, id=parsed.id, errors=["Invalid or expired signature"])

    validation = urls.validate_transformations(parsed.transformations)
    return VerifyUrlResponse(
        valid=validation.valid,
        id=parsed.id,
        transformations=parsed.transformations,
        params=urls.transformations_to_params(parsed.transformations),
        errors=validation.errors,
    )


@router.get("/{asset_id}/presets", response_model=PresetUrlsResponse)
async def get_preset_urls(
    asset_id: str,
    identity: Identity = Depends(get_current_identity),
    urls: ImageUrlService = Depends(get_image_url_service),
    service: ImageService = Depends(get_image_service),
) -> PresetUrlsResponse:
    try:
        await service.find_by_id(asset_id, identity.actor_id, identity.role)
    except MediaError as exc:
        raise http_error(exc) from exc
    return PresetUrlsResponse(urls=urls.generate_preset_urls(asset_id))


@router.post("/search", response_model=SearchResult)
async def search_images(
    query: SearchQuery,
    identity: Identity = Depends(get_current_identity),
    search: SearchService = Depends(get_search_service),
) -> SearchResult:
    try:
        return await search.search_images(_scoped_query(query, identity))
    except MediaError as exc:
        raise http_error(exc) from exc


@router.post("/facets", response_model=SearchFacets)
async def get_search_facets(
    query: SearchQuery,
    identity: Identity = Depends(get_current_identity),
    search: SearchService = Depends(get_search_service),
) -> SearchFacets:
    try:
        return await search.get_facets(_scoped_query(query, identity))
    except MediaError as exc:
        raise http_error(exc) from exc


__all__ = ["router"]
