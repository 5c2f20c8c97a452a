"""HTTP surface wired to in-memory services through dependency overrides."""
from __future__ import annotations

import asyncio
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import ServiceBundle, build_services, insert_post
from mediahub.main import app
from mediahub.schemas.metadata import ImageMetadata
from mediahub.services import get_image_service, get_image_url_service, get_search_service
from mediahub.services.url_service import ImageUrlService

ALICE = {"X-Actor-Id": "alice"}
BOB = {"X-Actor-Id": "bob"}


@pytest.fixture
def bundle() -> ServiceBundle:
    return build_services()


@pytest.fixture
def client(bundle: ServiceBundle) -> Iterator[TestClient]:
    app.dependency_overrides[get_image_service] = lambda: bundle.images
    app.dependency_overrides[get_search_service] = lambda: bundle.search
    app.dependency_overrides[get_image_url_service] = lambda: ImageUrlService(base_url="/images")
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client: TestClient, bundle: ServiceBundle, asset_id: str, **fields) -> dict:
    bundle.storage.seed(f"images/alice_{asset_id}.jpg")
    response = client.post("/media", json={"image_id": f"{asset_id}.jpg", **fields}, headers=ALICE)
    assert response.status_code == 201, response.text
    return response.json()


def test_missing_actor_header_is_unauthorized(client):
    response = client.post("/media/upload-url", json={"content_type": "image/jpeg"})
    assert response.status_code == 401


def test_unknown_role_is_forbidden(client):
    response = client.get("/media/a1", headers={"X-Actor-Id": "alice", "X-Actor-Role": "owner"})
    assert response.status_code == 403


def test_upload_url_is_issued_for_caller(client):
    response = client.post("/media/upload-url", json={"content_type": "image/png", "file_size": 1024}, headers=ALICE)

    assert response.status_code == 200
    body = response.json()
    assert body["storage_key"] == f"images/alice_{body['id']}"
    assert body["id"].endswith(".png")
    assert "method=PUT" in body["upload_url"]
    assert body["expires_in"] == 3600


def test_upload_url_rejects_unsupported_types(client):
    response = client.post("/media/upload-url", json={"content_type": "application/pdf"}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported file type: application/pdf"


def test_upload_url_rate_limit_sets_retry_after(client):
    for _ in range(10):
        assert client.post("/media/upload-url", json={}, headers=ALICE).status_code == 200

    response = client.post("/media/upload-url", json={}, headers=ALICE)

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["detail"].startswith("Rate limit exceeded")


def test_batch_upload_urls(client):
    response = client.post("/media/upload-urls", json={"count": 3, "content_type": "image/jpeg"}, headers=ALICE)

    assert response.status_code == 200
    assert len({item["id"] for item in response.json()["items"]}) == 3


def test_create_requires_uploaded_object(client):
    response = client.post("/media", json={"image_id": "ghost.jpg"}, headers=ALICE)
    assert response.status_code == 404


def test_asset_lifecycle(client, bundle):
    created = _register(client, bundle, "a1", tags=["nature"], visibility="public")
    assert created["id"] == "a1"
    assert created["storage_key"] == "images/alice_a1.jpg"
    assert created["metadata"]["tags"] == ["nature"]

    fetched = client.get("/media/a1", headers=ALICE)
    assert fetched.status_code == 200
    assert fetched.json()["owner_id"] == "alice"

    download = client.get("/media/a1/download-url", params={"expires_in": 600}, headers=ALICE)
    assert download.status_code == 200
    assert download.json() == {
        "url": "https://test-bucket.storage.test/images/alice_a1.jpg?method=GET&expires=600",
        "expires_in": 600,
    }

    patched = client.patch("/media/a1/metadata", json={"description": "Lake at dawn"}, headers=ALICE)
    assert patched.status_code == 200
    assert patched.json()["description"] == "Lake at dawn"
    assert patched.json()["tags"] == ["nature"]

    variant = client.post(
        "/media/a1/variants", json={"name": "small", "width": 400, "height": 300, "format": "webp"}, headers=ALICE
    )
    assert variant.status_code == 201
    assert variant.json()["variants"][0]["storage_key"] == "images/a1/variants/400w.webp"

    plan = client.get("/media/a1/deletion-plan", headers=ALICE)
    assert plan.status_code == 200
    assert plan.json()["storage_key"] == "images/alice_a1.jpg"
    assert len(plan.json()["variants"]) == 1


def test_create_links_post_reference(client, bundle):
    insert_post("p1", None)
    _register(client, bundle, "a1", post_id="p1")

    plan = client.get("/media/a1/deletion-plan", headers=ALICE)

    assert plan.json()["post_ids"] == ["p1"]


def test_other_users_cannot_modify_metadata(client, bundle):
    _register(client, bundle, "a1", visibility="public")

    response = client.patch("/media/a1/metadata", json={"description": "mine now"}, headers=BOB)

    assert response.status_code == 403


def test_delete_dry_run_then_delete(client, bundle):
    _register(client, bundle, "a1")

    dry = client.delete("/media/a1", params={"dry_run": "true"}, headers=ALICE)
    assert dry.status_code == 200
    assert dry.json()["state"] == "planned"
    assert "images/alice_a1.jpg" in bundle.storage.objects

    deleted = client.delete("/media/a1", headers=ALICE)
    assert deleted.status_code == 200
    assert deleted.json()["success"] is True
    assert "images/alice_a1.jpg" not in bundle.storage.objects

    again = client.delete("/media/a1", headers=ALICE)
    assert again.status_code == 404
    assert again.json()["errors"] == ["Media not found: a1"]
    assert client.get("/media/a1", headers=ALICE).status_code == 404


def test_batch_delete_with_mixed_results_is_multi_status(client, bundle):
    _register(client, bundle, "a1")
    _register(client, bundle, "a2")

    response = client.post("/media/batch-delete", json={"ids": ["a1", "a2", "missing"]}, headers=ALICE)

    assert response.status_code == 207
    body = response.json()
    assert body["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert {result["asset_id"] for result in body["results"]} == {"a1", "a2", "missing"}


def test_bulk_metadata_with_mixed_results_is_multi_status(client, bundle):
    _register(client, bundle, "a1", tags=["nature"])
    _register(client, bundle, "a2")

    response = client.post(
        "/media/metadata/bulk",
        json={"ids": ["a1", "a2", "missing"], "operation": "tag", "parameters": {"tags": ["sunset"]}},
        headers=ALICE,
    )

    assert response.status_code == 207
    assert response.json() == {
        "operation": "tag",
        "total": 3,
        "successful": 2,
        "failed": 1,
        "errors": [{"asset_id": "missing", "error": "Media not found: missing"}],
    }
    assert client.get("/media/a1/metadata", headers=ALICE).json()["tags"] == ["nature", "sunset"]


def test_bulk_metadata_all_succeeded_or_all_denied(client, bundle):
    _register(client, bundle, "a1")
    body = {"ids": ["a1"], "operation": "visibility", "parameters": {"visibility": "public"}}

    denied = client.post("/media/metadata/bulk", json=body, headers=BOB)
    applied = client.post("/media/metadata/bulk", json=body, headers=ALICE)

    assert denied.status_code == 200
    assert denied.json()["failed"] == 1
    assert applied.status_code == 200
    assert applied.json()["successful"] == 1
    assert client.get("/media/a1/metadata", headers=ALICE).json()["visibility"] == "public"


def test_bulk_metadata_rejects_bad_requests(client, bundle):
    _register(client, bundle, "a1")

    bad_parameters = client.post(
        "/media/metadata/bulk",
        json={"ids": ["a1"], "operation": "visibility", "parameters": {"visibility": "secret"}},
        headers=ALICE,
    )
    unknown_operation = client.post(
        "/media/metadata/bulk", json={"ids": ["a1"], "operation": "rename"}, headers=ALICE
    )

    assert bad_parameters.status_code == 400
    assert bad_parameters.json()["detail"] == "Invalid visibility value"
    assert unknown_operation.status_code == 422


def test_transform_url_rejects_out_of_range_width(client):
    response = client.post(
        "/images/url", json={"asset_id": "abc123", "transformations": {"width": 5000}}, headers=ALICE
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Width must be between 1 and 4000 pixels"


def test_transform_url_round_trips_through_verify(client, bundle):
    _register(client, bundle, "abc123")
    created = client.post(
        "/images/url",
        json={"asset_id": "abc123", "transformations": {"width": 400, "format": "webp", "quality": 80}},
        headers=ALICE,
    )
    assert created.json() == {"url": "/images/abc123/w=400,q=80,f=webp"}

    verified = client.post("/images/verify", json={"url": created.json()["url"]})

    assert verified.status_code == 200
    body = verified.json()
    assert body["valid"] is True
    assert body["id"] == "abc123"
    assert body["params"] == {"width": 400, "quality": 80, "format": "webp"}


def test_verify_rejects_foreign_urls(client):
    body = client.post("/images/verify", json={"url": "/videos/abc123"}).json()
    assert body["valid"] is False
    assert body["errors"] == ["Not an image transformation URL"]


def test_presets_are_listed(client, bundle):
    _register(client, bundle, "abc123")
    response = client.get("/images/abc123/presets", headers=ALICE)
    assert response.status_code == 200
    assert response.json()["urls"]["original"] == "/images/abc123"


def test_transform_urls_require_read_access(client, bundle):
    _register(client, bundle, "a1")

    signed = client.post("/images/url", json={"asset_id": "a1", "transformations": {"width": 400}}, headers=BOB)
    presets = client.get("/images/a1/presets", headers=BOB)
    missing = client.post("/images/url", json={"asset_id": "ghost", "transformations": {}}, headers=ALICE)

    assert signed.status_code == 403
    assert "url" not in signed.json()
    assert presets.status_code == 403
    assert missing.status_code == 404


def _store(bundle: ServiceBundle, asset_id: str, owner_id: str, visibility: str, tags: list[str]) -> None:
    metadata = ImageMetadata(
        id=asset_id,
        filename=f"{asset_id}.jpg",
        owner_id=owner_id,
        storage_key=f"images/{owner_id}_{asset_id}.jpg",
        format="jpeg",
        size=2048,
        visibility=visibility,
        tags=tags,
    )
    asyncio.run(bundle.metadata.store(asset_id, metadata))


def test_search_hides_other_users_private_images(client, bundle):
    _store(bundle, "a1", "alice", "public", ["nature"])
    _store(bundle, "a2", "alice", "private", ["nature"])
    _store(bundle, "b1", "bob", "private", ["nature"])

    as_bob = client.post("/images/search", json={"tags": ["nature"]}, headers=BOB).json()
    own = client.post("/images/search", json={"owner_id": "bob"}, headers=BOB).json()
    as_admin = client.post(
        "/images/search", json={"tags": ["nature"]}, headers={"X-Actor-Id": "root", "X-Actor-Role": "admin"}
    ).json()

    assert [item["id"] for item in as_bob["results"]] == ["a1"]
    assert [item["id"] for item in own["results"]] == ["b1"]
    assert sorted(item["id"] for item in as_admin["results"]) == ["a1", "a2", "b1"]


def test_facets_endpoint_counts_tags(client, bundle):
    _store(bundle, "a1", "alice", "public", ["nature"])
    _store(bundle, "a2", "alice", "public", ["nature", "sunset"])
    _store(bundle, "a3", "alice", "public", ["city"])

    body = client.post("/images/facets", json={}, headers=ALICE).json()

    assert {facet["value"]: facet["count"] for facet in body["tags"]} == {"nature": 2, "sunset": 1, "city": 1}
