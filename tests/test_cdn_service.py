from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from mediahub.services.cdn_service import CdnPurgeError, CdnPurger


def test_purge_without_endpoint_sends_nothing():
    purger = CdnPurger(public_base_url="https://cdn.example.com")
    assert not purger.enabled
    assert asyncio.run(purger.purge(["images/alice_a.jpg"])) == []


def test_purge_posts_public_urls():
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    purger = CdnPurger(
        public_base_url="https://cdn.example.com/",
        purge_url="https://api.example.com/purge",
        token="edge-token",
        transport=httpx.MockTransport(_handler),
    )

    urls = asyncio.run(purger.purge(["/images/alice_a.jpg", "", "images/a/variants/100w.webp"]))

    assert urls == [
        "https://cdn.example.com/images/alice_a.jpg",
        "https://cdn.example.com/images/a/variants/100w.webp",
    ]
    assert len(seen) == 1
    assert seen[0].headers["Authorization"] == "Bearer edge-token"
    assert json.loads(seen[0].content) == {"files": urls}


def test_rejected_purge_raises():
    purger = CdnPurger(
        public_base_url="https://cdn.example.com",
        purge_url="https://api.example.com/purge",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(CdnPurgeError) as excinfo:
        asyncio.run(purger.purge(["images/alice_a.jpg"]))
    assert excinfo.value.status_code == 502
