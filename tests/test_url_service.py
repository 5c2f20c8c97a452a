"""Transformation URL encoding, signing and validation."""
from __future__ import annotations

import pytest

from mediahub.schemas.metadata import TransformationOptions
from mediahub.services.url_service import (
    PRESETS,
    ImageUrlService,
    build_param_string,
    parse_param_string,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_param_string_uses_canonical_order():
    params = build_param_string({"format": "webp", "quality": 80, "width": 400, "flip_horizontal": True})
    assert params == "w=400,q=80,f=webp,flip_h=1"


def test_whole_floats_are_written_without_decimals():
    assert build_param_string({"rotate": 90.0, "blur": 2.5}) == "blur=2.5,rotate=90"


def test_parse_skips_unknown_keys_and_malformed_values():
    options = parse_param_string("w=400,zoom=2,h=abc,q=80,flip_v=1,broken")
    assert options == TransformationOptions(width=400, quality=80, flip_vertical=True)


def test_unsigned_url_round_trip():
    service = ImageUrlService(base_url="/images")
    url = service.generate_url("abc123", {"width": 400, "format": "webp", "quality": 80})

    assert url == "/images/abc123/w=400,q=80,f=webp"
    parsed = service.parse_url(url)
    assert parsed is not None
    assert parsed.id == "abc123"
    assert parsed.transformations == TransformationOptions(width=400, quality=80, format="webp")
    assert service.validate_signature(parsed)


def test_url_without_transformations_has_no_param_segment():
    service = ImageUrlService(base_url="https://cdn.example.com/images/")
    assert service.generate_url("abc123") == "https://cdn.example.com/images/abc123"
    assert service.parse_url("https://cdn.example.com/images/abc123").id == "abc123"


def test_parse_rejects_foreign_paths():
    service = ImageUrlService(base_url="/images")
    assert service.parse_url("/videos/abc123/w=10") is None
    assert service.parse_url("/images") is None


def test_reserved_characters_in_ids_are_escaped():
    service = ImageUrlService(base_url="/images")
    url = service.generate_url("a/b?c", {"width": 10})

    assert url == "/images/a%2Fb%3Fc/w=10"
    parsed = service.parse_url(url)
    assert parsed.id == "a/b?c"
    assert parsed.transformations == TransformationOptions(width=10)
    assert service.parse_url(service.generate_url("50%off")).id == "50%off"


def test_signed_url_with_escaped_id_validates():
    service = ImageUrlService(sign_urls=True, secret_key="s3cret", clock=FakeClock())
    url = service.generate_url("a/b?c", {"width": 400})

    assert url.startswith("/images/a%2Fb%3Fc/w=400?sig=")
    parsed = service.parse_url(url)
    assert parsed.id == "a/b?c"
    assert service.validate_signature(parsed)


def test_signed_url_validates_until_ttl_expires():
    clock = FakeClock()
    service = ImageUrlService(sign_urls=True, secret_key="s3cret", url_ttl=3600, clock=clock)
    url = service.generate_url("abc123", {"width": 400})

    assert "?sig=" in url and f"&t={int(clock.now)}" in url
    parsed = service.parse_url(url)
    assert service.validate_signature(parsed)

    clock.now += 3601
    assert not service.validate_signature(parsed)


def test_tampered_parameters_fail_signature_check():
    service = ImageUrlService(sign_urls=True, secret_key="s3cret", clock=FakeClock())
    url = service.generate_url("abc123", {"width": 400})

    tampered = service.parse_url(url.replace("w=400", "w=4000"))
    assert not service.validate_signature(tampered)


def test_signature_from_another_secret_is_rejected():
    clock = FakeClock()
    signer = ImageUrlService(sign_urls=True, secret_key="one", clock=clock)
    verifier = ImageUrlService(sign_urls=True, secret_key="two", clock=clock)
    assert not verifier.validate_signature(verifier.parse_url(signer.generate_url("abc123")))


def test_missing_signature_is_rejected_when_signing_is_on():
    service = ImageUrlService(sign_urls=True, secret_key="s3cret", clock=FakeClock())
    assert not service.validate_signature(service.parse_url("/images/abc123/w=400"))


def test_signing_requires_a_secret():
    with pytest.raises(ValueError):
        ImageUrlService(sign_urls=True)


def test_validation_collects_every_error():
    service = ImageUrlService()
    result = service.validate_transformations(
        {"width": 5000, "quality": 0, "rotate": 400, "format": "gif", "fit": "stretch"}
    )
    assert not result.valid
    assert result.errors == [
        "Width must be between 1 and 4000 pixels",
        "Quality must be between 1 and 100",
        "Rotation must be between 0 and 360 degrees",
        "Format must be one of: webp, jpeg, png, avif",
        "Fit must be one of: cover, contain, fill, inside, outside",
    ]


def test_validation_accepts_boundaries():
    service = ImageUrlService()
    result = service.validate_transformations(
        {"width": 1, "height": 4000, "quality": 100, "brightness": -100, "rotate": 360}
    )
    assert result.valid
    assert result.errors == []


def test_presets_generate_one_url_each():
    service = ImageUrlService()
    urls = service.generate_preset_urls("abc123")

    assert set(urls) == set(PRESETS)
    assert urls["thumbnail"] == "/images/abc123/w=150,h=150,q=80,f=webp,fit=cover"
    assert urls["original"] == "/images/abc123"


def test_transformations_to_params_drops_unset_fields():
    params = ImageUrlService.transformations_to_params({"width": 10, "format": "png"})
    assert params == {"width": 10, "format": "png"}


def test_signed_url_carries_signature_and_generation_time():
    clock = FakeClock(now=1_700_000_123.0)
    service = ImageUrlService(sign_urls=True, secret_key="s3cret", clock=clock)

    url = service.generate_url("abc123", {"width": 400, "format": "webp", "quality": 80})

    query = url.split("?", 1)[1]
    assert query.startswith("sig=")
    assert query.endswith("&t=1700000123")


def test_single_out_of_range_width_is_reported():
    result = ImageUrlService().validate_transformations({"width": 5000})
    assert not result.valid
    assert result.errors == ["Width must be between 1 and 4000 pixels"]
