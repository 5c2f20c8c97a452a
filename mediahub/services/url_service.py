"""Canonical, optionally signed URLs describing an image plus a transformation set.

A URL looks like ``{base}/{asset_id}/w=400,f=webp,q=80?sig=...&t=...``. The
service never touches storage or metadata; it only encodes, decodes, checks and
signs parameter sets.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Mapping
from urllib.parse import parse_qs, quote, unquote, urlsplit

from pydantic import ValidationError as PydanticValidationError

from ..config import get_settings
from ..schemas.metadata import TransformationOptions
from ..security.secrets import optional_secret

logger = logging.getLogger(__name__)

VALID_FORMATS = ("webp", "jpeg", "png", "avif")
VALID_FITS = ("cover", "contain", "fill", "inside", "outside")

# Field name, URL key, parser; the order here is the canonical parameter order.
_PARAMS: tuple[tuple[str, str, Callable[[str], Any]], ...] = (
    ("width", "w", int),
    ("height", "h", int),
    ("quality", "q", int),
    ("format", "f", str),
    ("fit", "fit", str),
    ("blur", "blur", float),
    ("brightness", "brightness", float),
    ("contrast", "contrast", float),
    ("saturation", "saturation", float),
    ("rotate", "rotate", float),
    ("flip_horizontal", "flip_h", lambda raw: raw == "1"),
    ("flip_vertical", "flip_v", lambda raw: raw == "1"),
)
_FIELD_BY_KEY = {key: (name, parser) for name, key, parser in _PARAMS}

PRESETS: dict[str, dict[str, Any]] = {
    "thumbnail": {"width": 150, "height": 150, "quality": 80, "format": "webp", "fit": "cover"},
    "small": {"width": 400, "height": 400, "quality": 85, "format": "webp", "fit": "cover"},
    "medium": {"width": 800, "height": 800, "quality": 90, "format": "webp", "fit": "cover"},
    "large": {"width": 1200, "height": 1200, "quality": 95, "format": "webp", "fit": "cover"},
    "original": {},
}

# Field name, lower bound, upper bound, message.
_RANGES: tuple[tuple[str, float, float, str], ...] = (
    ("width", 1, 4000, "Width must be between 1 and 4000 pixels"),
    ("height", 1, 4000, "Height must be between 1 and 4000 pixels"),
    ("quality", 1, 100, "Quality must be between 1 and 100"),
    ("blur", 0, 100, "Blur must be between 0 and 100"),
    ("brightness", -100, 100, "Brightness must be between -100 and 100"),
    ("contrast", -100, 100, "Contrast must be between -100 and 100"),
    ("saturation", -100, 100, "Saturation must be between -100 and 100"),
    ("rotate", 0, 360, "Rotation must be between 0 and 360 degrees"),
)


@dataclass(frozen=True)
class ParsedImageUrl:
    id: str
    transformations: TransformationOptions = field(default_factory=TransformationOptions)
    signature: str | None = None
    timestamp: int | None = None


@dataclass(frozen=True)
class TransformationValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce(transformations: TransformationOptions | Mapping[str, Any] | None) -> TransformationOptions:
    if transformations is None:
        return TransformationOptions()
    if isinstance(transformations, TransformationOptions):
        return transformations
    return TransformationOptions.model_validate(dict(transformations))


def build_param_string(transformations: TransformationOptions | Mapping[str, Any] | None) -> str:
    """Serialize a transformation set into its canonical ``k=v,...`` form."""

    options = _coerce(transformations)
    parts = []
    for name, key, _ in _PARAMS:
        value = getattr(options, name)
        if value is not None:
            parts.append(f"{key}={_format_value(value)}")
    return ",".join(parts)


def parse_param_string(params: str) -> TransformationOptions:
    """Parse ``k=v,...``; unknown keys and unparsable values are skipped."""

    values: dict[str, Any] = {}
    for pair in (params or "").split(","):
        key, sep, raw = pair.partition("=")
        if not sep or not key or not raw:
            continue
        entry = _FIELD_BY_KEY.get(key)
        if entry is None:
            continue
        name, parser = entry
        try:
            values[name] = parser(raw)
        except ValueError:
            logger.debug("Ignoring malformed transformation value %s=%s", key, raw)
    return TransformationOptions(**values)


class ImageUrlService:
    def __init__(
        self,
        *,
        base_url: str = "/images",
        sign_urls: bool = False,
        url_ttl: int = 3600,
        secret_key: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if sign_urls and not secret_key:
            raise ValueError("A secret key is required when URL signing is enabled")
        self.base_url = base_url.rstrip("/") or "/images"
        self.sign_urls = sign_urls
        self.url_ttl = url_ttl
        self._secret = (secret_key or "").encode("utf-8")
        self._clock = clock
        base_path = urlsplit(self.base_url).path.rstrip("/")
        self._path_pattern = re.compile(rf"^{re.escape(base_path)}/([^/]+)(?:/([^?]*))?$")

    def _sign(self, asset_id: str, params: str, timestamp: int) -> str:
        message = f"{asset_id}:{params}:{timestamp}".encode("utf-8")
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def generate_url(
        self,
        asset_id: str,
        transformations: TransformationOptions | Mapping[str, Any] | None = None,
    ) -> str:
        params = build_param_string(transformations)
        url = f"{self.base_url}/{quote(asset_id, safe='')}"
        if params:
            url += f"/{params}"
        if self.sign_urls:
            timestamp = int(self._clock())
            url += f"?sig={self._sign(asset_id, params, timestamp)}&t={timestamp}"
        return url

    def parse_url(self, url: str) -> ParsedImageUrl | None:
        """Decode a transformation URL; returns ``None`` when it is not one."""

        try:
            parts = urlsplit(url)
        except ValueError:
            return None
        match = self._path_pattern.match(parts.path)
        if not match:
            return None

        query = parse_qs(parts.query)
        signature = (query.get("sig") or [None])[0] or None
        raw_timestamp = (query.get("t") or [None])[0]
        timestamp: int | None = None
        if raw_timestamp:
            try:
                timestamp = int(raw_timestamp)
            except ValueError:
                timestamp = None

        return ParsedImageUrl(
            id=unquote(match.group(1)),
            transformations=parse_param_string(match.group(2) or ""),
            signature=signature,
            timestamp=timestamp,
        )

    def validate_signature(self, parsed: ParsedImageUrl) -> bool:
        if not self.sign_urls:
            return True
        if not parsed.signature or parsed.timestamp is None:
            return False
        if int(self._clock()) - parsed.timestamp > self.url_ttl:
            return False
        expected = self._sign(parsed.id, build_param_string(parsed.transformations), parsed.timestamp)
        return hmac.compare_digest(parsed.signature, expected)

    def validate_transformations(
        self, transformations: TransformationOptions | Mapping[str, Any] | None
    ) -> TransformationValidation:
        try:
            options = _coerce(transformations)
        except PydanticValidationError as exc:
            errors = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()]
            return TransformationValidation(False, errors)

        errors: list[str] = []
        for name, low, high, message in _RANGES:
            value = getattr(options, name)
            if value is not None and not (low <= value <= high):
                errors.append(message)
        if options.format is not None and options.format not in VALID_FORMATS:
            errors.append(f"Format must be one of: {', '.join(VALID_FORMATS)}")
        if options.fit is not None and options.fit not in VALID_FITS:
            errors.append(f"Fit must be one of: {', '.join(VALID_FITS)}")
        return TransformationValidation(not errors, errors)

    def generate_preset_urls(self, asset_id: str) -> dict[str, str]:
        return {name: self.generate_url(asset_id, preset) for name, preset in PRESETS.items()}

    @staticmethod
    def transformations_to_params(transformations: TransformationOptions | Mapping[str, Any]) -> dict[str, Any]:
        """Parameters handed to the image transformer, without unset fields."""

        return _coerce(transformations).model_dump(exclude_none=True)


@lru_cache(maxsize=1)
def get_image_url_service() -> ImageUrlService:
    settings = get_settings()
    return ImageUrlService(
        base_url=settings.image_base_url,
        sign_urls=settings.sign_image_urls,
        url_ttl=settings.image_url_ttl,
        secret_key=optional_secret(settings.image_url_secret),
    )


__all__ = [
    "ImageUrlService",
    "ParsedImageUrl",
    "TransformationValidation",
    "PRESETS",
    "VALID_FORMATS",
    "VALID_FITS",
    "build_param_string",
    "parse_param_string",
    "get_image_url_service",
]
