"""S3-compatible object storage integration for original images and variants."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, cast
from urllib.parse import urlparse

from boto3.session import Session
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from ..errors import DependencyError
from ..security.secrets import MissingSecretError, is_placeholder, require_secret

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class StorageConfig:
    """Runtime configuration extracted from environment variables."""

    key: str
    secret: str
    region: str
    bucket: str
    endpoint: str


@dataclass(frozen=True)
class StoredObject:
    """Object returned by ``head`` and ``get``; ``body`` is only set by ``get``."""

    key: str
    size: int
    content_type: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


class StorageConfigurationError(RuntimeError):
    """Raised when required object storage settings are missing or invalid."""


class StorageError(DependencyError):
    """Raised when the object storage backend rejects or fails a request."""


@lru_cache(maxsize=1)
def load_storage_config() -> StorageConfig:
    """Read and validate object storage configuration from the environment."""

    required: dict[str, str | None] = {
        "STORAGE_KEY": os.getenv("STORAGE_KEY"),
        "STORAGE_SECRET": os.getenv("STORAGE_SECRET"),
        "STORAGE_REGION": os.getenv("STORAGE_REGION"),
        "STORAGE_BUCKET": os.getenv("STORAGE_BUCKET"),
        "STORAGE_ENDPOINT": os.getenv("STORAGE_ENDPOINT"),
    }

    missing = [name for name, value in required.items() if not value or not value.strip()]
    if missing:
        raise StorageConfigurationError(
            "Missing required object storage configuration: " + ", ".join(sorted(missing))
        )

    try:
        key = require_secret("STORAGE_KEY")
        secret = require_secret("STORAGE_SECRET")
    except MissingSecretError as exc:
        raise StorageConfigurationError(str(exc)) from exc

    region = cast(str, required["STORAGE_REGION"]).strip()
    bucket = cast(str, required["STORAGE_BUCKET"]).strip()
    endpoint_raw = cast(str, required["STORAGE_ENDPOINT"]).strip()

    if is_placeholder(region):
        raise StorageConfigurationError("STORAGE_REGION must be set to a valid region identifier")
    if is_placeholder(bucket):
        raise StorageConfigurationError("STORAGE_BUCKET must be set to the target bucket name")
    if is_placeholder(endpoint_raw):
        raise StorageConfigurationError("STORAGE_ENDPOINT must point to the S3-compatible API endpoint")

    endpoint = endpoint_raw.rstrip("/")
    parsed = urlparse(endpoint)
    if not parsed.scheme:
        endpoint = f"https://{endpoint.lstrip(':/')}"
        parsed = urlparse(endpoint)
    if not (parsed.netloc or parsed.path):
        raise StorageConfigurationError("STORAGE_ENDPOINT must include a hostname.")

    return StorageConfig(key=key, secret=secret, region=region, bucket=bucket, endpoint=parsed.geturl().rstrip("/"))


@lru_cache(maxsize=1)
def get_storage_client() -> BaseClient:
    """Create a singleton boto3 client for bucket interactions."""

    config = load_storage_config()
    session = Session()
    return session.client(
        "s3",
        region_name=config.region,
        endpoint_url=config.endpoint,
        aws_access_key_id=config.key,
        aws_secret_access_key=config.secret,
    )


def _sanitize_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "-", value.strip())
    return re.sub(r"-+", "-", cleaned).strip("-")


def original_object_key(owner_id: str, file_name: str) -> str:
    """Key for an original upload: ``images/{owner}_{file}``."""

    safe_name = _sanitize_segment(Path(file_name).name) or "upload.bin"
    return f"images/{owner_id}_{safe_name}"


def variant_object_key(asset_id: str, width: int, image_format: str) -> str:
    """Key for a derivative: ``images/{asset}/variants/{width}w.{format}``."""

    return f"images/{asset_id}/variants/{int(width)}w.{image_format.lower().lstrip('.')}"


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _MISSING_CODES


class ObjectStorage:
    """Async facade over a boto3 S3 client bound to one bucket.

    boto3 is blocking, so every call runs in the threadpool.
    """

    def __init__(self, client: BaseClient, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    async def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": key.lstrip("/"), "Body": body}
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = dict(metadata)

        def _put() -> None:
            try:
                self._client.put_object(**params)
            except (ClientError, BotoCoreError) as exc:
                logger.exception("Failed to upload object %s", key)
                raise StorageError(f"Unable to store object {key}") from exc

        await run_in_threadpool(_put)

    async def head(self, key: str) -> StoredObject | None:
        normalized_key = key.lstrip("/")

        def _head() -> StoredObject | None:
            try:
                response = self._client.head_object(Bucket=self._bucket, Key=normalized_key)
            except ClientError as exc:
                if _is_missing(exc):
                    return None
                logger.exception("Failed to read object headers for %s", normalized_key)
                raise StorageError(f"Unable to read object {normalized_key}") from exc
            except BotoCoreError as exc:
                logger.exception("Failed to read object headers for %s", normalized_key)
                raise StorageError(f"Unable to read object {normalized_key}") from exc
            return StoredObject(
                key=normalized_key,
                size=int(response.get("ContentLength") or 0),
                content_type=response.get("ContentType"),
                metadata=dict(response.get("Metadata") or {}),
            )

        return await run_in_threadpool(_head)

    async def get(self, key: str) -> StoredObject | None:
        normalized_key = key.lstrip("/")

        def _get() -> StoredObject | None:
            try:
                response = self._client.get_object(Bucket=self._bucket, Key=normalized_key)
                body = response["Body"].read()
            except ClientError as exc:
                if _is_missing(exc):
                    return None
                logger.exception("Failed to download object %s", normalized_key)
                raise StorageError(f"Unable to download object {normalized_key}") from exc
            except BotoCoreError as exc:
                logger.exception("Failed to download object %s", normalized_key)
                raise StorageError(f"Unable to download object {normalized_key}") from exc
            return StoredObject(
                key=normalized_key,
                size=int(response.get("ContentLength") or len(body)),
                content_type=response.get("ContentType"),
                metadata=dict(response.get("Metadata") or {}),
                body=body,
            )

        return await run_in_threadpool(_get)

    async def delete(self, key: str) -> None:
        """Remove an object; S3 treats deleting a missing key as success."""

        if not key:
            return
        normalized_key = key.lstrip("/")

        def _delete() -> None:
            try:
                self._client.delete_object(Bucket=self._bucket, Key=normalized_key)
            except (ClientError, BotoCoreError) as exc:
                logger.exception("Failed to delete object %s", normalized_key)
                raise StorageError(f"Unable to delete object {normalized_key}") from exc

        await run_in_threadpool(_delete)

    async def list(self, prefix: str = "") -> list[str]:
        def _list() -> list[str]:
            keys: list[str] = []
            try:
                paginator = self._client.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                    keys.extend(item["Key"] for item in page.get("Contents", []))
            except (ClientError, BotoCoreError) as exc:
                logger.exception("Failed to list objects under %s", prefix)
                raise StorageError(f"Unable to list objects under {prefix}") from exc
            return keys

        return await run_in_threadpool(_list)

    async def replace_metadata(self, key: str, metadata: Mapping[str, str]) -> None:
        """Rewrite the custom metadata of an existing object in place."""

        normalized_key = key.lstrip("/")

        def _copy() -> None:
            try:
                current = self._client.head_object(Bucket=self._bucket, Key=normalized_key)
                params: dict[str, Any] = {
                    "Bucket": self._bucket,
                    "Key": normalized_key,
                    "CopySource": {"Bucket": self._bucket, "Key": normalized_key},
                    "Metadata": dict(metadata),
                    "MetadataDirective": "REPLACE",
                }
                if current.get("ContentType"):
                    params["ContentType"] = current["ContentType"]
                self._client.copy_object(**params)
            except (ClientError, BotoCoreError) as exc:
                logger.exception("Failed to replace metadata on %s", normalized_key)
                raise StorageError(f"Unable to update metadata for {normalized_key}") from exc

        await run_in_threadpool(_copy)

    async def create_presigned_url(
        self,
        key: str,
        method: str,
        *,
        expires_in: int = 3600,
        content_type: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        normalized_key = key.lstrip("/")
        verb = method.upper()
        params: dict[str, Any] = {"Bucket": self._bucket, "Key": normalized_key}
        if verb == "GET":
            operation = "get_object"
        elif verb == "PUT":
            operation = "put_object"
            if content_type:
                params["ContentType"] = content_type
            extra = dict(headers or {})
            if extra.pop("x-amz-server-side-encryption", None):
                params["ServerSideEncryption"] = "AES256"
            if extra:
                params["Metadata"] = extra
        else:
            raise ValueError(f"Unsupported method: {method}")

        def _sign() -> str:
            try:
                return self._client.generate_presigned_url(operation, Params=params, ExpiresIn=int(expires_in))
            except (ClientError, BotoCoreError) as exc:
                logger.exception("Failed to presign %s for %s", verb, normalized_key)
                raise StorageError(f"Unable to create a presigned URL for {normalized_key}") from exc

        return await run_in_threadpool(_sign)


@lru_cache(maxsize=1)
def get_object_storage() -> ObjectStorage:
    config = load_storage_config()
    return ObjectStorage(get_storage_client(), config.bucket)


__all__ = [
    "StorageConfig",
    "StorageConfigurationError",
    "StorageError",
    "StoredObject",
    "ObjectStorage",
    "load_storage_config",
    "get_storage_client",
    "get_object_storage",
    "original_object_key",
    "variant_object_key",
]
