"""Error taxonomy shared by the media services."""
from __future__ import annotations

from typing import Any, Sequence


class MediaError(RuntimeError):
    """Base class for failures surfaced by the media services."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MediaError):
    """Raised when metadata or transformation input is malformed."""

    status_code = 400

    def __init__(self, errors: Sequence[str], message: str | None = None) -> None:
        self.errors = list(errors)
        super().__init__(message or ", ".join(self.errors))


class AuthorizationError(MediaError):
    """Raised on a policy denial or when a rate limit is exceeded."""

    status_code = 403

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        if retry_after is not None:
            self.status_code = 429


class NotFoundError(MediaError):
    """Raised when an asset, record, or metadata entry does not exist."""

    status_code = 404


class DependencyError(MediaError):
    """Raised when object storage, the KV store, or the cache fails."""

    status_code = 502


class PartialFailure(MediaError):
    """A multi-item operation finished with a mix of successes and failures."""

    status_code = 207

    def __init__(self, message: str, results: Sequence[Any]) -> None:
        super().__init__(message)
        self.results = list(results)


__all__ = [
    "MediaError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "DependencyError",
    "PartialFailure",
]
