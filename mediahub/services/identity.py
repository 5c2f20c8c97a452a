"""Verified caller identity forwarded by the upstream gateway."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

ROLES: frozenset[str] = frozenset({"user", "moderator", "admin"})


@dataclass(frozen=True)
class Identity:
    actor_id: str
    role: str = "user"


def get_current_identity(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> Identity:
    """FastAPI dependency reading the actor headers; authentication happens upstream."""

    cleaned_id = (actor_id or "").strip()
    if not cleaned_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    cleaned_role = (role or "user").strip().lower() or "user"
    if cleaned_role not in ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Unknown role: {cleaned_role}")
    return Identity(actor_id=cleaned_id, role=cleaned_role)


__all__ = ["Identity", "ROLES", "get_current_identity"]
