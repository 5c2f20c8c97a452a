"""Utility mixins shared across ORM models."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime
from sqlalchemy.sql import false, func


class TimestampMixin:
    """Reusable timestamp columns with timezone-aware defaults."""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SoftDeleteMixin:
    """Columns flagging a row as deleted while keeping it queryable."""

    is_deleted = Column(Boolean, nullable=False, default=False, server_default=false())
    deleted_at = Column(DateTime(timezone=True), nullable=True)


__all__ = ["TimestampMixin", "SoftDeleteMixin"]
