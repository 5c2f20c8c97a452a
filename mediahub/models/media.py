"""SQLAlchemy ORM model for stored media assets."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from mediahub.database import Base

from .base import SoftDeleteMixin, TimestampMixin


def generate_asset_id() -> str:
    return uuid.uuid4().hex


class MediaAsset(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "media_assets"

    id = Column(String(64), primary_key=True, default=generate_asset_id)
    owner_id = Column(String(128), nullable=False, index=True)
    storage_key = Column(String(1024), nullable=False, unique=True)
    type = Column(String(32), nullable=False, default="image")
    mime_type = Column(String(255), nullable=False, default="application/octet-stream")
    size = Column(Integer, nullable=True)
    display_order = Column(Integer, nullable=False, default=0)

    posts = relationship("Post", back_populates="media_asset")
    draft_posts = relationship("DraftPost", back_populates="media_asset")


__all__ = ["MediaAsset", "generate_asset_id"]
