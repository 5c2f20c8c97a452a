"""Posts and drafts that reference (but never own) media assets."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mediahub.database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class Post(Base):
    __tablename__ = "posts"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(128), nullable=False, index=True)
    caption = Column(Text, nullable=False, default="")
    media_asset_id = Column(String(64), ForeignKey("media_assets.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    media_asset = relationship("MediaAsset", back_populates="posts")


class DraftPost(Base):
    __tablename__ = "draft_posts"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(128), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    media_asset_id = Column(String(64), ForeignKey("media_assets.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    media_asset = relationship("MediaAsset", back_populates="draft_posts")


__all__ = ["Post", "DraftPost"]
