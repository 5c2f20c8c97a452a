"""Convenience exports for ORM models."""
from .media import MediaAsset, generate_asset_id
from .post import DraftPost, Post

__all__ = [
    "MediaAsset",
    "Post",
    "DraftPost",
    "generate_asset_id",
]
