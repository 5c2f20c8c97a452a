"""Aggregate router exports."""
from .images import router as images_router
from .media import router as media_router

__all__ = ["images_router", "media_router"]
