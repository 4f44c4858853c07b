"""API route modules."""

from .providers import router as providers_router
from .sync import router as sync_router

__all__ = ["providers_router", "sync_router"]
