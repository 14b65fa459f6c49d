"""
Routes package.
"""

from .margins import router as margins_router
from .sync import router as sync_router

__all__ = [
    "margins_router",
    "sync_router",
]
