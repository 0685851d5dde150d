"""API Routes Package."""

from api.routes import health, sync

__all__ = [
    "health",
    "sync",
]
