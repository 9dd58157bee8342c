"""Routers package."""

from .metrics import router as metrics_router
from .scheduler import router as scheduler_router

__all__ = ["metrics_router", "scheduler_router"]
