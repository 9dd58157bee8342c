"""CFO recomputation and metrics engine."""

from __future__ import annotations


def get_app():
    """Return the FastAPI application without importing it eagerly.

    Alembic and the command line scripts import this package without needing
    the HTTP layer.
    """

    from .main import app as fastapi_app

    return fastapi_app


__all__ = ["get_app"]
