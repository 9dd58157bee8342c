"""Expose the CFO engine FastAPI app and its background recomputation job."""

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI

from .config import _read_bool_env
from .migrations import run_database_migrations
from .routers import metrics_router, scheduler_router
from .services.recompute import start_recompute_scheduler, stop_recompute_scheduler
from .services.scheduler_monitor import JOB_SCHEDULED_RECOMPUTE, SchedulerMonitor

LOGGER = logging.getLogger(__name__)

ENABLE_SCHEDULED_RECOMPUTE_ENV = "ENABLE_SCHEDULED_RECOMPUTE"


def _maybe_start_job(env_flag: str, job_name: str, starter: Callable[[], None]) -> None:
    enabled = _read_bool_env(env_flag, True)
    SchedulerMonitor.set_job_enabled(job_name, enabled)
    if not enabled:
        LOGGER.info("%s disabled via %s", job_name, env_flag)
        return
    starter()


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_database_is_ready()
    start_background_jobs()
    try:
        yield
    finally:
        stop_background_jobs()


app = FastAPI(title="CFO Recomputation Engine", lifespan=lifespan)

app.include_router(metrics_router, prefix="/companies", tags=["companies"])
app.include_router(scheduler_router, prefix="/metrics", tags=["metrics"])


def ensure_database_is_ready() -> None:
    """Apply pending database migrations when the service starts."""

    LOGGER.info("Ensuring database schema is up to date before serving requests")
    run_database_migrations()


def start_background_jobs() -> None:
    """Start background tasks required by the service."""

    _maybe_start_job(
        env_flag=ENABLE_SCHEDULED_RECOMPUTE_ENV,
        job_name=JOB_SCHEDULED_RECOMPUTE,
        starter=start_recompute_scheduler,
    )


@app.get("/", tags=["health"])
def read_root() -> dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


def stop_background_jobs() -> None:
    """Ensure background tasks are stopped when the application shuts down."""

    stop_recompute_scheduler()
