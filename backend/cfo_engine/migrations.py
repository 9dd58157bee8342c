"""Utility helpers to ensure the database schema is up to date."""

from __future__ import annotations

import errno
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from . import models  # noqa: F401 - registers the tables on Base.metadata
from .database import SQLALCHEMY_DATABASE_URL, Base

LOGGER = logging.getLogger(__name__)

LOCK_FILENAME = ".alembic-migration.lock"
LOCK_RETRY_DELAY = 0.25
LOCK_TIMEOUT_ENV = "ALEMBIC_MIGRATION_LOCK_TIMEOUT"
DEFAULT_LOCK_TIMEOUT = 30.0

if os.name == "posix":  # pragma: no cover - platform specific
    import fcntl
else:  # pragma: no cover - platform specific
    import msvcrt


def _read_lock_timeout() -> float:
    raw = os.getenv(LOCK_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_LOCK_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        LOGGER.warning(
            "Invalid %s=%s; falling back to %.1f seconds", LOCK_TIMEOUT_ENV, raw, DEFAULT_LOCK_TIMEOUT
        )
        return DEFAULT_LOCK_TIMEOUT
    if value <= 0:
        LOGGER.warning("%s must be positive; using %.1f seconds", LOCK_TIMEOUT_ENV, DEFAULT_LOCK_TIMEOUT)
        return DEFAULT_LOCK_TIMEOUT
    return value


def _is_lock_conflict(error: OSError) -> bool:
    if getattr(error, "errno", None) in {errno.EACCES, errno.EAGAIN, errno.EBUSY}:
        return True
    # Windows sharing and lock violations.
    return getattr(error, "winerror", None) in {32, 33}


def _flock(fileobj, *, exclusive: bool) -> None:
    if os.name == "posix":  # pragma: no cover - platform specific
        fcntl.flock(fileobj.fileno(), (fcntl.LOCK_EX | fcntl.LOCK_NB) if exclusive else fcntl.LOCK_UN)
    else:  # pragma: no cover - platform specific
        msvcrt.locking(fileobj.fileno(), msvcrt.LK_NBLCK if exclusive else msvcrt.LK_UNLCK, 1)


@contextmanager
def _migration_lock(path: Path, *, timeout: float) -> Iterator[None]:
    """Serialize migrations between processes sharing one database."""

    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    with path.open("a+") as handle:
        while True:
            try:
                _flock(handle, exclusive=True)
                break
            except OSError as error:
                if not isinstance(error, BlockingIOError) and not _is_lock_conflict(error):
                    raise
                if time.monotonic() >= deadline:
                    raise TimeoutError("Timed out waiting for Alembic migration lock") from error
                time.sleep(LOCK_RETRY_DELAY)
        try:
            yield
        finally:
            try:
                _flock(handle, exclusive=False)
            except OSError:  # pragma: no cover - best effort cleanup
                LOGGER.debug("Could not release migration lock at %s", path)


def build_alembic_config(database_url: str | None = None) -> Config:
    base_dir = Path(__file__).resolve().parent.parent
    config = Config(str(base_dir / "alembic.ini"))
    config.set_main_option("script_location", str(base_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", database_url or os.getenv("DATABASE_URL", SQLALCHEMY_DATABASE_URL))
    return config


def run_database_migrations(database_url: str | None = None) -> None:
    """Run Alembic migrations so the engine tables exist before serving requests.

    A database created without Alembic that already holds every table is
    stamped at head instead of being migrated again.
    """

    base_dir = Path(__file__).resolve().parent.parent
    if str(base_dir.parent) not in sys.path:
        sys.path.insert(0, str(base_dir.parent))

    config = build_alembic_config(database_url)
    final_url = config.get_main_option("sqlalchemy.url")
    LOGGER.info("Running database migrations at %s", final_url)

    with _migration_lock(base_dir / LOCK_FILENAME, timeout=_read_lock_timeout()):
        connect_args = {"check_same_thread": False} if final_url.startswith("sqlite") else {}
        engine = create_engine(final_url, connect_args=connect_args)
        try:
            inspector = inspect(engine)
            existing = set(inspector.get_table_names())
        finally:
            engine.dispose()

        if "alembic_version" not in existing and set(Base.metadata.tables).issubset(existing):
            LOGGER.info("Existing schema matches the models; stamping Alembic head")
            command.stamp(config, "head")
            return
        command.upgrade(config, "head")
