from __future__ import annotations

import pytest

from backend.cfo_engine import database, models


def test_sqlite_engines_allow_cross_thread_sessions() -> None:
    assert database._engine_options("sqlite:///cfo.db") == {"connect_args": {"check_same_thread": False}}


def test_postgres_pool_settings_come_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_POOL_SIZE", "12")
    monkeypatch.setenv("DATABASE_CONNECT_TIMEOUT", "3")

    options = database._engine_options("postgresql+psycopg://cfo@db/cfo")

    assert options["pool_size"] == 12
    assert options["max_overflow"] == database.DEFAULT_MAX_OVERFLOW
    assert options["connect_args"] == {"connect_timeout": 3}
    assert options["pool_pre_ping"] is True


@pytest.mark.parametrize("raw_url", [None, "sqlite:///cfo.db"])
def test_require_postgres_rejects_sqlite(monkeypatch, raw_url) -> None:
    monkeypatch.setenv("REQUIRE_POSTGRES", "1")

    with pytest.raises(RuntimeError, match="REQUIRE_POSTGRES=1"):
        database._resolve_database_url(raw_url)


def test_session_scope_rolls_back_on_error(session_factory, company_id) -> None:
    with pytest.raises(RuntimeError):
        with database.session_scope(session_factory) as db:
            db.add(models.AccountingMonth(company_id=company_id, month="2026-03", is_closed=True))
            db.flush()
            raise RuntimeError("recompute failed")

    with database.session_scope(session_factory) as db:
        assert db.query(models.AccountingMonth).count() == 0
