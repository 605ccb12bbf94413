from __future__ import annotations

from planguard.core.config import Settings
from planguard.persistence.db import engine_options


def test_sqlite_keeps_default_pool() -> None:
    options = engine_options(Settings(database_url="sqlite+aiosqlite:///tmp/x.db"))

    assert options == {"pool_pre_ping": True}


def test_postgres_pool_is_bounded_with_statement_timeout() -> None:
    settings = Settings(
        database_url="postgresql+asyncpg://u:p@db/planguard",
        api_db_pool_size=0,
        api_db_max_overflow=-3,
        api_db_statement_timeout_ms=2500,
    )

    options = engine_options(settings)

    assert options["pool_size"] == 1
    assert options["max_overflow"] == 0
    assert options["connect_args"] == {"server_settings": {"statement_timeout": "2500"}}
