from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantlink.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    url = make_url(settings.database_url)
    options: dict[str, Any] = {"pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        # Concurrent token consumers queue on the database write lock instead of failing fast.
        options["connect_args"] = {"timeout": 30}
        return options
    options.update(
        pool_size=max(1, settings.api_db_pool_size),
        max_overflow=max(0, settings.api_db_max_overflow),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return options


engine = create_async_engine(get_settings().database_url, **_engine_options(get_settings()))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def supports_row_locks() -> bool:
    # SQLite has no SELECT ... FOR UPDATE; writes are serialized by the database lock instead.
    return engine.dialect.name != "sqlite"


async def dispose_engine() -> None:
    # Pooled connections are bound to the event loop that opened them.
    await engine.dispose()
