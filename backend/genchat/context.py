from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from .config import AppConfig
from .logging_utils import get_logger

log = get_logger(__name__)


@dataclass
class AppContext:
    """Process-lifetime handles shared by request handlers."""

    config: AppConfig
    engine: Engine
    http: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.http.aclose()
        self.engine.dispose()


def build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    engine = create_engine(database_url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record) -> None:
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()

    return engine


def create_context(config: AppConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> AppContext:
    # Completions and live shape requests can stay open for a long time; only connecting is bounded.
    timeout = httpx.Timeout(None, connect=10.0)
    http = httpx.AsyncClient(timeout=timeout, transport=transport)
    engine = build_engine(config.database_url)
    log.info("Context ready (llm=%s)", "configured" if config.llm_enabled else "demo mode")
    return AppContext(config=config, engine=engine, http=http)


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx
