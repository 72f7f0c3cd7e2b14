"""FastAPI application wiring for the entitlement service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import EntitlementLedger
from .memory_repository import InMemoryLedgerRepository
from .repository import PostgresLedgerRepository

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the ledger and its storage backend for the app lifecycle."""
    pool: ConnectionPool | None = None
    if settings.storage_backend == "postgres":
        pool = ConnectionPool(settings.database_url, open=False)
        pool.open()
        repository = PostgresLedgerRepository(pool)
        repository.ensure_schema()
        app.state.ledger = EntitlementLedger.from_settings(repository, settings)
    else:
        logger.warning("using in-memory ledger storage; state is lost on restart")
        app.state.ledger = EntitlementLedger.from_settings(InMemoryLedgerRepository(), settings)
    try:
        yield
    finally:
        if pool is not None:
            pool.close()
            pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
