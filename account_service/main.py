"""FastAPI application wiring for the account service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import AccountService
from .memory import InMemoryAccountRepository
from .repository import PostgresAccountRepository
from .schema import apply_schema, seed_sample_account

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, account service) for the app lifecycle."""
    pool: ConnectionPool | None = None
    if settings.storage_backend == "memory":
        logger.warning("using in-memory account storage; data is lost on restart")
        repository = InMemoryAccountRepository()
    else:
        pool = ConnectionPool(settings.database_url, open=False)
        pool.open()
        if settings.auto_migrate:
            apply_schema(pool)
        repository = PostgresAccountRepository(pool)

    service = AccountService(repository, minimum_age_years=settings.minimum_age_years)
    if settings.seed_sample_account:
        seed_sample_account(service)

    app.state.pool = pool
    app.state.account_service = service
    try:
        yield
    finally:
        if pool is not None:
            pool.close()
            pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
except ImportError:  # pragma: no cover - metrics are optional in dev
    pass
