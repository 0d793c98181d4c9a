"""FastAPI application wiring for contractdesk."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.pages import router as pages_router
from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import CompanyService, RecordService
from .repository import DataStoreError, PrivilegedRepository
from .security.auth_client import SupabaseAuthClient
from .security.session import SessionVerifier

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (privileged pool, auth client, services) for the app lifecycle."""
    pool = ConnectionPool(
        settings.privileged_database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        open=False,
    )
    pool.open()
    http_client = httpx.Client(timeout=settings.auth_http_timeout_seconds)
    auth_client = SupabaseAuthClient(
        http_client,
        base_url=settings.supabase_url,
        anon_key=settings.supabase_anon_key,
        service_role_key=settings.supabase_service_role_key,
    )
    repository = PrivilegedRepository(pool)
    app.state.repository = repository
    app.state.session_verifier = SessionVerifier()
    app.state.auth_client = auth_client
    app.state.company_service = CompanyService(repository, auth_client)
    app.state.record_service = RecordService(repository)
    try:
        yield
    finally:
        http_client.close()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.exception_handler(DataStoreError)
async def data_store_error_handler(request: Request, exc: DataStoreError) -> JSONResponse:
    """Surface privileged data-store failures as a generic server error."""
    logger.error("data store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "internal server error"},
    )


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
app.include_router(pages_router)
