# ruff: noqa: I001

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courierhub.api.router import api_router
from courierhub.config import settings
from courierhub.core.observability import (
    domain_error_handler,
    global_exception_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from courierhub.database import POOL_CONFIG, engine
from courierhub.services.errors import DomainError

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("courierhub")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

_MIGRATION_LOCK_KEY = 70412233


def _run_migrations_if_configured() -> None:
    if not settings.run_migrations_on_start:
        return
    if (settings.environment or "").lower() == "test":
        return

    from alembic import command
    from alembic.config import Config
    from sqlalchemy import text
    from sqlalchemy.engine.url import make_url

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))

    url_obj = make_url(str(settings.database_url))
    logger.info(
        "migrations_db_target driver=%s host=%s port=%s db=%s",
        url_obj.drivername,
        url_obj.host,
        url_obj.port,
        url_obj.database,
    )

    try:
        with engine.connect() as connection:
            is_postgres = connection.dialect.name == "postgresql"
            # Several instances may boot at once; only one migrates.
            if is_postgres:
                acquired = bool(
                    connection.execute(
                        text("select pg_try_advisory_lock(:k)"), {"k": _MIGRATION_LOCK_KEY}
                    ).scalar()
                )
                if not acquired:
                    logger.info("migrations_skipped_lock_not_acquired")
                    return
            try:
                alembic_cfg.attributes["connection"] = connection
                command.upgrade(alembic_cfg, "head")
                logger.info("migrations_applied")
            finally:
                if is_postgres:
                    connection.execute(text("select pg_advisory_unlock(:k)"), {"k": _MIGRATION_LOCK_KEY})
                    connection.commit()
    except Exception as e:
        # Endpoints that need the schema will fail loudly; startup should not.
        logger.error("migrations_failed error=%s", str(e))


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "environment": settings.environment,
            "web_concurrency": os.getenv("WEB_CONCURRENCY"),
            "db_pool": POOL_CONFIG,
            "deposit_rate_percent": settings.default_deposit_rate_percent,
        },
    )
    _run_migrations_if_configured()
    yield


app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
    lifespan=lifespan,
)

# Read by the middleware and exception handlers.
app.state.logger = logger

app.add_exception_handler(DomainError, domain_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.enable_docs
        else None
    )
    return {"message": settings.app_name, "docs": docs_path}


@app.get("/health", tags=["meta"])
@app.get("/healthz", tags=["meta"])
def healthcheck():
    """Liveness probe. Keep the payload stable for monitoring systems."""

    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": settings.build_version,
    }
