"""Concierge automation service entry point (FastAPI).

Run with ``uvicorn concierge.app:api``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from concierge import __version__
from concierge.api.routes import install_exception_handlers, router
from concierge.config import settings
from concierge.db.session import close_db, get_session_factory
from concierge.db.sql_store import SqlStore
from concierge.runtime import get_runtime, init_runtime

logger = structlog.get_logger()


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("app_starting", env=settings.env)

    runtime = init_runtime(store=SqlStore(get_session_factory()))
    await runtime.start()

    yield

    logger.info("app_shutting_down")
    await get_runtime().stop()
    await close_db()


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Concierge Automation",
        version=__version__,
        description="Rule automation, smart scheduling and approval-gated workflows",
        lifespan=lifespan if use_lifespan else None,
    )
    app.include_router(router, prefix="/api")
    install_exception_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "concierge"}

    return app


api = create_app()
