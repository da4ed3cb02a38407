"""
FastAPI application for the billing webhooks.

Run with ``uvicorn flowledger.platform.main:create_application --factory``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flowledger.platform.billing.exceptions import BillingError
from flowledger.platform.billing.webhooks import router as billing_webhooks_router
from flowledger.platform.db import create_all_tables_async
from flowledger.platform.logging import setup_logging
from flowledger.platform.settings import get_settings


async def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render billing errors with their stable error code."""
    if not isinstance(exc, BillingError):
        raise exc
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    settings = get_settings()
    logger = structlog.get_logger(__name__)
    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )
    if settings.is_development:
        await create_all_tables_async()
        logger.info("database.tables.ensured")
    yield
    logger.info("service.shutdown.complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    setup_logging()
    app = FastAPI(
        title="Flowledger Billing",
        description="Usage ledger and checkout reconciliation",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
    )
    app.add_exception_handler(BillingError, billing_error_handler)
    app.include_router(billing_webhooks_router)
    return app


__all__ = ["create_application", "billing_error_handler", "lifespan"]
