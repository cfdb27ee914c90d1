import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from teammove.core.config import settings, validate_config
from teammove.core.database import create_all_tables
from teammove.core.logging import configure_logging
from teammove.core.middleware.request_id import RequestIdMiddleware
from teammove.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from teammove.api import billing, health
from teammove.features.billing.wiring import BillingComponents, build_billing


def create_app(billing_components: Optional[BillingComponents] = None, create_tables: Optional[bool] = None) -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    if create_tables is None:
        create_tables = settings.ENV != "production"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("teammove")
        logger.info("Starting TeamMove billing backend...")
        app.state.startup_time = time.time()
        if create_tables:
            create_all_tables()
        try:
            yield
        finally:
            logging.getLogger("teammove").info("Stopping TeamMove billing backend...")

    app = FastAPI(title="TeamMove - Billing", lifespan=lifespan)
    app.state.billing = billing_components or build_billing(settings)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # CORS (adjust origins in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.root_router, tags=["health"])
    app.include_router(billing.router, tags=["billing"])
    return app


app = create_app()
