# /clinicbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from clinicbot.utils.logging import setup_logging
from clinicbot.utils.dependencies import build_services
from clinicbot.config.settings import settings, validate_environment

# This file manages the application's lifespan: validating configuration,
# wiring the services and creating indexes on startup, closing connections
# on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    validate_environment(settings)

    logger.info("Application starting up...")

    services = build_services(settings)
    await services.db.create_indexes()
    app.state.services = services

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await services.close()
