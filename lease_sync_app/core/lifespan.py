import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .get_db import build_engine, build_session_factory
from .services import build_sync_services
from .settings import settings

logger = logging.getLogger("startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Waiting for application startup...")

    engine = getattr(app.state, "engine", None)
    owns_engine = engine is None
    if owns_engine:
        engine = build_engine()
        app.state.engine = engine

    if getattr(app.state, "sync_services", None) is None:
        app.state.sync_services = build_sync_services(
            build_session_factory(engine), settings
        )
    services = app.state.sync_services

    try:
        result = await services.initializer.initialize()
        logger.info(f"Payment sync initialization: {result.message}")
    except Exception:
        logger.exception("Payment sync initialization failed")

    logger.info("Application startup complete.")

    yield

    try:
        await services.initializer.shutdown()
    except Exception:
        logger.exception("Failed to stop payment sync monitoring")

    if owns_engine:
        await engine.dispose()
