"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.routes import router
from .core.config import settings
from .services.polling_service import node_polling_service

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info("Debug mode: %s", settings.debug)

    await node_polling_service.start()
    try:
        yield
    finally:
        logger.info("Shutting down application")
        await node_polling_service.stop()
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    description="Inventory and performance poller for Windows hosts",
    lifespan=lifespan,
)
app.include_router(router)


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "hostpulse.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    run()
