# app/main.py
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app import models  # noqa: F401  registers models on Base.metadata
from app.api.api import api_router
from app.core.config import settings
from app.core.error_handlers import register_exception_handlers
from app.core.middleware import register_middlewares
from app.db.base import Base, SessionLocal, engine
from app.db.init_db import seed_system_categories
from app.services import register_services
from app.workers.integration_sync_worker import IntegrationSyncWorker

logger = logging.getLogger("app")


def init_database() -> None:
    """Create missing tables and seed the system categories."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_system_categories(db)
    finally:
        db.close()


# Context manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Timeblock API {app.version}")

    init_database()

    register_services()
    logger.info("Services registered")

    sync_worker = None
    if settings.ENABLE_INTEGRATION_SYNC_WORKER:
        sync_worker = IntegrationSyncWorker()
        sync_worker.start()
    else:
        logger.info("Integration sync worker disabled")

    yield

    logger.info("Shutting down application and background tasks")
    if sync_worker is not None:
        await sync_worker.stop()


app = FastAPI(
    title="Timeblock API",
    description="Time-blocking backend with GitHub and Google Calendar sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Register custom exception handlers
register_exception_handlers(app)

# Register middleware
register_middlewares(app)

# Set up CORS middleware
if settings.BACKEND_CORS_ORIGINS:
    allowed_origins = [str(origin) for origin in settings.BACKEND_CORS_ORIGINS]
    logger.info(f"Setting up CORS with allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    return {"message": "Welcome to the Timeblock API"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
