"""Main FastAPI application - hosts the monitoring scheduler."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings
from .database import init_db, close_db
from .routers import scheduler_router
from .services.scheduler import build_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting pingwatch scheduler")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    scheduler = build_scheduler(settings)
    await scheduler.start()
    app.state.scheduler = scheduler

    yield

    # Shutdown
    await scheduler.stop()
    app.state.scheduler = None
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="pingwatch",
        description="Monitoring scheduler and check engine - HTTP, TCP and ping checks",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(scheduler_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        scheduler = getattr(app.state, "scheduler", None)
        return {
            "status": "healthy",
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
