"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, status
from core.config import settings
from core.database import create_engine, create_session_factory
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Listing Replicator Status API",
    description="Operational status of the listing replication service",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(status.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Listing Replicator Status API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    app.state.engine = create_engine(settings)
    app.state.session_factory = create_session_factory(app.state.engine)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Listing Replicator Status API")
    await app.state.engine.dispose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Listing Replicator Status API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "status": "/status"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
