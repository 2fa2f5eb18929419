import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from leaselogix.api.router import api_router
from leaselogix.core.config import get_settings
from leaselogix.core.db import init_database, test_database_connection
from leaselogix.core.errors import register_exception_handlers
from leaselogix.core.logging import configure_logging
from leaselogix.middleware.security import setup_security_middleware

settings = get_settings()
logger = logging.getLogger(__name__)

db_initialized = False
db_error: str | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    global db_initialized, db_error
    configure_logging(settings.log_level)
    logger.info("Starting %s (%s)", settings.project_name, settings.environment)

    try:
        if not await test_database_connection():
            db_error = "Database connection failed"
            logger.error(db_error)
        else:
            await asyncio.wait_for(init_database(), timeout=30.0)
            db_initialized = True
    except asyncio.TimeoutError:
        db_error = "Database initialization timed out after 30s"
        logger.error(db_error)

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.project_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.backend_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
)

register_exception_handlers(app)
setup_security_middleware(app)

app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Health check endpoint - responds immediately, reports database status."""
    return {
        "status": "ok",
        "service": settings.project_name,
        "database_ready": db_initialized,
        "database_error": db_error,
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict:
    """Readiness check - only returns ok when the database answers."""
    if not await test_database_connection():
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "database_ready": False, "error": db_error},
        )
    return {"status": "ready", "database_ready": True}
