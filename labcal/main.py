"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from labcal.config import get_encryption_key, get_settings
from labcal.database import close_database, get_database
from labcal.encryption import EncryptionManager
from labcal.errors import (
    AuthenticationRequired,
    ConfirmationRequired,
    ExchangeFailed,
    InvalidState,
    MigrationIncomplete,
    PermissionDenied,
    ProviderRequestRejected,
    SecretNotFound,
    SecretStoreError,
    SecretStoreUnavailable,
    TransientProviderError,
)
from labcal.limiter import limiter
from labcal.services import Services

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting calendar integration service...")
    logger.info(f"Public URL: {settings.public_url}")
    logger.info(f"Database: {settings.database_path}")

    db = await get_database()
    logger.info("Database initialized")

    # Credentials cannot be read or written without the key; refuse to start
    encryption = EncryptionManager(get_encryption_key())
    logger.info("Encryption manager initialized")

    services = Services(db, encryption, settings)
    app.state.services = services

    from labcal.jobs.scheduler import setup_scheduler, shutdown_scheduler
    setup_scheduler(services)

    yield

    # Shutdown
    logger.info("Shutting down...")
    shutdown_scheduler()
    await close_database()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Lab Calendar Integration",
    description="External calendar linking, one-way sync and credential management",
    version="1.0.0",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Add CORS middleware
settings = get_settings()
allowed_origins = [settings.public_url]
# Also allow localhost variants for development
if settings.public_url.startswith("http://localhost") or settings.public_url.startswith("https://localhost"):
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
@limiter.exempt
async def health_check():
    """Health check endpoint for monitoring."""
    try:
        db = await get_database()
        await db.execute("SELECT 1")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


# Include routers
from labcal.api import api_router
from labcal.auth.routes import router as auth_router

app.include_router(auth_router)
app.include_router(api_router)


# Domain exception handlers
@app.exception_handler(AuthenticationRequired)
async def authentication_required_handler(request: Request, exc: AuthenticationRequired):
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": str(exc), "action": "reconnect", "connection_id": exc.connection_id},
    )


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(ConfirmationRequired)
@app.exception_handler(InvalidState)
async def bad_request_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(ExchangeFailed)
@app.exception_handler(ProviderRequestRejected)
async def provider_refused_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


@app.exception_handler(SecretNotFound)
async def secret_not_found_handler(request: Request, exc: SecretNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(SecretStoreUnavailable)
@app.exception_handler(TransientProviderError)
async def unavailable_handler(request: Request, exc: Exception):
    logger.warning(f"Temporary failure serving {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Temporarily unavailable, try again later"},
    )


@app.exception_handler(SecretStoreError)
async def secret_store_error_handler(request: Request, exc: SecretStoreError):
    logger.error(f"Secret store error serving {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Credential storage error"},
    )


@app.exception_handler(MigrationIncomplete)
async def migration_incomplete_handler(request: Request, exc: MigrationIncomplete):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    log_level = settings.log_level.lower()

    uvicorn.run(
        "labcal.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=log_level,
        reload=False,
    )
