"""
Koffers Entitlements - FastAPI Application

Main entry point for the backend API.
Provides endpoints for subscription status and usage accounting.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    KoffersError,
    ValidationError,
    NotFoundError,
    ConcurrencyConflictError,
    LimitExceededError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Koffers Entitlements starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from app.infrastructure.db.database import init_db
            await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")

    yield

    # Shutdown
    if settings.database_url:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.warning(f"Database shutdown error: {e}")

    logger.info("Koffers Entitlements shutting down...")


app = FastAPI(
    title="Koffers Entitlements",
    description="Subscription limits and usage accounting for Koffers",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(ConcurrencyConflictError)
async def conflict_error_handler(request: Request, exc: ConcurrencyConflictError):
    """Handle writes that kept losing to concurrent updates."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(LimitExceededError)
async def limit_exceeded_handler(request: Request, exc: LimitExceededError):
    """Handle consumption refused by plan limits."""
    return JSONResponse(
        status_code=429,
        content=exc.to_dict(),
    )


@app.exception_handler(KoffersError)
async def general_error_handler(request: Request, exc: KoffersError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "koffers-entitlements"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Koffers Entitlements API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import subscriptions, usage  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscription"])
app.include_router(usage.router, prefix="/api", tags=["Usage"])
