"""
FastAPI main application for RoomVibe
"""
import logging
import os
import re
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Add api directory to path for imports
api_dir = os.path.dirname(os.path.abspath(__file__))
if api_dir not in sys.path:
    sys.path.insert(0, api_dir)

from core.config import settings  # noqa: E402
from core.database import create_tables, engine  # noqa: E402
from core.exceptions import RoomVibeError  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from middleware.logging_middleware import RequestLoggingMiddleware  # noqa: E402
from routers import credits, generation, payments, suggestions  # noqa: E402

setup_logging()
logger = logging.getLogger(__name__)


def _preview(secret: str) -> str:
    return f"{secret[:7]}...{secret[-4:]}" if len(secret) > 11 else "***"


def _log_configuration():
    """Log which integrations are configured, with secrets masked"""
    logger.info("=" * 60)
    logger.info("CONFIGURATION CHECK")
    logger.info("=" * 60)

    keys = {
        "OPENAI_API_KEY": (settings.openai_api_key, "room analysis and prompts will not work"),
        "REPLICATE_API_KEY": (settings.replicate_api_key, "image generation will not work"),
        "STRIPE_SECRET_KEY": (settings.stripe_secret_key, "checkout will not work"),
        "STRIPE_WEBHOOK_SECRET": (settings.stripe_webhook_secret, "all webhooks will be rejected"),
    }
    for name, (value, consequence) in keys.items():
        if value:
            logger.info(f"✅ {name} is set: {_preview(value)}")
        else:
            logger.error(f"❌ {name} is NOT set - {consequence}!")

    sanitized = re.sub(r":\/\/[^:]*:[^@]*@", "://***:***@", settings.database_url)
    logger.info(f"✅ DATABASE_URL: {sanitized}")

    if settings.mock_image_analysis or settings.mock_image_generation:
        logger.warning(
            f"Mock backends enabled: image_analysis={settings.mock_image_analysis}, "
            f"image_generation={settings.mock_image_generation}"
        )
    logger.info("=" * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting RoomVibe API...")
    _log_configuration()

    if settings.database_create_tables:
        await create_tables()
        logger.info("Database tables created/verified")

    logger.info("Application started")

    yield

    logger.info("Shutting down RoomVibe API...")
    await engine.dispose()
    logger.info("Application stopped")


# Create FastAPI application
app = FastAPI(
    title="RoomVibe API",
    description="AI room redesign with a credit ledger",
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)


# Error envelopes: every JSON error is {"success": false, "error": ...}


@app.exception_handler(RoomVibeError)
async def roomvibe_error_handler(request: Request, exc: RoomVibeError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}", exc_info=exc)
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg", message)
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.version,
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": settings.version,
        "docs": "/docs" if settings.environment == "development" else None,
        "endpoints": {
            "credits": "/api/credits",
            "payments": "/api/payments",
            "generation": "/api",
            "suggestions": "/api/suggestions",
        },
    }


# Include routers
app.include_router(credits.router, prefix="/api/credits", tags=["credits"])
app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
app.include_router(generation.router, prefix="/api", tags=["generation"])
app.include_router(suggestions.router, prefix="/api/suggestions", tags=["suggestions"])

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_config=None,  # Use our custom logging
        access_log=False,  # We handle this in middleware
    )
