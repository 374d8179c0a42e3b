import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .core.exceptions import SafetyError, SafetyStoreError
from .db.base import SessionLocal, engine, init_db

settings = get_settings()

# Ensure logs directory exists
logs_dir = Path(settings.LOG_DIR)
if not logs_dir.is_absolute():
    logs_dir = Path(__file__).parent.parent / logs_dir
logs_dir.mkdir(parents=True, exist_ok=True)

# Configure both file and console logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(logs_dir / "speakpoly_safety.log", encoding="utf-8"),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not (settings.CLASSIFIER_API_USER and settings.CLASSIFIER_API_SECRET):
        logger.warning("Classifier credentials not set; only contact redaction will run")
    try:
        yield
    finally:
        # Ensure DB sessions and engine are properly cleaned up to avoid ResourceWarning
        try:
            SessionLocal.remove()
        except Exception as e:
            logger.warning("SessionLocal.remove() failed: %s", e)
        try:
            engine.dispose()
        except Exception as e:
            logger.warning("engine.dispose() failed: %s", e)


# Initialize FastAPI app with lifespan
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Trust & safety moderation for SpeakPoly chat",
    version=settings.VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Set up CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.PROJECT_NAME,
        "environment": get_settings().ENVIRONMENT,
    }


# Import and include routers
from .api.v1.api import api_router  # noqa: E402

# API v1 routes
app.include_router(api_router, prefix=f"{settings.API_PREFIX}/v1")


# Root endpoint
@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}", "docs": "/api/docs", "version": settings.VERSION}


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(SafetyStoreError)
async def safety_store_exception_handler(request, exc):
    logger.error("Safety store unavailable: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Safety store unavailable"},
    )


@app.exception_handler(SafetyError)
async def safety_exception_handler(request, exc):
    logger.warning("Unhandled safety error: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def run():
    """Serve the app with uvicorn; reloads on change when DEBUG is set."""
    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
