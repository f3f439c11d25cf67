"""
ClinicalSentry - Main FastAPI Application
Clinical alert detection and triage for the patient workspace
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from alert_engine.config import settings
from alert_engine.exceptions import AlertStoreError
from alert_engine.routes import alerts as alert_routes
from alert_engine.services.alert_store import get_alert_store

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting ClinicalSentry alert engine...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Alert store: {settings.store_backend}")
    logger.info(
        f"Detectors: parallel={settings.detector_parallel}, "
        f"timeout={settings.detector_timeout_seconds}s"
    )

    health = get_alert_store().health_check()
    if health.get("status") != "healthy":
        logger.error(f"Alert store not healthy at startup: {health}")

    yield

    # Shutdown
    logger.info("Shutting down ClinicalSentry alert engine...")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="ClinicalSentry",
    description="Clinical alert detection and triage engine",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(alert_routes.router)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0",
        "environment": settings.environment
    }


@app.get("/health/ready", tags=["health"])
def readiness_check():
    """Readiness check endpoint"""
    store_health = get_alert_store().health_check()

    if store_health.get("status") != "healthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Alert store not available"
        )

    return {
        "status": "ready",
        "store": store_health,
        "timestamp": datetime.now().isoformat()
    }


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "timestamp": datetime.now().isoformat()
        }
    )


@app.exception_handler(AlertStoreError)
async def alert_store_exception_handler(request, exc):
    """Handle store failures that escape a route"""
    logger.error(f"Alert store error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "Alert store unavailable",
            "timestamp": datetime.now().isoformat()
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An error occurred",
            "timestamp": datetime.now().isoformat()
        }
    )


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "alert_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower()
    )
