"""
Civic Resolution Verifier API - Main application entry point.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pathlib import Path
import logging
from config import settings

from database import init_db
from routes import dependencies, reports, verification

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("[STARTUP] Database tables ready")
    yield
    dependencies.shutdown()


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers
app.include_router(reports.router)
app.include_router(verification.router)

upload_dir = Path(settings.UPLOAD_DIR)
upload_dir.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(upload_dir)), name="uploads")


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "message": "Civic Resolution Verifier API",
        "version": settings.API_VERSION,
        "endpoints": {
            "create_report": "/api/v1/reports",
            "verify_resolution": "/api/v1/reports/{report_id}/verify-resolution",
            "strict_resolution": "/api/v1/reports/{report_id}/submit-resolution",
            "report_resolutions": "/api/v1/reports/{report_id}/resolutions",
            "suspicious_queue": "/api/v1/resolutions/suspicious",
            "recent_audit": "/api/v1/audit",
            "audit_trail": "/api/v1/audit/{submitter}",
            "docs": "/docs",
            "redoc": "/redoc"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.API_VERSION
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
