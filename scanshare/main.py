import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from scanshare.config import get_settings
from scanshare.database import create_tables, SessionLocal
from scanshare.routes import router as sessions_router
from scanshare.viewer_routes import router as viewer_router

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and initialize database on startup."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_tables()
    yield

app = FastAPI(
    title="ScanShare API",
    description="Shared barcode scanning sessions",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(viewer_router)


@app.get("/health")
async def health_check():
    checks = {"database": "healthy"}

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as e:
        logger.error("Health check failed: database unreachable: %s", e)
        checks["database"] = "unhealthy"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "unhealthy"
    status_code = 200 if overall == "healthy" else 503

    return JSONResponse(
        content={"status": overall, "checks": checks},
        status_code=status_code,
    )
