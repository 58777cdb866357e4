"""
Turion - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.db import init_db, dispose_db, async_session_maker
from app.api import (
    auth_router,
    chat_router,
    credits_router,
    memories_router,
    projects_router,
    webhooks_router,
)
from app.services.generation_service import get_generation_pipeline
from app.services.llm_service import get_provider_chain
from app.services.process_manager import get_process_manager
from app.services.project_lifecycle import get_lifecycle_manager

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    logger.info("Turion starting up...")
    await init_db()
    logger.info("Database initialized")

    await get_lifecycle_manager().reconcile()

    available = get_provider_chain().available()
    if not available:
        logger.warning("No LLM provider configured; chat requests will be rejected")
    else:
        logger.info(f"LLM providers: {', '.join(p.name for p in available)}")

    yield

    logger.info("Turion shutting down...")
    # Let in-flight turns settle before the process exits
    await get_generation_pipeline().drain()
    stopped = await get_process_manager().stop_all()
    if stopped:
        logger.info(f"Stopped {stopped} dev server(s)")
    await dispose_db()
    logger.info("Turion shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Metered AI chat and project builder backend",
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

app.include_router(auth_router, prefix=settings.api_prefix)
app.include_router(chat_router, prefix=settings.api_prefix)
app.include_router(credits_router, prefix=settings.api_prefix)
app.include_router(memories_router, prefix=settings.api_prefix)
app.include_router(projects_router, prefix=settings.api_prefix)
app.include_router(webhooks_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    """Detailed health check with database probe and uptime."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_status = f"error: {e}"

    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": "1.0.0",
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "llm_provider": settings.llm_provider,
        "llm_available": bool(get_provider_chain().available()),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
