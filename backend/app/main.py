"""
Tally Backend API
FastAPI application for email-derived expense tracking and spending insights.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.routers import cron, email_sync, insights
from app.db import supabase_admin

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Tally API",
    description="Expense tracking from bank and delivery notification emails",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Allowed CORS origins: the local web dev server plus any listed in
    CORS_ORIGINS (comma-separated), deduplicated in order.
    """
    origins: List[str] = ["http://localhost:3000"]
    for origin in os.getenv("CORS_ORIGINS", "").split(","):
        origin = origin.strip()
        if origin and origin not in origins:
            origins.append(origin)
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(email_sync.router, prefix="/api/email", tags=["email-sync"])
app.include_router(insights.router, prefix="/api/insights", tags=["insights"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])


@app.on_event("startup")
async def log_startup() -> None:
    """Log where the API listens; HOST_PORT reflects any container port mapping."""
    host_port = os.getenv("HOST_PORT", "8000")
    logger.info("Tally API running at http://localhost:%s", host_port)


@app.get("/")
async def root():
    return {"message": "Tally API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Check that the admin Supabase client can reach the database.

    Returns 503 when the client is unconfigured or the query fails.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table("expenses").select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {str(exc)}",
        )
