"""
Tribe Email Ingestion API
FastAPI application that turns inbound email into family-tree leaves.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_ingestion_config
from app.db import supabase_admin
from app.routers import email_address, email_webhook

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Tribe Email Ingestion API",
    description="Inbound email webhooks that create leaves from photos, videos and notes",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Allowed CORS origins: the local Next.js dev server plus any comma-separated
    entries in CORS_ORIGINS, de-duplicated in order.

    Only the JWT-protected /api routes are called from browsers; the webhooks
    are server-to-server.
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

app.include_router(email_webhook.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(email_address.router, prefix="/api/email", tags=["email"])


@app.on_event("startup")
async def log_startup() -> None:
    config = get_ingestion_config()
    logger.info(
        "Tribe email ingestion running on port %s (domains=%s, bucket=%s)",
        os.getenv("HOST_PORT", "8000"),
        ",".join(config.allowed_domains) or "(none)",
        config.media_bucket,
    )


@app.get("/")
async def root():
    return {"message": "Tribe Email Ingestion API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Test the Supabase database connection.

    Reads one row id from leaves with the service client. Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table("leaves").select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(status_code=503, detail="Database connection failed")


@app.get("/health/storage")
async def health_storage():
    """Verify that the media bucket exists. Returns 503 if it does not."""
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Storage client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    bucket = get_ingestion_config().media_bucket
    try:
        bucket_names = [b.name for b in supabase_admin.storage.list_buckets()]
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage check failed")

    if bucket not in bucket_names:
        raise HTTPException(status_code=503, detail=f"Storage bucket '{bucket}' not found")
    return {"status": "ok", "storage": "reachable", "bucket": bucket}
