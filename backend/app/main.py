"""
Proposal Watch - FastAPI Application

Main entry point for the Proposal Watch backend.

Architecture:
- Governance feed → Poller → Dedup store → Notification fan-out
- Dedup store → Diff-stat backfill / Job triggers / Forum thread resolver
- Job runner → Commentary ingest → Dedup store

Every job is invoked by an external timer through /internal/* and keeps no
state between invocations other than what the dedup store records.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import scheduler_router, subscriptions_router, proposals_router
from .database import init_db


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Proposal Watch",
    description="""
    Proposal Watch - Governance Proposal Ingestion and Fan-out

    Polls the governance feed for new proposals, records them once, and
    notifies subscribers by browser push with email fallback.

    ## Jobs
    1. **check-proposals**: poll, dedup, notify
    2. **backfill-diff-stats**: resolve line counts from the code host
    3. **trigger-verification / trigger-commentary**: dispatch runner jobs
    4. **detect-forum-posts**: link canonical forum threads

    ## Key Principles
    - A proposal is notified at most once per successful poll
    - Resolved diff stats are final unless forced
    - At most one canonical forum thread per proposal
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(scheduler_router)
app.include_router(subscriptions_router, prefix="/api")
app.include_router(proposals_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Proposal Watch",
        "version": "1.0.0",
        "description": "Governance proposal ingestion and notification fan-out",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")))
