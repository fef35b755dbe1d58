"""REST API module for the mint service.

This module provides HTTP endpoints for:
- Checking mint eligibility and reserving inventory
- Confirming and failing reservations
- Managing phase allowlists and merkle proofs
- Mint statistics
- Read-only collection views
"""

import logging
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledger import ReservationLedger, RESERVATION_EXPIRATION_MINUTES

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60

# Background task for reservation expiration
async def expire_reservations_task():
    """Background task to fail stale pending reservations."""
    ledger = ReservationLedger()
    while True:
        try:
            # Run expiration check every minute
            await asyncio.sleep(SWEEP_INTERVAL)
            expired_count = await ledger.expire_stale_reservations()
            if expired_count > 0:
                logger.info(f"Expired {expired_count} stale reservations")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in reservation expiration task: {e}")
            # Don't let the task die, wait and retry
            await asyncio.sleep(SWEEP_INTERVAL)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Initializing API...")
    # Don't initialize DB here since it's handled in __main__.py

    expiration_task = None
    if RESERVATION_EXPIRATION_MINUTES > 0:
        expiration_task = asyncio.create_task(expire_reservations_task())
        logger.info(f"Started reservation expiration task (expires after {RESERVATION_EXPIRATION_MINUTES} minutes)")

    yield

    # Shutdown
    logger.info("Shutting down API...")
    if expiration_task:
        expiration_task.cancel()
        try:
            await expiration_task
        except asyncio.CancelledError:
            pass
    # Don't close DB here since it's handled in __main__.py

# Create FastAPI app
app = FastAPI(
    title="Mint Desk API",
    description="Mint phase reservation and eligibility API",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Root endpoint - register this BEFORE other routers
@app.get("/")
async def root():
    return {
        "name": "Mint Desk API",
        "version": "1.0.0",
        "status": "running"
    }

# Import and include all routers
from .mint import router as mint_router
from .allowlist import router as allowlist_router
from .stats import router as stats_router
from .collections import router as collections_router

# Include all routers
app.include_router(mint_router)
app.include_router(allowlist_router)
app.include_router(stats_router)
app.include_router(collections_router)
