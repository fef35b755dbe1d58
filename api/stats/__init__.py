"""Mint statistics endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from catalog import CollectionNotFoundError
from database.mints import MintRepository
from stats import StatsManager
from ..dependencies import get_repository

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/stats",
    tags=["Stats"]
)

@router.get("")
async def get_stats(
    creator: Optional[str] = Query(None, description="Restrict to one creator's collections"),
    repository: MintRepository = Depends(get_repository)
):
    """Get platform-wide or per-creator mint totals and history."""
    try:
        return await StatsManager(repository).platform_stats(creator)
    except Exception as e:
        logger.error(f"Error loading stats: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load stats"
        )

@router.get("/{collection}")
async def get_collection_stats(collection: str, repository: MintRepository = Depends(get_repository)):
    """Get totals, history and per-phase counts for a collection."""
    try:
        return await StatsManager(repository).collection_stats(collection)
    except CollectionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"Error loading stats for {collection}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load collection stats"
        )
