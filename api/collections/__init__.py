"""Read-only collection endpoint."""

from fastapi import APIRouter, Depends, HTTPException, status

from catalog import CollectionManager, CollectionNotFoundError
from database.mints import MintRepository
from phases import resolve_live
from ..dependencies import get_repository

# Create router
router = APIRouter(
    prefix="/collections",
    tags=["Collections"]
)

@router.get("/{collection}")
async def get_collection(collection: str, repository: MintRepository = Depends(get_repository)):
    """Get a collection's counters, phases and currently live phase."""
    try:
        found = await CollectionManager(repository).get_collection(collection)
    except CollectionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
    view = found.to_dict()
    live = resolve_live(found.phases)
    view['livePhase'] = live.name if live else None
    return view
