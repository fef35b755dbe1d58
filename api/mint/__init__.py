"""Mint API endpoint.

One POST route dispatches on ``action``: check, reserve, confirm, fail and
confirm_direct. Field names follow the storefront client (camelCase).
"""

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from catalog import CollectionNotFoundError
from database.exceptions import DatabaseError
from database.mints import MintRepository
from eligibility import EligibilityChecker
from ledger import InvalidMintRequestError, ReservationLedger, ReservationNotFoundError
from ledger.confirmation import ConfirmationManager, ReservationFailedError
from ..dependencies import get_repository

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/mint",
    tags=["Mint"]
)

class PhaseRef(BaseModel):
    """Phase object as sent by the client. Only the name is used."""
    model_config = ConfigDict(extra='ignore')

    name: Optional[str] = None

class MintRequest(BaseModel):
    """Request model for all mint actions."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    action: str
    wallet: Optional[str] = None
    collection_address: Optional[str] = Field(None, alias='collectionAddress')
    quantity: int = Field(1, ge=1)
    phase: Optional[Union[str, PhaseRef]] = None
    phase_name: Optional[str] = Field(None, alias='phaseName')
    price: Optional[Decimal] = Field(None, ge=0)
    network: str = 'mainnet-beta'
    reservation_id: Optional[str] = Field(None, alias='reservationId')
    signature: Optional[Union[str, List[int]]] = None
    nft_address: Optional[str] = Field(None, alias='nftAddress')

    @property
    def requested_phase(self) -> Optional[str]:
        if isinstance(self.phase, PhaseRef):
            return self.phase.name or self.phase_name
        return self.phase or self.phase_name

def _require(request: MintRequest, *fields: str):
    missing = [name for name in fields if not getattr(request, name)]
    if missing:
        aliases = {
            name: MintRequest.model_fields[name].alias or name
            for name in missing
        }
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {', '.join(aliases[name] for name in missing)}"
        )

async def handle_check(request: MintRequest, repository: MintRepository) -> Dict[str, Any]:
    _require(request, 'wallet', 'collection_address')
    result = await EligibilityChecker(repository).check(
        wallet=request.wallet,
        collection_key=request.collection_address,
        quantity=request.quantity,
        requested_phase_name=request.requested_phase
    )
    return result.to_dict()

async def handle_reserve(request: MintRequest, repository: MintRepository) -> Dict[str, Any]:
    _require(request, 'wallet', 'collection_address')
    result = await ReservationLedger(repository).reserve(
        wallet=request.wallet,
        collection_key=request.collection_address,
        quantity=request.quantity,
        requested_phase_name=request.requested_phase,
        unit_price_hint=request.price,
        network=request.network
    )
    return result.to_dict()

async def handle_confirm(request: MintRequest, repository: MintRepository) -> Dict[str, Any]:
    _require(request, 'reservation_id', 'signature')
    result = await ConfirmationManager(repository).confirm(
        request.reservation_id,
        request.signature,
        request.nft_address
    )
    return result.to_dict()

async def handle_fail(request: MintRequest, repository: MintRepository) -> Dict[str, Any]:
    _require(request, 'reservation_id')
    result = await ConfirmationManager(repository).fail(request.reservation_id)
    return result.to_dict()

async def handle_confirm_direct(request: MintRequest, repository: MintRepository) -> Dict[str, Any]:
    _require(request, 'collection_address', 'wallet', 'signature')
    result = await ConfirmationManager(repository).confirm_direct(
        collection_key=request.collection_address,
        wallet=request.wallet,
        quantity=request.quantity,
        unit_price=request.price,
        network=request.network,
        signature=request.signature,
        nft_address=request.nft_address,
        phase_name=request.requested_phase
    )
    return result.to_dict()

ACTIONS: Dict[str, Callable[[MintRequest, MintRepository], Awaitable[Dict[str, Any]]]] = {
    'check': handle_check,
    'reserve': handle_reserve,
    'confirm': handle_confirm,
    'fail': handle_fail,
    'confirm_direct': handle_confirm_direct
}

@router.post("")
async def mint(request: MintRequest, repository: MintRepository = Depends(get_repository)):
    """Check eligibility, reserve inventory or reconcile a reservation."""
    handler = ACTIONS.get(request.action)
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown action: {request.action}"
        )
    try:
        return await handler(request, repository)
    except HTTPException:
        raise
    except CollectionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ReservationNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ReservationFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    except InvalidMintRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except DatabaseError as e:
        logger.error(f"Mint {request.action} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Mint API failed"
        )
    except Exception as e:
        logger.exception(f"Unexpected error in mint {request.action}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
