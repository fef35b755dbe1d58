"""Allowlist API endpoints."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field

from allowlist import (
    AllowlistError, AllowlistManager, AllowlistUnavailableError,
    EmptyAllowlistError, WalletNotListedError, parse_csv
)
from catalog import CollectionNotFoundError
from database.exceptions import DatabaseError
from database.mints import MintRepository
from ..dependencies import get_repository

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/allowlist",
    tags=["Allowlist"]
)

class AllowlistRequest(BaseModel):
    """Request model for JSON allowlist actions."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    action: str
    collection_id: Optional[str] = Field(None, alias='collectionId')
    collection_address: Optional[str] = Field(None, alias='collectionAddress')
    candy_machine_address: Optional[str] = Field(None, alias='candyMachineAddress')
    phase_name: Optional[str] = Field(None, alias='phaseName')
    addresses: Optional[List[str]] = None
    wallet: Optional[str] = None

    @property
    def collection_key(self) -> Optional[str]:
        return self.collection_id or self.collection_address or self.candy_machine_address

def _translate(e: Exception) -> HTTPException:
    """Map allowlist failures to HTTP errors."""
    if isinstance(e, (CollectionNotFoundError, EmptyAllowlistError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, WalletNotListedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, AllowlistUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, AllowlistError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, DatabaseError):
        logger.error(f"Allowlist database error: {e}")
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Allowlist API failed")
    logger.exception(f"Unexpected allowlist error: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

@router.post("")
async def allowlist_action(request: AllowlistRequest, repository: MintRepository = Depends(get_repository)):
    """Upload, clear, hash or prove a phase allowlist."""
    if not request.collection_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing collectionId"
        )
    manager = AllowlistManager(repository)
    try:
        if request.action == 'upload':
            if request.addresses is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Missing addresses"
                )
            result = await manager.bulk_upsert(request.collection_key, request.phase_name, request.addresses)
            return {'ok': True, **result}

        if request.action == 'clear':
            removed = await manager.clear(request.collection_key, request.phase_name)
            return {'ok': True, 'removed': removed}

        if request.action == 'merkle':
            root, count = await manager.merkle_root(request.collection_key, request.phase_name)
            return {'merkleRoot': list(root), 'count': count}

        if request.action == 'proof':
            if not request.wallet:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Missing wallet"
                )
            proof = await manager.merkle_proof(request.collection_key, request.phase_name, request.wallet)
            return {'proof': [list(node) for node in proof]}

    except HTTPException:
        raise
    except Exception as e:
        raise _translate(e)

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Unknown action: {request.action}"
    )

@router.post("/upload")
async def upload_allowlist_csv(
    collectionId: str = Form(...),
    phaseName: str = Form(...),
    file: UploadFile = File(...),
    repository: MintRepository = Depends(get_repository)
) -> Dict[str, Any]:
    """Upload a CSV allowlist, one address per line."""
    content = await file.read()
    try:
        text = content.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="CSV must be UTF-8 encoded"
        )
    addresses = parse_csv(text)
    if not addresses:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No addresses found in CSV"
        )
    try:
        result = await AllowlistManager(repository).bulk_upsert(collectionId, phaseName, addresses)
        return {'ok': True, **result}
    except Exception as e:
        raise _translate(e)

@router.get("/export")
async def export_allowlist(
    collectionId: str = Query(...),
    phaseName: str = Query(...),
    repository: MintRepository = Depends(get_repository)
):
    """Download a phase allowlist as CSV."""
    try:
        csv = await AllowlistManager(repository).export_csv(collectionId, phaseName)
    except Exception as e:
        raise _translate(e)
    return Response(
        content=csv,
        media_type="text/csv",
        headers={'Content-Disposition': f'attachment; filename="allowlist-{phaseName}.csv"'}
    )
