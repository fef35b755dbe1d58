"""Reconciliation of reservations after the on-chain mint.

Every status change is guarded by ``status = 'pending'`` in SQL, so only the
call that actually moves a reservation out of pending touches the
collection's reserved counter. Replaying a confirm or a fail is harmless.
"""

import base64
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Union
from uuid import UUID

from catalog import CollectionManager, MintError
from config import settings_conf
from database.mints import MintRepository, TransitionResult
from ledger import (
    DEFAULT_NETWORK, InvalidMintRequestError, ReservationNotFoundError, to_price
)

logger = logging.getLogger(__name__)

SIGNATURE_MAX_LENGTH = settings_conf['signature_max_length']

class ReservationFailedError(MintError):
    """Raised when confirming a reservation that has already failed."""
    pass

Signature = Union[str, bytes, bytearray, Sequence[int]]

def normalize_signature(signature: Signature, max_length: int = SIGNATURE_MAX_LENGTH) -> str:
    """Turn a transaction signature into the stored text form.

    Text signatures are kept as sent. Raw signatures (bytes or a list of byte
    values, as some wallets return them) are base64 encoded. Either way the
    result is cut to ``max_length`` characters.

    Raises:
        InvalidMintRequestError: If the signature is empty or not byte-like
    """
    if isinstance(signature, str):
        text = signature.strip()
    else:
        try:
            text = base64.b64encode(bytes(signature)).decode('ascii')
        except (TypeError, ValueError) as e:
            raise InvalidMintRequestError(f"Unsupported signature value: {e}") from e
    if not text:
        raise InvalidMintRequestError("Signature is required")
    return text[:max_length]

def parse_reservation_id(reservation_id: Union[str, UUID]) -> Optional[UUID]:
    if isinstance(reservation_id, UUID):
        return reservation_id
    try:
        return UUID(str(reservation_id).strip())
    except (ValueError, AttributeError):
        return None

@dataclass
class ConfirmationResult:
    ok: bool = True
    status: str = 'confirmed'
    applied: bool = True
    reservation_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {'ok': self.ok, 'status': self.status, 'applied': self.applied}
        if self.reservation_id is not None:
            payload['reservationId'] = str(self.reservation_id)
        return payload

class ConfirmationManager:
    """Confirms and fails reservations, and records direct confirmations."""

    def __init__(
        self,
        repository: Optional[MintRepository] = None,
        signature_max_length: Optional[int] = None
    ) -> None:
        self.repository = repository or MintRepository()
        self.collections = CollectionManager(self.repository)
        self.signature_max_length = signature_max_length or SIGNATURE_MAX_LENGTH

    async def confirm(
        self,
        reservation_id: Union[str, UUID],
        signature: Signature,
        nft_address: Optional[str] = None
    ) -> ConfirmationResult:
        """Confirm a pending reservation.

        Idempotent: confirming an already confirmed reservation succeeds
        without touching the counters. When the signature was already recorded
        by ``confirm_direct``, the reservation is closed as failed so its
        inventory is released and the mint is not counted twice.

        Args:
            reservation_id: Reservation to confirm
            signature: Transaction signature, text or raw bytes
            nft_address: Minted asset address

        Returns:
            ConfirmationResult

        Raises:
            InvalidMintRequestError: If the id or signature is malformed
            ReservationNotFoundError: If the reservation does not exist
            ReservationFailedError: If the reservation already failed
            DatabaseError: If a database operation fails
        """
        parsed_id = parse_reservation_id(reservation_id)
        if parsed_id is None:
            raise InvalidMintRequestError(f"Invalid reservation id {reservation_id!r}")
        normalized = normalize_signature(signature, self.signature_max_length)

        async with self.repository.transaction() as repo:
            transition = await repo.mark_confirmed(parsed_id, normalized, nft_address or None)

            if transition.applied:
                await repo.release_items(transition.collection_id, transition.quantity)
                minted = await repo.recompute_minted(transition.collection_id)
                logger.info(
                    f"Confirmed reservation {parsed_id} ({transition.quantity} items, "
                    f"{minted} minted in collection {transition.collection_id})"
                )
                return ConfirmationResult(reservation_id=parsed_id)

            if transition.result is TransitionResult.DUPLICATE_SIGNATURE:
                closed = await repo.mark_failed(parsed_id)
                if closed.applied:
                    await repo.release_items(closed.collection_id, closed.quantity)
                await repo.recompute_minted(transition.collection_id)
                logger.warning(
                    f"Signature for reservation {parsed_id} was already recorded directly, "
                    "closed the reservation without counting it again"
                )
                return ConfirmationResult(applied=False, reservation_id=parsed_id)

        if transition.result is TransitionResult.ALREADY_CONFIRMED:
            logger.debug(f"Reservation {parsed_id} already confirmed")
            return ConfirmationResult(applied=False, reservation_id=parsed_id)
        if transition.result is TransitionResult.ALREADY_FAILED:
            raise ReservationFailedError(f"Reservation {parsed_id} already failed")
        raise ReservationNotFoundError(f"Reservation {parsed_id} not found")

    async def fail(self, reservation_id: Union[str, UUID]) -> ConfirmationResult:
        """Fail a pending reservation and release its items.

        Always succeeds. Unknown, malformed and already settled reservations
        are left alone.
        """
        parsed_id = parse_reservation_id(reservation_id)
        if parsed_id is None:
            logger.warning(f"Ignoring fail for malformed reservation id {reservation_id!r}")
            return ConfirmationResult(status='failed', applied=False)

        async with self.repository.transaction() as repo:
            transition = await repo.mark_failed(parsed_id)
            if transition.applied:
                await repo.release_items(transition.collection_id, transition.quantity)

        if transition.applied:
            logger.info(f"Failed reservation {parsed_id}, released {transition.quantity} items")
        else:
            logger.debug(f"Fail for reservation {parsed_id} was a no-op ({transition.result.value})")
        return ConfirmationResult(status='failed', applied=transition.applied, reservation_id=parsed_id)

    async def confirm_direct(
        self,
        collection_key: str,
        wallet: str,
        quantity: int,
        unit_price: Any,
        network: Optional[str],
        signature: Signature,
        nft_address: Optional[str] = None,
        phase_name: Optional[str] = None
    ) -> ConfirmationResult:
        """Record a confirmed mint that has no usable reservation.

        Used when the reservation was lost or could not be confirmed. Rows are
        deduplicated on the collection and signature, so retries record the
        mint once.

        Raises:
            InvalidMintRequestError: If quantity, price or signature is invalid
            CollectionNotFoundError: If the collection does not exist
            DatabaseError: If a database operation fails
        """
        if not wallet or not str(wallet).strip():
            raise InvalidMintRequestError("Wallet address is required")
        if int(quantity) < 1:
            raise InvalidMintRequestError(f"Quantity must be at least 1, got {quantity}")
        price = to_price(unit_price if unit_price not in (None, '') else Decimal('0'))
        normalized = normalize_signature(signature, self.signature_max_length)

        collection = await self.collections.get_collection(collection_key)

        async with self.repository.transaction() as repo:
            row_id = await repo.insert_reservation(
                collection.id, str(wallet).strip(), int(quantity), price,
                network or DEFAULT_NETWORK,
                phase_name=phase_name or None,
                status='confirmed',
                signature=normalized,
                nft_address=nft_address or None
            )
            minted = await repo.recompute_minted(collection.id)

        if row_id is None:
            logger.info(f"Direct confirmation for {collection.id} already recorded, signature {normalized[:16]}...")
            return ConfirmationResult(applied=False)
        logger.info(f"Recorded direct confirmation {row_id} for {collection.id} ({minted} minted)")
        return ConfirmationResult(reservation_id=row_id)

__all__ = [
    'ConfirmationManager', 'ConfirmationResult', 'ReservationFailedError',
    'normalize_signature', 'parse_reservation_id'
]
