"""Reservation ledger.

This module is the authoritative gate in front of the chain minter. A
reservation re-runs the eligibility rules, records a pending mint and claims
a contiguous block of item indices from the collection's reserved counter.
Reconciliation of those reservations lives in ``ledger.confirmation``.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from catalog import Collection, CollectionManager, CollectionNotFoundError, MintError
from config import settings_conf
from database.mints import MintRepository
from eligibility import EligibilityChecker, Reason, serialize_allowed
from phases import Phase, ResolutionStatus

logger = logging.getLogger(__name__)

STRICT_RESERVATIONS = settings_conf['strict_reservations']
RESERVATION_EXPIRATION_MINUTES = settings_conf['reservation_expiration_minutes']

DEFAULT_NETWORK = 'mainnet-beta'

class ReservationNotFoundError(MintError):
    """Raised when a reservation id does not exist."""
    pass

class InvalidMintRequestError(MintError):
    """Raised for requests that can never succeed, such as a zero quantity."""
    pass

@dataclass
class ReservationResult:
    ok: bool
    reason: Optional[Reason] = None
    reservation_id: Optional[UUID] = None
    already: int = 0
    allowed: Optional[Union[int, float]] = None
    reserved_start: Optional[int] = None
    reserved_indices: List[int] = field(default_factory=list)
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            payload = {
                'ok': False,
                'reason': self.reason.value if self.reason else None,
                'phase': self.phase
            }
            if self.reason is Reason.LIMIT:
                payload['already'] = self.already
                payload['allowed'] = serialize_allowed(self.allowed)
            return payload
        return {
            'ok': True,
            'reservationId': str(self.reservation_id),
            'already': self.already,
            'reservedStart': self.reserved_start,
            'reservedIndices': self.reserved_indices,
            'phase': self.phase
        }

def to_price(value: Any) -> Decimal:
    """Parse a unit price, rejecting negative or non-numeric values."""
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidMintRequestError(f"Invalid price {value!r}") from e
    if not price.is_finite() or price < 0:
        raise InvalidMintRequestError(f"Invalid price {value!r}")
    return price

class ReservationLedger:
    """Reserves inventory ahead of an on-chain mint."""

    def __init__(
        self,
        repository: Optional[MintRepository] = None,
        strict: Optional[bool] = None,
        expiration_minutes: Optional[int] = None
    ) -> None:
        """Initialize the ledger.

        Args:
            repository: Optional repository. Defaults to one on the shared pool.
            strict: Serialise reservations per collection with a row lock.
                Defaults to the strict_reservations setting.
            expiration_minutes: Age after which pending reservations are failed.
                Defaults to the reservation_expiration_minutes setting.
        """
        self.repository = repository or MintRepository()
        self.collections = CollectionManager(self.repository)
        self.checker = EligibilityChecker(self.repository)
        self.strict = STRICT_RESERVATIONS if strict is None else strict
        self.expiration_minutes = (
            RESERVATION_EXPIRATION_MINUTES if expiration_minutes is None else expiration_minutes
        )

    async def reserve(
        self,
        wallet: str,
        collection_key: str,
        quantity: int = 1,
        requested_phase_name: Optional[str] = None,
        unit_price_hint: Optional[Any] = None,
        network: str = DEFAULT_NETWORK
    ) -> ReservationResult:
        """Reserve items for a wallet.

        Args:
            wallet: Minting wallet address
            collection_key: Collection id, collection address or candy machine address
            quantity: Number of items to reserve
            requested_phase_name: Phase the client believes is live
            unit_price_hint: Price per item sent by the client. The phase price
                is used when absent.
            network: Cluster the mint happens on

        Returns:
            ReservationResult. Business rejections come back with ``ok`` False
            and a reason; nothing is written for them.

        Raises:
            InvalidMintRequestError: If quantity or price is invalid
            CollectionNotFoundError: If the collection does not exist
            DatabaseError: If a database operation fails
        """
        if not wallet or not str(wallet).strip():
            raise InvalidMintRequestError("Wallet address is required")
        if int(quantity) < 1:
            raise InvalidMintRequestError(f"Quantity must be at least 1, got {quantity}")
        wallet = str(wallet).strip()
        quantity = int(quantity)

        collection = await self.collections.get_collection(collection_key)
        resolution, admitted = await self.checker.resolve_phase(collection, wallet, requested_phase_name)

        if resolution.status is ResolutionStatus.NO_LIVE_PHASE:
            logger.info(f"Reservation by {wallet} on {collection.id} rejected: no live phase")
            return ReservationResult(ok=False, reason=Reason.NO_LIVE_PHASE)
        if not admitted:
            logger.info(f"Reservation by {wallet} rejected: not on allowlist for phase {resolution.phase_name}")
            return ReservationResult(ok=False, reason=Reason.ALLOWLIST, phase=resolution.phase_name)

        phase = resolution.phase
        if unit_price_hint is not None and unit_price_hint != '':
            unit_price = to_price(unit_price_hint)
        else:
            unit_price = phase.price if phase else Decimal('0')

        if self.strict:
            async with self.repository.transaction(collection.id, lock=True) as repo:
                rejection, already = await self._enforce_caps(repo, collection, phase, wallet, quantity)
                if rejection:
                    return rejection
                return await self._record(repo, collection, phase, wallet, quantity, unit_price, network, already)

        rejection, already = await self._enforce_caps(self.repository, collection, phase, wallet, quantity)
        if rejection:
            return rejection
        async with self.repository.transaction() as repo:
            return await self._record(repo, collection, phase, wallet, quantity, unit_price, network, already)

    async def _enforce_caps(
        self,
        repo: MintRepository,
        collection: Collection,
        phase: Optional[Phase],
        wallet: str,
        quantity: int
    ):
        phase_name = phase.name if phase else None
        already = await repo.confirmed_quantity(collection.id, minter_address=wallet, phase_name=phase_name)

        cap = phase.wallet_cap if phase else None
        if cap is not None and already + quantity > cap:
            logger.info(f"Reservation by {wallet} rejected: {already} + {quantity} exceeds wallet cap {cap}")
            return ReservationResult(
                ok=False, reason=Reason.LIMIT, already=already,
                allowed=max(0, cap - already), phase=phase_name
            ), already

        supply_cap = phase.supply_cap if phase else None
        if supply_cap is not None:
            used = await repo.confirmed_quantity(collection.id, phase_name=phase_name)
            if used + quantity > supply_cap:
                logger.info(f"Phase {phase_name} of {collection.id} sold out ({used}/{supply_cap})")
                return ReservationResult(ok=False, reason=Reason.PHASE_SOLD_OUT, phase=phase_name), already

        if collection.items_available > 0:
            minted = await repo.confirmed_quantity(collection.id, scoped=False)
            if minted + quantity > collection.items_available:
                logger.info(f"Collection {collection.id} sold out ({minted}/{collection.items_available})")
                return ReservationResult(ok=False, reason=Reason.SOLD_OUT, phase=phase_name), already

        return None, already

    async def _record(
        self,
        repo: MintRepository,
        collection: Collection,
        phase: Optional[Phase],
        wallet: str,
        quantity: int,
        unit_price: Decimal,
        network: str,
        already: int
    ) -> ReservationResult:
        phase_name = phase.name if phase else None
        reservation_id = await repo.insert_reservation(
            collection.id, wallet, quantity, unit_price, network or DEFAULT_NETWORK,
            phase_name=phase_name
        )
        reserved = await repo.reserve_items(collection.id, quantity)
        if reserved is None:
            raise CollectionNotFoundError(f"Collection {collection.id} disappeared while reserving")

        start = reserved - quantity
        logger.info(
            f"Reserved {quantity} of {collection.id} for {wallet} "
            f"(reservation {reservation_id}, indices {start}-{reserved - 1})"
        )
        return ReservationResult(
            ok=True,
            reservation_id=reservation_id,
            already=already,
            reserved_start=start,
            reserved_indices=list(range(start, reserved)),
            phase=phase_name
        )

    async def expire_stale_reservations(self, older_than_minutes: Optional[int] = None) -> int:
        """Fail pending reservations older than the expiration window.

        Released quantities are returned to the collections they came from.

        Returns:
            Number of reservations failed
        """
        minutes = self.expiration_minutes if older_than_minutes is None else older_than_minutes
        if not minutes or minutes <= 0:
            return 0

        async with self.repository.transaction() as repo:
            transitions = await repo.fail_stale(minutes)
            released = defaultdict(int)
            for transition in transitions:
                released[transition.collection_id] += transition.quantity
            for collection_id, quantity in released.items():
                await repo.release_items(collection_id, quantity)

        if transitions:
            logger.info(
                f"Expired {len(transitions)} pending reservations older than {minutes} minutes "
                f"across {len(released)} collections"
            )
        return len(transitions)

__all__ = [
    'ReservationLedger', 'ReservationResult', 'ReservationNotFoundError',
    'InvalidMintRequestError', 'STRICT_RESERVATIONS', 'RESERVATION_EXPIRATION_MINUTES'
]
