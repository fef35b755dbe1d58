"""Eligibility checks for minting.

The storefront asks before it builds a transaction whether a wallet may mint
and how many items it may still take in the current phase. The answer is
advisory: caps count confirmed mints only and nothing is held, so the
reservation ledger repeats every check before it commits inventory.
"""

import enum
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from asyncpg.exceptions import PostgresError

from catalog import Collection, CollectionManager
from database.exceptions import DatabaseError
from database.mints import MintRepository
from phases import (
    MembershipLookup, Phase, PhaseResolution, ResolutionStatus,
    phase_admits, resolve_for_wallet
)

logger = logging.getLogger(__name__)

class Reason(str, enum.Enum):
    """Business reasons a mint is turned away."""
    NO_LIVE_PHASE = "no_live_phase"
    ALLOWLIST = "allowlist"
    LIMIT = "limit"
    PHASE_SOLD_OUT = "phase_sold_out"
    SOLD_OUT = "sold_out"

Allowance = Union[int, float]

def serialize_allowed(allowed: Allowance) -> Optional[int]:
    """JSON form of an allowance. Unbounded becomes None."""
    if allowed is None or math.isinf(allowed):
        return None
    return int(allowed)

@dataclass
class EligibilityResult:
    ok: bool
    reason: Optional[Reason] = None
    allowed: Allowance = 0
    already: int = 0
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'reason': self.reason.value if self.reason else None,
            'allowed': serialize_allowed(self.allowed),
            'already': self.already,
            'phase': self.phase
        }

def store_lookup(repository: MintRepository, collection_id) -> MembershipLookup:
    """Build a membership callback backed by the phase_allowlist table.

    Lookup failures admit the wallet. A broken or missing allowlist table
    must not stop a live mint.
    """
    async def lookup(phase: Phase, wallet: str) -> bool:
        if not repository.caps.phase_allowlist:
            logger.warning(f"phase_allowlist table missing, admitting {wallet} to phase {phase.name}")
            return True
        try:
            return await repository.allowlist_contains(collection_id, phase.name, str(wallet).strip())
        except (DatabaseError, PostgresError, OSError) as e:
            logger.warning(f"Allowlist lookup failed for phase {phase.name}, admitting {wallet}: {e}")
            return True

    return lookup

class EligibilityChecker:
    """Answers whether a wallet may mint, and how many."""

    def __init__(self, repository: Optional[MintRepository] = None) -> None:
        """Initialize the eligibility checker.

        Args:
            repository: Optional repository. Defaults to one on the shared pool.
        """
        self.repository = repository or MintRepository()
        self.collections = CollectionManager(self.repository)

    async def resolve_phase(
        self,
        collection: Collection,
        wallet: str,
        requested_phase_name: Optional[str] = None
    ) -> Tuple[PhaseResolution, bool]:
        """Choose the phase for a wallet and decide allowlist membership.

        Returns:
            The resolution and whether the wallet is admitted to its phase.
            With no phases configured there is nothing to enforce and the
            wallet is admitted.
        """
        lookup = store_lookup(self.repository, collection.id)
        resolution = await resolve_for_wallet(
            collection.phases, wallet, lookup, requested_name=requested_phase_name
        )
        if resolution.status is not ResolutionStatus.RESOLVED:
            return resolution, resolution.status is ResolutionStatus.NO_PHASES
        if resolution.listed is not None:
            return resolution, resolution.listed
        return resolution, await phase_admits(resolution.phase, wallet, lookup)

    async def check(
        self,
        wallet: str,
        collection_key: str,
        quantity: int = 1,
        requested_phase_name: Optional[str] = None
    ) -> EligibilityResult:
        """Check whether a wallet may mint.

        Args:
            wallet: Minting wallet address
            collection_key: Collection id, collection address or candy machine address
            quantity: Number of items the wallet wants
            requested_phase_name: Phase the client believes is live

        Returns:
            EligibilityResult. A quantity above the wallet's remainder is not a
            failure; ``allowed`` tells the client how many it may take.

        Raises:
            CollectionNotFoundError: If the collection does not exist
            DatabaseError: If a database operation fails
        """
        collection = await self.collections.get_collection(collection_key)
        resolution, admitted = await self.resolve_phase(collection, wallet, requested_phase_name)

        if resolution.status is ResolutionStatus.NO_LIVE_PHASE:
            return EligibilityResult(ok=False, reason=Reason.NO_LIVE_PHASE)
        if not admitted:
            logger.info(f"Wallet {wallet} not on allowlist for phase {resolution.phase_name}")
            return EligibilityResult(ok=False, reason=Reason.ALLOWLIST, phase=resolution.phase_name)

        phase = resolution.phase
        already = await self.repository.confirmed_quantity(
            collection.id, minter_address=wallet, phase_name=resolution.phase_name
        )
        cap = phase.wallet_cap if phase else None
        if cap is None:
            return EligibilityResult(ok=True, allowed=math.inf, already=already, phase=resolution.phase_name)
        if already >= cap:
            return EligibilityResult(
                ok=False, reason=Reason.LIMIT, allowed=0, already=already, phase=resolution.phase_name
            )

        allowed = cap - already
        if quantity > allowed:
            logger.debug(f"Wallet {wallet} asked for {quantity}, only {allowed} left in phase {phase.name}")
        return EligibilityResult(ok=True, allowed=allowed, already=already, phase=resolution.phase_name)

__all__ = [
    'EligibilityChecker', 'EligibilityResult', 'Reason',
    'serialize_allowed', 'store_lookup'
]
