"""Allowlist store for phases without an inline allowlist.

Creators upload wallet lists per (collection, phase). The lists back the
eligibility lookup for store-backed phases and feed the merkle roots that
on-chain allowlist guards are configured with.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from catalog import Collection, CollectionManager
from database.mints import MintRepository
from . import merkle

logger = logging.getLogger(__name__)

HEADER_CELLS = {'address', 'wallet', 'wallet_address', 'walletaddress'}

class AllowlistError(Exception):
    """Base exception for allowlist errors."""
    pass

class AllowlistUnavailableError(AllowlistError):
    """Raised when the database has no phase_allowlist table."""
    pass

class EmptyAllowlistError(AllowlistError):
    """Raised when a phase has no stored allowlist."""
    pass

class WalletNotListedError(AllowlistError):
    """Raised when a proof is requested for a wallet that is not listed."""
    pass

def clean_addresses(addresses: Iterable[str]) -> List[str]:
    """Trim addresses and drop blanks, keeping input order."""
    return [str(address).strip() for address in addresses if address is not None and str(address).strip()]

def parse_csv(text: str) -> List[str]:
    """Read addresses from an uploaded CSV.

    One address per line; extra columns are ignored and a header row naming
    the address column is skipped.
    """
    addresses = []
    for number, line in enumerate(text.splitlines()):
        cell = line.split(',')[0].strip().strip('"').strip()
        if not cell:
            continue
        if number == 0 and cell.lower() in HEADER_CELLS:
            continue
        addresses.append(cell)
    return addresses

class AllowlistManager:
    """Manages stored phase allowlists."""

    def __init__(self, repository: Optional[MintRepository] = None) -> None:
        self.repository = repository or MintRepository()
        self.collections = CollectionManager(self.repository)

    async def _resolve(self, collection_key: str, phase_name: str) -> Collection:
        if not phase_name or not str(phase_name).strip():
            raise AllowlistError("Phase name is required")
        collection = await self.collections.get_collection(collection_key)
        if not self.repository.caps.phase_allowlist:
            raise AllowlistUnavailableError("This database has no phase_allowlist table")
        return collection

    async def bulk_upsert(self, collection_key: str, phase_name: str, addresses: Iterable[str]) -> Dict[str, int]:
        """Add addresses to a phase allowlist.

        Duplicates within the input and addresses stored by earlier uploads
        are ignored.

        Returns:
            Dict with ``count`` (addresses received after cleaning) and
            ``inserted`` (rows actually added)

        Raises:
            AllowlistError: If the phase name is missing or no addresses remain
            CollectionNotFoundError: If the collection does not exist
        """
        cleaned = clean_addresses(addresses)
        if not cleaned:
            raise AllowlistError("No addresses provided")
        collection = await self._resolve(collection_key, phase_name)

        inserted = await self.repository.allowlist_upsert(
            collection.id, str(phase_name).strip(), list(dict.fromkeys(cleaned))
        )
        logger.info(
            f"Allowlist upload for {collection.id}/{phase_name}: "
            f"{len(cleaned)} addresses received, {inserted} new"
        )
        return {'count': len(cleaned), 'inserted': inserted}

    async def clear(self, collection_key: str, phase_name: str) -> int:
        """Delete a phase allowlist. Returns the number of rows removed."""
        collection = await self._resolve(collection_key, phase_name)
        removed = await self.repository.allowlist_clear(collection.id, str(phase_name).strip())
        logger.info(f"Cleared {removed} allowlist entries for {collection.id}/{phase_name}")
        return removed

    async def export(self, collection_key: str, phase_name: str) -> List[str]:
        """Sorted, deduplicated addresses of a phase allowlist."""
        collection = await self._resolve(collection_key, phase_name)
        stored = await self.repository.allowlist_addresses(collection.id, str(phase_name).strip())
        return merkle.canonical_addresses(stored)

    async def export_csv(self, collection_key: str, phase_name: str) -> str:
        return '\n'.join(await self.export(collection_key, phase_name))

    async def merkle_root(self, collection_key: str, phase_name: str) -> Tuple[bytes, int]:
        """Merkle root of a phase allowlist and the number of addresses in it."""
        addresses = await self.export(collection_key, phase_name)
        return merkle.merkle_root(addresses), len(addresses)

    async def merkle_proof(self, collection_key: str, phase_name: str, wallet: str) -> List[bytes]:
        """Merkle proof for a wallet.

        Raises:
            EmptyAllowlistError: If the phase has no stored allowlist
            WalletNotListedError: If the wallet is not on it
        """
        addresses = await self.export(collection_key, phase_name)
        if not addresses:
            raise EmptyAllowlistError(f"No allowlist stored for phase {phase_name}")
        proof = merkle.merkle_proof(addresses, wallet)
        if proof is None:
            raise WalletNotListedError(f"Wallet {wallet} is not on the allowlist for phase {phase_name}")
        return proof

__all__ = [
    'AllowlistManager', 'AllowlistError', 'AllowlistUnavailableError',
    'EmptyAllowlistError', 'WalletNotListedError', 'clean_addresses', 'parse_csv'
]
