"""Collection catalog.

Collections are created at deploy time and looked up by their UUID or by
either on-chain alias (collection address, candy machine address). The
counters on the row are owned by the reservation ledger; this module only
reads them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
from uuid import UUID

from database.mints import MintRepository
from phases import Phase, parse_phases

logger = logging.getLogger(__name__)

class MintError(Exception):
    """Base exception for mint engine errors."""
    pass

class CollectionNotFoundError(MintError):
    """Raised when no collection matches the given id or address."""
    pass

@dataclass
class Collection:
    """A collection row with its phases parsed."""
    id: UUID
    name: str
    items_available: int = 0
    items_reserved: int = 0
    items_minted: int = 0
    phases: List[Phase] = field(default_factory=list)
    status: str = 'draft'
    network: str = 'mainnet-beta'
    collection_address: Optional[str] = None
    candy_machine_address: Optional[str] = None
    creator_address: Optional[str] = None
    symbol: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Collection':
        return cls(
            id=row['id'],
            name=row.get('name') or '',
            items_available=int(row.get('items_available') or 0),
            items_reserved=int(row.get('items_reserved') or 0),
            items_minted=int(row.get('items_minted') or 0),
            phases=parse_phases(row.get('phases')),
            status=row.get('status') or 'draft',
            network=row.get('network') or 'mainnet-beta',
            collection_address=row.get('collection_address'),
            candy_machine_address=row.get('candy_machine_address'),
            creator_address=row.get('creator_address'),
            symbol=row.get('symbol'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': str(self.id),
            'name': self.name,
            'symbol': self.symbol,
            'status': self.status,
            'network': self.network,
            'collectionAddress': self.collection_address,
            'candyMachineAddress': self.candy_machine_address,
            'creatorAddress': self.creator_address,
            'itemsAvailable': self.items_available,
            'itemsReserved': self.items_reserved,
            'itemsMinted': self.items_minted,
            'phases': [phase.model_dump(mode='json', by_alias=True) for phase in self.phases]
        }

class CollectionManager:
    """Reads and creates collections."""

    def __init__(self, repository: Optional[MintRepository] = None) -> None:
        """Initialize the collection manager.

        Args:
            repository: Optional repository. Defaults to one on the shared pool.
        """
        self.repository = repository or MintRepository()

    async def get_collection(self, key: Union[str, UUID]) -> Collection:
        """Get a collection by id, collection address or candy machine address.

        Raises:
            CollectionNotFoundError: If nothing matches
        """
        row = await self.repository.find_collection(str(key or ''))
        if not row:
            raise CollectionNotFoundError(f"Collection {key} not found")
        return Collection.from_row(row)

    async def create_collection(
        self,
        name: str,
        items_available: int,
        phases: Optional[Sequence[Union[Phase, Dict[str, Any]]]] = None,
        collection_address: Optional[str] = None,
        candy_machine_address: Optional[str] = None,
        creator_address: Optional[str] = None,
        symbol: Optional[str] = None,
        network: str = 'mainnet-beta',
        status: str = 'live'
    ) -> Collection:
        """Create a collection.

        Args:
            name: Display name
            items_available: Total supply cap, 0 for unlimited
            phases: Mint phases as Phase objects or camelCase dicts
            collection_address: On-chain collection address
            candy_machine_address: On-chain candy machine address
            creator_address: Creator wallet
            symbol: Collection symbol
            network: Cluster the collection is deployed on
            status: Denormalized display status

        Returns:
            The created collection

        Raises:
            ValueError: If phase names collide
        """
        parsed = parse_phases(list(phases or []))
        names = [phase.name for phase in parsed]
        if len(names) != len(set(names)):
            raise ValueError(f"Phase names must be unique within a collection: {names}")

        row = await self.repository.insert_collection(
            name=name,
            symbol=symbol,
            creator_address=creator_address,
            collection_address=collection_address,
            candy_machine_address=candy_machine_address,
            network=network,
            items_available=items_available,
            status=status,
            phases=[phase.model_dump(mode='json', by_alias=True) for phase in parsed]
        )
        logger.info(f"Created collection {row['id']} ({name}) with {len(parsed)} phases")
        return Collection.from_row(row)

__all__ = ['Collection', 'CollectionManager', 'MintError', 'CollectionNotFoundError']
