"""Mint statistics for the creator dashboard."""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from catalog import CollectionManager
from database.mints import MintRepository

logger = logging.getLogger(__name__)

HISTORY_DAYS = 14
COLLECTION_HISTORY_DAYS = 30

def _history(rows) -> List[Dict[str, Any]]:
    return [
        {
            'timestamp': row['day'].isoformat() if row['day'] else None,
            'mints': row['mints'],
            'revenue': float(row['revenue'] or Decimal('0'))
        }
        for row in rows
    ]

def _totals(totals: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'totalMinted': totals['total_minted'],
        'totalRevenue': float(totals['total_revenue']),
        'uniqueMinters': totals['unique_minters']
    }

class StatsManager:
    """Aggregates confirmed mints."""

    def __init__(self, repository: Optional[MintRepository] = None) -> None:
        self.repository = repository or MintRepository()
        self.collections = CollectionManager(self.repository)

    async def platform_stats(self, creator: Optional[str] = None) -> Dict[str, Any]:
        """Totals and daily history across all collections, or one creator's.

        Args:
            creator: Optional creator wallet to restrict to

        Returns:
            Dict with totalMinted, totalRevenue, uniqueMinters and mintHistory

        Raises:
            DatabaseError: If a database operation fails
        """
        totals = await self.repository.mint_totals(creator=creator)
        history = await self.repository.mint_history(HISTORY_DAYS, creator=creator)

        stats = _totals(totals)
        stats['averageMintTime'] = 0
        stats['mintHistory'] = _history(history)
        return stats

    async def collection_stats(self, collection_key: str) -> Dict[str, Any]:
        """Totals, daily history and per-phase counts for one collection.

        Raises:
            CollectionNotFoundError: If the collection does not exist
            DatabaseError: If a database operation fails
        """
        collection = await self.collections.get_collection(collection_key)

        totals = await self.repository.mint_totals(collection_id=collection.id)
        history = await self.repository.mint_history(COLLECTION_HISTORY_DAYS, collection_id=collection.id)
        per_phase = await self.repository.phase_counts(collection.id)
        logger.debug(f"Loaded stats for collection {collection.id}: {totals['total_minted']} minted")

        stats = _totals(totals)
        stats['collectionId'] = str(collection.id)
        stats['itemsAvailable'] = collection.items_available
        stats['itemsReserved'] = collection.items_reserved
        stats['itemsMinted'] = collection.items_minted
        stats['mintHistory'] = _history(history)
        stats['phaseMinted'] = per_phase
        return stats

__all__ = ['StatsManager']
