"""SQL access for collections, mint reservations and phase allowlists.

Every write to the collection counters goes through this module, and every
counter write is a single atomic statement (``items_reserved + $2 ...
RETURNING``, ``GREATEST(items_reserved - $2, 0)``, a recomputed SUM for
``items_minted``). Application code never reads a counter, changes it and
writes it back.

The repository is bound either to the pool or, inside ``transaction()``, to
a single connection so a group of statements commits together.
"""

import enum
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from uuid import UUID

from asyncpg.exceptions import PostgresError, UniqueViolationError

from .capabilities import SchemaCapabilities, FULL
from .exceptions import DatabaseError

logger = logging.getLogger(__name__)

COLLECTION_LOOKUP = '''
    SELECT *
    FROM collections
    WHERE id::text = $1 OR collection_address = $1 OR candy_machine_address = $1
    LIMIT 1
'''

class TransitionResult(str, enum.Enum):
    """Outcome of a guarded reservation status change."""
    APPLIED = "applied"
    ALREADY_CONFIRMED = "already_confirmed"
    ALREADY_FAILED = "already_failed"
    NOT_FOUND = "not_found"
    DUPLICATE_SIGNATURE = "duplicate_signature"

@dataclass
class Transition:
    result: TransitionResult
    collection_id: Optional[UUID] = None
    quantity: int = 0

    @property
    def applied(self) -> bool:
        return self.result is TransitionResult.APPLIED

class MintRepository:
    """Database operations behind the reservation engine."""

    def __init__(self, pool=None, capabilities: Optional[SchemaCapabilities] = None, conn=None) -> None:
        """Initialize the repository.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            capabilities: Schema features to target. Resolved from the database if omitted.
            conn: Connection to bind to, used for transactions
        """
        self.pool = pool
        self.capabilities = capabilities
        self._conn = conn

    async def ensure_pool(self):
        """Ensure we have a database pool and known capabilities."""
        if self._conn is not None:
            return
        from database import get_pool, get_capabilities
        if not self.pool:
            self.pool = await get_pool()
        if self.capabilities is None:
            self.capabilities = await get_capabilities()

    @property
    def caps(self) -> SchemaCapabilities:
        return self.capabilities or FULL

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Yield the bound connection, or one acquired from the pool."""
        if self._conn is not None:
            yield self._conn
            return
        await self.ensure_pool()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except PostgresError as e:
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}")

    @asynccontextmanager
    async def transaction(self, collection_id: Optional[UUID] = None, lock: bool = False) -> AsyncIterator['MintRepository']:
        """Run a group of statements in one transaction.

        Args:
            collection_id: Collection whose row to lock when ``lock`` is set
            lock: Hold ``SELECT ... FOR UPDATE`` on the collection row

        Yields:
            A repository bound to the transaction's connection
        """
        if self._conn is not None:
            yield self
            return
        await self.ensure_pool()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if lock and collection_id is not None:
                        await conn.execute(
                            'SELECT id FROM collections WHERE id = $1 FOR UPDATE',
                            collection_id
                        )
                    yield MintRepository(capabilities=self.caps, conn=conn)
        except PostgresError as e:
            logger.error(f"Database error in mint transaction: {e}")
            raise DatabaseError(f"Mint transaction failed: {e}")

    # Collections

    async def find_collection(self, key: str) -> Optional[Dict[str, Any]]:
        """Look a collection up by id, collection address or candy machine address."""
        key = (key or '').strip()
        if not key:
            return None
        async with self.connection() as conn:
            row = await conn.fetchrow(COLLECTION_LOOKUP, key)
        return dict(row) if row else None

    async def insert_collection(self, **fields: Any) -> Dict[str, Any]:
        """Insert a collection row and return it."""
        phases = fields.pop('phases', None) or []
        columns = list(fields.keys()) + ['phases']
        values = list(fields.values()) + [json.dumps(phases, default=str)]
        placeholders = ', '.join(f'${i}' for i in range(1, len(values) + 1))
        async with self.connection() as conn:
            row = await conn.fetchrow(
                f'''
                INSERT INTO collections ({', '.join(columns)})
                VALUES ({placeholders})
                RETURNING *
                ''',
                *values
            )
        return dict(row)

    async def reserve_items(self, collection_id: UUID, quantity: int) -> int:
        """Atomically add to items_reserved and return the new value."""
        async with self.connection() as conn:
            return await conn.fetchval(
                '''
                UPDATE collections
                SET items_reserved = items_reserved + $2,
                    updated_at = now()
                WHERE id = $1
                RETURNING items_reserved
                ''',
                collection_id,
                quantity
            )

    async def release_items(self, collection_id: UUID, quantity: int) -> Optional[int]:
        """Atomically subtract from items_reserved, never going below zero."""
        async with self.connection() as conn:
            return await conn.fetchval(
                '''
                UPDATE collections
                SET items_reserved = GREATEST(items_reserved - $2, 0),
                    updated_at = now()
                WHERE id = $1
                RETURNING items_reserved
                ''',
                collection_id,
                quantity
            )

    async def recompute_minted(self, collection_id: UUID) -> Optional[int]:
        """Set items_minted to the live sum of confirmed quantities."""
        async with self.connection() as conn:
            return await conn.fetchval(
                '''
                UPDATE collections
                SET items_minted = (
                        SELECT COALESCE(SUM(quantity), 0)
                        FROM mint_transactions
                        WHERE collection_id = $1 AND status = 'confirmed'
                    ),
                    updated_at = now()
                WHERE id = $1
                RETURNING items_minted
                ''',
                collection_id
            )

    # Reservations

    async def confirmed_quantity(
        self,
        collection_id: UUID,
        minter_address: Optional[str] = None,
        phase_name: Optional[str] = None,
        scoped: bool = True
    ) -> int:
        """Sum confirmed quantities for a collection.

        Args:
            collection_id: Collection to aggregate
            minter_address: Restrict to one wallet
            phase_name: Phase to scope to when ``scoped`` is set
            scoped: Restrict to ``phase_name``. Ignored on legacy schemas,
                which fall back to the collection-wide total.
        """
        clauses = ['collection_id = $1', "status = 'confirmed'"]
        args: List[Any] = [collection_id]
        if minter_address is not None:
            args.append(minter_address)
            clauses.append(f'minter_address = ${len(args)}')
        if scoped and self.caps.phase_name:
            args.append(phase_name)
            clauses.append(f'phase_name IS NOT DISTINCT FROM ${len(args)}::TEXT')

        async with self.connection() as conn:
            total = await conn.fetchval(
                f'''
                SELECT COALESCE(SUM(quantity), 0)
                FROM mint_transactions
                WHERE {' AND '.join(clauses)}
                ''',
                *args
            )
        return int(total or 0)

    async def insert_reservation(
        self,
        collection_id: UUID,
        minter_address: str,
        quantity: int,
        unit_price: Decimal,
        network: str,
        phase_name: Optional[str] = None,
        status: str = 'pending',
        signature: Optional[str] = None,
        nft_address: Optional[str] = None
    ) -> Optional[UUID]:
        """Insert a mint_transactions row.

        Rows carrying a signature are deduplicated on (collection_id,
        transaction_signature): a duplicate insert is a no-op and returns None.

        Returns:
            The new row id, or None when the signature was already recorded
        """
        columns = [
            ('collection_id', 'UUID'), ('minter_address', 'TEXT'), ('nft_address', 'TEXT'),
            ('transaction_signature', 'TEXT'), ('mint_price', 'DECIMAL'), ('platform_fee', 'DECIMAL'),
            ('total_paid', 'DECIMAL'), ('quantity', 'INT8'), ('status', 'TEXT'), ('network', 'TEXT')
        ]
        values: List[Any] = [
            collection_id, minter_address, nft_address, signature,
            unit_price, Decimal('0'), unit_price * quantity, quantity, status, network
        ]
        if self.caps.phase_name:
            columns.append(('phase_name', 'TEXT'))
            values.append(phase_name)

        # Explicit casts, parameter types cannot be inferred through INSERT ... SELECT
        selected = ', '.join(f'${i}::{kind}' for i, (_, kind) in enumerate(columns, start=1))
        query = f'''
            INSERT INTO mint_transactions ({', '.join(name for name, _ in columns)})
            SELECT {selected}
            WHERE $4::TEXT IS NULL OR NOT EXISTS (
                SELECT 1 FROM mint_transactions
                WHERE collection_id = $1::UUID AND transaction_signature = $4::TEXT
            )
            ON CONFLICT DO NOTHING
            RETURNING id
        '''
        async with self.connection() as conn:
            return await conn.fetchval(query, *values)

    async def get_reservation(self, reservation_id: UUID) -> Optional[Dict[str, Any]]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM mint_transactions WHERE id = $1',
                reservation_id
            )
        return dict(row) if row else None

    async def _classify(self, conn, reservation_id: UUID) -> Transition:
        row = await conn.fetchrow(
            'SELECT collection_id, quantity, status FROM mint_transactions WHERE id = $1',
            reservation_id
        )
        if not row:
            return Transition(TransitionResult.NOT_FOUND)
        result = {
            'confirmed': TransitionResult.ALREADY_CONFIRMED,
            'failed': TransitionResult.ALREADY_FAILED
        }.get(row['status'], TransitionResult.NOT_FOUND)
        return Transition(result, row['collection_id'], int(row['quantity']))

    async def mark_confirmed(
        self,
        reservation_id: UUID,
        signature: str,
        nft_address: Optional[str] = None
    ) -> Transition:
        """Move a pending reservation to confirmed.

        Guarded by ``status = 'pending'`` so only one caller ever applies the
        transition. A signature already recorded on another row of the same
        collection is reported as DUPLICATE_SIGNATURE.
        """
        async with self.connection() as conn:
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        '''
                        UPDATE mint_transactions
                        SET status = 'confirmed',
                            transaction_signature = $2,
                            nft_address = $3,
                            updated_at = now()
                        WHERE id = $1 AND status = 'pending'
                        RETURNING collection_id, quantity
                        ''',
                        reservation_id,
                        signature,
                        nft_address
                    )
            except UniqueViolationError:
                row = await conn.fetchrow(
                    'SELECT collection_id, quantity FROM mint_transactions WHERE id = $1',
                    reservation_id
                )
                return Transition(
                    TransitionResult.DUPLICATE_SIGNATURE,
                    row['collection_id'] if row else None,
                    int(row['quantity']) if row else 0
                )
            if row:
                return Transition(TransitionResult.APPLIED, row['collection_id'], int(row['quantity']))
            return await self._classify(conn, reservation_id)

    async def mark_failed(self, reservation_id: UUID) -> Transition:
        """Move a pending reservation to failed, guarded by ``status = 'pending'``."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE mint_transactions
                SET status = 'failed',
                    updated_at = now()
                WHERE id = $1 AND status = 'pending'
                RETURNING collection_id, quantity
                ''',
                reservation_id
            )
            if row:
                return Transition(TransitionResult.APPLIED, row['collection_id'], int(row['quantity']))
            return await self._classify(conn, reservation_id)

    async def fail_stale(self, older_than_minutes: int) -> List[Transition]:
        """Fail every pending reservation older than the given age."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                '''
                UPDATE mint_transactions
                SET status = 'failed',
                    updated_at = now()
                WHERE status = 'pending'
                AND created_at < now() - ($1::INT8 * interval '1 minute')
                RETURNING collection_id, quantity
                ''',
                older_than_minutes
            )
        return [
            Transition(TransitionResult.APPLIED, row['collection_id'], int(row['quantity']))
            for row in rows
        ]

    # Allowlists

    async def allowlist_contains(self, collection_id: UUID, phase_name: str, wallet: str) -> bool:
        async with self.connection() as conn:
            return bool(await conn.fetchval(
                '''
                SELECT EXISTS(
                    SELECT 1 FROM phase_allowlist
                    WHERE collection_id = $1 AND phase_name = $2 AND wallet_address = $3
                )
                ''',
                collection_id,
                phase_name,
                wallet
            ))

    async def allowlist_upsert(self, collection_id: UUID, phase_name: str, addresses: Iterable[str]) -> int:
        """Insert addresses, ignoring ones already present. Returns rows inserted."""
        addresses = list(addresses)
        if not addresses:
            return 0
        async with self.connection() as conn:
            result = await conn.execute(
                '''
                INSERT INTO phase_allowlist (collection_id, phase_name, wallet_address)
                SELECT $1, $2, address
                FROM unnest($3::TEXT[]) AS address
                ON CONFLICT (collection_id, phase_name, wallet_address) DO NOTHING
                ''',
                collection_id,
                phase_name,
                addresses
            )
        return int(result.split()[-1])

    async def allowlist_clear(self, collection_id: UUID, phase_name: str) -> int:
        async with self.connection() as conn:
            result = await conn.execute(
                'DELETE FROM phase_allowlist WHERE collection_id = $1 AND phase_name = $2',
                collection_id,
                phase_name
            )
        return int(result.split()[-1])

    async def allowlist_addresses(self, collection_id: UUID, phase_name: str) -> List[str]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                '''
                SELECT wallet_address
                FROM phase_allowlist
                WHERE collection_id = $1 AND phase_name = $2
                ORDER BY wallet_address
                ''',
                collection_id,
                phase_name
            )
        return [row['wallet_address'] for row in rows]

    # Statistics

    def _stats_filter(self, collection_id: Optional[UUID], creator: Optional[str]):
        clauses = ["mt.status = 'confirmed'"]
        args: List[Any] = []
        if collection_id is not None:
            args.append(collection_id)
            clauses.append(f'mt.collection_id = ${len(args)}')
        if creator:
            args.append(creator)
            clauses.append(f'c.creator_address = ${len(args)}')
        return ' AND '.join(clauses), args

    async def mint_totals(self, collection_id: Optional[UUID] = None, creator: Optional[str] = None) -> Dict[str, Any]:
        """Quantity, revenue and distinct minters over confirmed mints."""
        where, args = self._stats_filter(collection_id, creator)
        async with self.connection() as conn:
            row = await conn.fetchrow(
                f'''
                SELECT
                    COALESCE(SUM(mt.quantity), 0) AS total_minted,
                    COALESCE(SUM(mt.total_paid), 0) AS total_revenue,
                    COUNT(DISTINCT mt.minter_address) AS unique_minters
                FROM mint_transactions mt
                JOIN collections c ON mt.collection_id = c.id
                WHERE {where}
                ''',
                *args
            )
        return {
            'total_minted': int(row['total_minted'] or 0),
            'total_revenue': row['total_revenue'] or Decimal('0'),
            'unique_minters': int(row['unique_minters'] or 0)
        }

    async def mint_history(
        self,
        days: int,
        collection_id: Optional[UUID] = None,
        creator: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Confirmed mints per day, most recent first, for up to ``days`` days that had mints."""
        where, args = self._stats_filter(collection_id, creator)
        async with self.connection() as conn:
            rows = await conn.fetch(
                f'''
                SELECT
                    DATE_TRUNC('day', mt.created_at) AS day,
                    COALESCE(SUM(mt.quantity), 0) AS mints,
                    COALESCE(SUM(mt.total_paid), 0) AS revenue
                FROM mint_transactions mt
                JOIN collections c ON mt.collection_id = c.id
                WHERE {where}
                GROUP BY 1
                ORDER BY 1 DESC
                LIMIT {int(days)}
                ''',
                *args
            )
        return [
            {'day': row['day'], 'mints': int(row['mints']), 'revenue': row['revenue'] or Decimal('0')}
            for row in rows
        ]

    async def phase_counts(self, collection_id: UUID) -> List[Dict[str, Any]]:
        """Confirmed quantity per phase. Rows without a phase count as 'Unknown'."""
        phase = "COALESCE(phase_name, 'Unknown')" if self.caps.phase_name else "'Unknown'"
        async with self.connection() as conn:
            rows = await conn.fetch(
                f'''
                SELECT {phase} AS phase, COALESCE(SUM(quantity), 0) AS mints
                FROM mint_transactions
                WHERE collection_id = $1 AND status = 'confirmed'
                GROUP BY 1
                ORDER BY 2 DESC, 1
                ''',
                collection_id
            )
        return [{'phase': row['phase'], 'mints': int(row['mints'])} for row in rows]

__all__ = ['MintRepository', 'Transition', 'TransitionResult']
