"""Shared fixtures.

``MemoryMintRepository`` implements the same contract as
``database.mints.MintRepository`` on plain dicts so the mint engine can be
exercised without a database. Every method yields to the event loop before
touching state, which lets concurrent tasks interleave the way separate
database connections would.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from database.capabilities import FULL, LEGACY, SchemaCapabilities
from database.exceptions import DatabaseError
from database.mints import Transition, TransitionResult

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
COLLECTION_ADDRESS = "CoLLxN8yV1Dq7C3Hc1ZkQe1sVJq2m4GqJ3XjGZ5LkD2q"
CANDY_MACHINE_ADDRESS = "CndyV3LdqHUfDLmE5naZjVN8rBZz4tqhdefbAnjHG3JR"

def iso(delta_hours: float) -> str:
    """ISO timestamp relative to now."""
    return (datetime.now(timezone.utc) + timedelta(hours=delta_hours)).isoformat()

def public_phase(name: str = "Public", **extra) -> Dict[str, Any]:
    phase = {"name": name, "price": "0.5", "startDate": iso(-1), "endDate": iso(24), "allowlist": []}
    phase.update(extra)
    return phase

class MemoryMintRepository:
    """In-memory stand-in for MintRepository."""

    def __init__(self, capabilities: SchemaCapabilities = FULL):
        self.capabilities = capabilities
        self.collections: Dict[uuid.UUID, Dict[str, Any]] = {}
        self.transactions: Dict[uuid.UUID, Dict[str, Any]] = {}
        self.allowlist: set = set()
        self.allowlist_error: Optional[Exception] = None
        self._lock = asyncio.Lock()

    @property
    def caps(self) -> SchemaCapabilities:
        return self.capabilities

    @asynccontextmanager
    async def transaction(self, collection_id=None, lock: bool = False):
        if lock:
            async with self._lock:
                yield self
        else:
            yield self

    # Collections

    def add_collection(self, name: str = "Test Collection", items_available: int = 0,
                       phases: Optional[List[Dict[str, Any]]] = None, **fields) -> Dict[str, Any]:
        row = {
            'id': uuid.uuid4(),
            'name': name,
            'symbol': fields.get('symbol'),
            'creator_address': fields.get('creator_address'),
            'collection_address': fields.get('collection_address', COLLECTION_ADDRESS),
            'candy_machine_address': fields.get('candy_machine_address', CANDY_MACHINE_ADDRESS),
            'network': fields.get('network', 'mainnet-beta'),
            'items_available': items_available,
            'items_reserved': 0,
            'items_minted': 0,
            'phases': json.dumps(phases or [], default=str),
            'status': fields.get('status', 'live'),
            'created_at': datetime.now(timezone.utc),
            'updated_at': datetime.now(timezone.utc)
        }
        self.collections[row['id']] = row
        return dict(row)

    async def find_collection(self, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        key = (key or '').strip()
        for row in self.collections.values():
            if key and key in (str(row['id']), row['collection_address'], row['candy_machine_address']):
                return dict(row)
        return None

    async def insert_collection(self, **fields) -> Dict[str, Any]:
        await asyncio.sleep(0)
        return self.add_collection(**fields)

    async def reserve_items(self, collection_id, quantity: int) -> Optional[int]:
        await asyncio.sleep(0)
        row = self.collections.get(collection_id)
        if row is None:
            return None
        row['items_reserved'] += quantity
        return row['items_reserved']

    async def release_items(self, collection_id, quantity: int) -> Optional[int]:
        await asyncio.sleep(0)
        row = self.collections.get(collection_id)
        if row is None:
            return None
        row['items_reserved'] = max(row['items_reserved'] - quantity, 0)
        return row['items_reserved']

    async def recompute_minted(self, collection_id) -> Optional[int]:
        await asyncio.sleep(0)
        row = self.collections.get(collection_id)
        if row is None:
            return None
        row['items_minted'] = sum(
            tx['quantity'] for tx in self.transactions.values()
            if tx['collection_id'] == collection_id and tx['status'] == 'confirmed'
        )
        return row['items_minted']

    # Reservations

    async def confirmed_quantity(self, collection_id, minter_address=None, phase_name=None, scoped=True) -> int:
        await asyncio.sleep(0)
        total = 0
        for tx in self.transactions.values():
            if tx['collection_id'] != collection_id or tx['status'] != 'confirmed':
                continue
            if minter_address is not None and tx['minter_address'] != minter_address:
                continue
            if scoped and self.caps.phase_name and tx.get('phase_name') != phase_name:
                continue
            total += tx['quantity']
        return total

    async def insert_reservation(self, collection_id, minter_address, quantity, unit_price, network,
                                 phase_name=None, status='pending', signature=None, nft_address=None):
        await asyncio.sleep(0)
        if signature is not None and self._signature_taken(collection_id, signature):
            return None
        row = {
            'id': uuid.uuid4(),
            'collection_id': collection_id,
            'minter_address': minter_address,
            'nft_address': nft_address,
            'transaction_signature': signature,
            'mint_price': Decimal(unit_price),
            'platform_fee': Decimal('0'),
            'total_paid': Decimal(unit_price) * quantity,
            'quantity': quantity,
            'status': status,
            'network': network,
            'created_at': datetime.now(timezone.utc),
            'updated_at': datetime.now(timezone.utc)
        }
        if self.caps.phase_name:
            row['phase_name'] = phase_name
        self.transactions[row['id']] = row
        return row['id']

    def _signature_taken(self, collection_id, signature, exclude=None) -> bool:
        return any(
            tx['collection_id'] == collection_id and tx['transaction_signature'] == signature
            for tx_id, tx in self.transactions.items() if tx_id != exclude
        )

    async def get_reservation(self, reservation_id) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        row = self.transactions.get(reservation_id)
        return dict(row) if row else None

    def _classify(self, reservation_id) -> Transition:
        row = self.transactions.get(reservation_id)
        if row is None:
            return Transition(TransitionResult.NOT_FOUND)
        result = {
            'confirmed': TransitionResult.ALREADY_CONFIRMED,
            'failed': TransitionResult.ALREADY_FAILED
        }.get(row['status'], TransitionResult.NOT_FOUND)
        return Transition(result, row['collection_id'], row['quantity'])

    async def mark_confirmed(self, reservation_id, signature, nft_address=None) -> Transition:
        await asyncio.sleep(0)
        row = self.transactions.get(reservation_id)
        if row is None or row['status'] != 'pending':
            return self._classify(reservation_id)
        if self._signature_taken(row['collection_id'], signature, exclude=reservation_id):
            return Transition(TransitionResult.DUPLICATE_SIGNATURE, row['collection_id'], row['quantity'])
        row.update(status='confirmed', transaction_signature=signature, nft_address=nft_address)
        return Transition(TransitionResult.APPLIED, row['collection_id'], row['quantity'])

    async def mark_failed(self, reservation_id) -> Transition:
        await asyncio.sleep(0)
        row = self.transactions.get(reservation_id)
        if row is None or row['status'] != 'pending':
            return self._classify(reservation_id)
        row['status'] = 'failed'
        return Transition(TransitionResult.APPLIED, row['collection_id'], row['quantity'])

    async def fail_stale(self, older_than_minutes: int) -> List[Transition]:
        await asyncio.sleep(0)
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        failed = []
        for row in self.transactions.values():
            if row['status'] == 'pending' and row['created_at'] < cutoff:
                row['status'] = 'failed'
                failed.append(Transition(TransitionResult.APPLIED, row['collection_id'], row['quantity']))
        return failed

    # Allowlists

    async def allowlist_contains(self, collection_id, phase_name, wallet) -> bool:
        await asyncio.sleep(0)
        if self.allowlist_error is not None:
            raise self.allowlist_error
        return (collection_id, phase_name, wallet) in self.allowlist

    async def allowlist_upsert(self, collection_id, phase_name, addresses) -> int:
        await asyncio.sleep(0)
        inserted = 0
        for address in addresses:
            key = (collection_id, phase_name, address)
            if key not in self.allowlist:
                self.allowlist.add(key)
                inserted += 1
        return inserted

    async def allowlist_clear(self, collection_id, phase_name) -> int:
        await asyncio.sleep(0)
        doomed = {key for key in self.allowlist if key[0] == collection_id and key[1] == phase_name}
        self.allowlist -= doomed
        return len(doomed)

    async def allowlist_addresses(self, collection_id, phase_name) -> List[str]:
        await asyncio.sleep(0)
        return sorted(key[2] for key in self.allowlist if key[0] == collection_id and key[1] == phase_name)

    # Statistics

    def _confirmed(self, collection_id=None, creator=None):
        for tx in self.transactions.values():
            if tx['status'] != 'confirmed':
                continue
            if collection_id is not None and tx['collection_id'] != collection_id:
                continue
            if creator and self.collections[tx['collection_id']]['creator_address'] != creator:
                continue
            yield tx

    async def mint_totals(self, collection_id=None, creator=None) -> Dict[str, Any]:
        await asyncio.sleep(0)
        rows = list(self._confirmed(collection_id, creator))
        return {
            'total_minted': sum(tx['quantity'] for tx in rows),
            'total_revenue': sum((tx['total_paid'] for tx in rows), Decimal('0')),
            'unique_minters': len({tx['minter_address'] for tx in rows})
        }

    async def mint_history(self, days: int, collection_id=None, creator=None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        by_day: Dict[datetime, Dict[str, Any]] = {}
        for tx in self._confirmed(collection_id, creator):
            day = tx['created_at'].replace(hour=0, minute=0, second=0, microsecond=0)
            bucket = by_day.setdefault(day, {'day': day, 'mints': 0, 'revenue': Decimal('0')})
            bucket['mints'] += tx['quantity']
            bucket['revenue'] += tx['total_paid']
        return [by_day[day] for day in sorted(by_day, reverse=True)][:days]

    async def phase_counts(self, collection_id) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        counts: Dict[str, int] = {}
        for tx in self._confirmed(collection_id):
            phase = (tx.get('phase_name') if self.caps.phase_name else None) or 'Unknown'
            counts[phase] = counts.get(phase, 0) + tx['quantity']
        return [{'phase': phase, 'mints': mints} for phase, mints in sorted(counts.items(), key=lambda item: (-item[1], item[0]))]

    # Helpers for assertions

    def collection(self, collection_id) -> Dict[str, Any]:
        return self.collections[collection_id]

    def reservation(self, reservation_id) -> Dict[str, Any]:
        return self.transactions[uuid.UUID(str(reservation_id))]

@pytest.fixture
def repository():
    """Repository with the current schema."""
    return MemoryMintRepository()

@pytest.fixture
def legacy_repository():
    """Repository without phase_name or phase_allowlist."""
    return MemoryMintRepository(capabilities=LEGACY)

@pytest.fixture
def failing_lookup_error():
    return DatabaseError("phase_allowlist lookup failed")
