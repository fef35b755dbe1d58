"""Schema v2 - Tag mint transactions with their phase.

Adds phase_name so per-wallet and per-phase caps can be scoped to a phase,
and a unique (collection_id, transaction_signature) index so direct
confirmations can be deduplicated.
"""
from copy import deepcopy

from .v1 import schema as v1

tables = deepcopy(v1['tables'])
mint_transactions = next(t for t in tables if t['name'] == 'mint_transactions')
mint_transactions['columns'].insert(
    -2, {'name': 'phase_name', 'type': 'TEXT'}
)
mint_transactions['indexes'].extend([
    {'name': 'idx_mint_tx_phase', 'columns': ['collection_id', 'phase_name', 'status']},
    {'name': 'idx_mint_tx_signature', 'columns': ['collection_id', 'transaction_signature'], 'unique': True}
])

schema = {
    'version': 2,
    'tables': tables,
    'migrations': [
        '''
        ALTER TABLE mint_transactions
        ADD COLUMN IF NOT EXISTS phase_name TEXT;
        ''',
        '''
        CREATE INDEX IF NOT EXISTS idx_mint_tx_phase
        ON mint_transactions(collection_id, phase_name, status);
        ''',
        '''
        CREATE UNIQUE INDEX IF NOT EXISTS idx_mint_tx_signature
        ON mint_transactions(collection_id, transaction_signature);
        '''
    ]
}
