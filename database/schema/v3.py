"""Schema v3 - Per-phase allowlists.

Phases that do not carry an inline allowlist are checked against this
table, keyed by (collection_id, phase_name, wallet_address).
"""
from copy import deepcopy

from .v2 import schema as v2

tables = deepcopy(v2['tables'])
tables.append({
    'name': 'phase_allowlist',
    'columns': [
        {'name': 'collection_id', 'type': 'UUID'},
        {'name': 'phase_name', 'type': 'TEXT'},
        {'name': 'wallet_address', 'type': 'TEXT'},
        {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
    ],
    'primary_key': ['collection_id', 'phase_name', 'wallet_address'],
    'foreign_keys': [
        {'columns': ['collection_id'], 'references': 'collections(id)'}
    ]
})

schema = {
    'version': 3,
    'tables': tables,
    'migrations': [
        '''
        CREATE TABLE IF NOT EXISTS phase_allowlist (
            collection_id UUID REFERENCES collections(id),
            phase_name TEXT,
            wallet_address TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (collection_id, phase_name, wallet_address)
        );
        '''
    ]
}
