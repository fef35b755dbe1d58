"""Schema v1 - Collections and mint transactions.

This is the original storefront shape: mint transactions are not yet
tagged with the phase they were minted in.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'collections',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'symbol', 'type': 'TEXT'},
                {'name': 'creator_address', 'type': 'TEXT'},
                {'name': 'collection_address', 'type': 'TEXT'},
                {'name': 'candy_machine_address', 'type': 'TEXT'},
                {'name': 'network', 'type': 'TEXT', 'nullable': False, 'default': "'mainnet-beta'"},
                {'name': 'items_available', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'items_reserved', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'items_minted', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'phases', 'type': 'JSONB', 'nullable': False, 'default': "'[]'"},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'draft'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_collections_address', 'columns': ['collection_address'], 'unique': True},
                {'name': 'idx_collections_candy_machine', 'columns': ['candy_machine_address'], 'unique': True},
                {'name': 'idx_collections_creator', 'columns': ['creator_address']}
            ]
        },
        {
            'name': 'mint_transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'collection_id', 'type': 'UUID', 'nullable': False},
                {'name': 'minter_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'nft_address', 'type': 'TEXT'},
                {'name': 'transaction_signature', 'type': 'TEXT'},
                {'name': 'mint_price', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
                {'name': 'platform_fee', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
                {'name': 'total_paid', 'type': 'DECIMAL', 'nullable': False, 'default': '0'},
                {'name': 'quantity', 'type': 'INT8', 'nullable': False, 'default': '1'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'network', 'type': 'TEXT', 'nullable': False, 'default': "'mainnet-beta'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['collection_id'], 'references': 'collections(id)'}
            ],
            'indexes': [
                {'name': 'idx_mint_tx_collection_status', 'columns': ['collection_id', 'status']},
                {'name': 'idx_mint_tx_minter', 'columns': ['collection_id', 'minter_address']}
            ]
        }
    ],
    'migrations': []
}
