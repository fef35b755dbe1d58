"""Schema capability detection.

Older deployments created mint_transactions before phase tagging existed
and may not have the allowlist table at all. Rather than probing on every
query, the available features are resolved once when the pool starts and
the repository chooses its SQL from the result.
"""
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional schema features present in the connected database."""
    phase_name: bool = True
    phase_allowlist: bool = True

    @property
    def legacy(self) -> bool:
        return not self.phase_name

FULL = SchemaCapabilities()
LEGACY = SchemaCapabilities(phase_name=False, phase_allowlist=False)

async def detect_capabilities(pool) -> SchemaCapabilities:
    """Inspect information_schema for the optional columns and tables."""
    async with pool.acquire() as conn:
        has_phase_name = await conn.fetchval(
            '''
            SELECT EXISTS (
                SELECT 1
                FROM information_schema.columns
                WHERE table_schema = 'public'
                AND table_name = 'mint_transactions'
                AND column_name = 'phase_name'
            )
            '''
        )
        has_allowlist = await conn.fetchval(
            '''
            SELECT EXISTS (
                SELECT 1
                FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'phase_allowlist'
            )
            '''
        )
        
    capabilities = SchemaCapabilities(
        phase_name=bool(has_phase_name),
        phase_allowlist=bool(has_allowlist)
    )
    if capabilities.legacy:
        logger.warning(
            "mint_transactions has no phase_name column; "
            "wallet and phase caps will use collection-wide totals"
        )
    if not capabilities.phase_allowlist:
        logger.warning("phase_allowlist table not found; store-backed allowlists will admit every wallet")
    return capabilities
