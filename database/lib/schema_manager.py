"""Database schema management module.

Schema versions live in ``database/schema/vN.py``. Each file carries the
complete table layout for that version plus the statements that upgrade
the previous version to it.

Deployments that predate the ``schema_version`` table are adopted rather
than recreated: the existing tables are inspected, the matching version is
recorded as a baseline and only the later migrations are applied. Tables
are dropped only by an explicit ``reset()``.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Set

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

class SchemaManager:
    """Versions the mint schema and upgrades it in place."""

    def __init__(self, pool, schema_dir: Optional[str] = None, target_version: Optional[int] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
            target_version: Stop migrating at this version instead of the latest
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self.target_version = target_version
        self.current_version = 0
        self._schema_files: Dict[int, Dict[str, Any]] = {}

    async def initialize(self) -> None:
        """Bring the database up to the target schema version.

        Raises:
            DatabaseSchemaError: If no schema files are found or a migration fails
        """
        schema_files = self._load_schema_files()
        if not schema_files:
            logger.error("No valid schema files found in schema directory")
            raise DatabaseSchemaError("No valid schema files found in schema directory")
        latest = max(schema_files)

        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                ''')
                self.current_version = await conn.fetchval(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                ) or 0

                if self.current_version == 0:
                    baseline = await self._detect_baseline(conn)
                    if baseline:
                        baseline = min(baseline, latest)
                        logger.warning(
                            f"Found mint tables without a recorded schema version, "
                            f"adopting them as version {baseline}"
                        )
                        await self._record_version(conn, baseline)
                    else:
                        await self._create_schema(conn, schema_files[latest])
                        await self._record_version(conn, latest)
                        logger.info(f"Created schema version {latest}")
                        return

                if self.current_version >= latest:
                    logger.info("Schema is up to date")
                    return

                logger.info(f"Updating schema from version {self.current_version} to {latest}")
                for version in range(self.current_version + 1, latest + 1):
                    if version not in schema_files:
                        continue
                    for statement in schema_files[version].get('migrations', []):
                        await conn.execute(statement)
                    await self._record_version(conn, version)
                    logger.info(f"Successfully migrated to version {version}")

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    async def reset(self) -> None:
        """Drop the mint tables and the version history."""
        tables = self._managed_tables()
        async with self.pool.acquire() as conn:
            for name in reversed(tables):
                await conn.execute(f'DROP TABLE IF EXISTS {name} CASCADE')
                logger.info(f"Dropped table {name}")
            await conn.execute('DROP TABLE IF EXISTS schema_version')
        self.current_version = 0

    def _load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load schema version files up to the target version."""
        schema_files = {}

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue
            if self.target_version is not None and version > self.target_version:
                continue

            schema = getattr(importlib.import_module(f"database.schema.{file.stem}"), 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        self._schema_files = dict(sorted(schema_files.items()))
        return self._schema_files

    def _managed_tables(self) -> List[str]:
        """Every table any schema version creates, in creation order."""
        schema_files = SchemaManager(self.pool, str(self._schema_dir))._load_schema_files()
        names: List[str] = []
        for schema in schema_files.values():
            for table in schema.get('tables', []):
                if table['name'] not in names:
                    names.append(table['name'])
        return names

    async def _existing_tables(self, conn) -> Set[str]:
        rows = await conn.fetch('''
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
        ''')
        return {row['table_name'] for row in rows}

    async def _detect_baseline(self, conn) -> int:
        """Version matching tables created before versioning, 0 if there are none."""
        tables = await self._existing_tables(conn)
        if 'mint_transactions' not in tables:
            return 0
        has_phase_name = await conn.fetchval(
            '''
            SELECT EXISTS (
                SELECT 1
                FROM information_schema.columns
                WHERE table_schema = 'public'
                AND table_name = $1
                AND column_name = $2
            )
            ''',
            'mint_transactions',
            'phase_name'
        )
        if not has_phase_name:
            return 1
        return 3 if 'phase_allowlist' in tables else 2

    async def _record_version(self, conn, version: int) -> None:
        await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)
        self.current_version = version

    async def _create_schema(self, conn, schema: Dict[str, Any]) -> None:
        """Create every table of a schema version, then its keys and indexes."""
        for table in schema.get('tables', []):
            await self._create_table(conn, table)
        for table in schema.get('tables', []):
            await self._add_constraints(conn, table)

    async def _create_table(self, conn, table: Dict[str, Any]) -> None:
        columns = []
        constraints = []

        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"
            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")
            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"
            if col.get('nullable') is False:
                col_def += " NOT NULL"
            columns.append(col_def)

        if isinstance(table.get('primary_key'), list):
            constraints.append(f"PRIMARY KEY ({', '.join(table['primary_key'])})")

        await conn.execute(f'''
            CREATE TABLE IF NOT EXISTS {table['name']} (
                {', '.join(columns + constraints)}
            )
        ''')
        logger.info(f"Created table {table['name']}")

    async def _add_constraints(self, conn, table: Dict[str, Any]) -> None:
        for fk in table.get('foreign_keys', []):
            await conn.execute(f'''
                ALTER TABLE {table['name']}
                ADD CONSTRAINT fk_{table['name']}_{fk['columns'][0]}
                FOREIGN KEY ({', '.join(fk['columns'])})
                REFERENCES {fk['references']}
            ''')

        for idx in table.get('indexes', []):
            unique = 'UNIQUE ' if idx.get('unique') else ''
            await conn.execute(f'''
                CREATE {unique}INDEX IF NOT EXISTS {idx['name']}
                ON {table['name']}({', '.join(idx['columns'])})
            ''')
