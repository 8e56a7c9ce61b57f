"""
Database Migration System

Applies the versioned SQL files in migrations/ to the queue store.
Each migration runs in its own transaction and is recorded in schema_migrations.

Only used when RUN_MIGRATIONS is enabled (LOCAL by default); in production the
queue schema is owned by the service that creates queue entries.
"""
import logging
import re
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME = re.compile(r'^(\d+)_(.+)\.sql$')


async def ensure_migrations_table(conn: asyncpg.Connection):
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    List migration files sorted by numeric version.

    Returns:
        List of (version, path) tuples
    """
    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return []

    migrations = []
    for file_path in migrations_dir.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Numeric, not lexicographic, order
    migrations.sort(key=lambda x: int(x[0]))
    return migrations


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Apply one migration. The caller owns the transaction.

    Raises:
        asyncpg.PostgresError: when the SQL fails
    """
    sql_content = migration_path.read_text(encoding='utf-8')

    if not sql_content.strip():
        logger.warning(f"Migration {version} is empty, skipping")
        return

    logger.info(f"Applying migration {version}: {migration_path.name}")

    # asyncpg executes multi-statement SQL natively
    await conn.execute(sql_content)
    await conn.execute(
        "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
        version
    )
    logger.info(f"Migration {version} applied successfully")


async def run_migrations(conn: asyncpg.Connection, migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply every pending migration.

    Returns:
        Number of migrations applied

    Raises:
        asyncpg.PostgresError: on the first failing migration (earlier ones stay applied)
    """
    await ensure_migrations_table(conn)
    applied = await get_applied_migrations(conn)

    applied_now = 0
    for version, migration_path in get_migration_files(migrations_dir):
        if version in applied:
            logger.debug(f"Migration {version} already applied, skipping")
            continue
        try:
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        except Exception:
            logger.error(f"CRITICAL: Migration {version} ({migration_path.name}) FAILED")
            raise
        applied_now += 1

    logger.info(f"Migrations up to date ({applied_now} applied)")
    return applied_now


async def run_migrations_safe(pool: asyncpg.Pool) -> bool:
    """
    Apply migrations using a pooled connection.

    Returns:
        True on success, False if any migration failed
    """
    try:
        async with pool.acquire() as conn:
            await run_migrations(conn)
        return True
    except Exception as e:
        logger.exception(f"Error running migrations: {e}")
        return False
