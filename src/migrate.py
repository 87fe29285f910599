"""
State schema migrations for the PostgreSQL backend.

SQL files named ``NNN_description.sql`` under migrations/ are applied in
version order, each in its own transaction, while holding an advisory
lock so that concurrent ``converge`` processes never migrate at once.
A database carrying versions this release does not ship was written by a
newer release and is refused.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional

import asyncpg

import migrations as migration_files
from errors import StateVersionError

logger = logging.getLogger(__name__)

# Shipped as package data of the ``migrations`` package
MIGRATIONS_DIR = Path(migration_files.__file__).parent

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

VERSION_TABLE = "state_schema_versions"
MIGRATION_LOCK_KEY = "converge.state.migrations"


class Migration(NamedTuple):
    """One migration file."""

    version: str
    filename: str
    path: Path

    def read_sql(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    List the migrations shipped with this release, oldest first.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry.name, entry))
    return migrations


async def ensure_version_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


async def get_applied_versions(conn: asyncpg.Connection) -> Dict[str, str]:
    """Applied versions mapped to the checksum recorded when they ran."""
    rows = await conn.fetch(f"SELECT version, checksum FROM {VERSION_TABLE}")
    return {row["version"]: row["checksum"] for row in rows}


def schema_version(versions: Iterable[str]) -> Optional[str]:
    """Highest version in ``versions``, or None when there are none."""
    return max(versions, default=None)


def check_schema_compatible(
    applied: Mapping[str, str], known: List[Migration]
) -> None:
    """
    Refuse a database migrated past what this release knows.

    A shipped migration whose file changed after it was applied is only
    reported; it is never re-run.

    Raises:
        StateVersionError: If any applied version is not a known migration.
    """
    by_version = {migration.version: migration for migration in known}
    unknown = sorted(set(applied) - set(by_version))
    if unknown:
        raise StateVersionError(
            f"State database has schema version {unknown[-1]}, newer than "
            f"this release supports ({schema_version(by_version) or 'none'})"
        )

    for version, checksum in applied.items():
        if by_version[version].checksum() != checksum:
            logger.warning(
                f"Migration {by_version[version].filename} changed after it was applied"
            )


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Run one migration and record it, atomically."""
    async with conn.transaction():
        await conn.execute(migration.read_sql())
        await conn.execute(
            f"INSERT INTO {VERSION_TABLE} (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            migration.version,
            migration.filename,
            migration.checksum(),
        )
    logger.info(f"Applied state migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Bring the state schema up to date.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        StateVersionError: If the database was migrated by a newer release.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    migrations = discover_migrations()

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock(hashtext($1))", MIGRATION_LOCK_KEY)
        try:
            await ensure_version_table(conn)
            applied = await get_applied_versions(conn)
            check_schema_compatible(applied, migrations)

            pending = [m for m in migrations if m.version not in applied]
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute(
                "SELECT pg_advisory_unlock(hashtext($1))", MIGRATION_LOCK_KEY
            )

    if pending:
        logger.info(
            f"State schema migrated to version {schema_version(m.version for m in migrations)}"
        )
    else:
        logger.debug(f"State schema is up to date (version {schema_version(applied)})")
    return len(pending)
