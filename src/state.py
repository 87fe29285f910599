"""
State Store - persisted record of what has been applied.

Two backends share one interface: a local JSON file (the default) and
PostgreSQL via asyncpg. Mutations of the same identifier are serialized;
mutations of different identifiers do not wait on each other.
"""

import asyncio
import json
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import asyncpg

from errors import StateStoreError, StateVersionError
from migrate import run_migrations
from models import ResourceId, StateRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStore(ABC):
    """
    Abstract state store.

    Subclasses implement the raw read/write primitives; the public
    ``put``/``delete`` methods hold a per-identifier lock around them.
    """

    def __init__(self):
        self._locks: Dict[ResourceId, asyncio.Lock] = {}

    def _lock_for(self, identifier: ResourceId) -> asyncio.Lock:
        lock = self._locks.get(identifier)
        if lock is None:
            lock = self._locks[identifier] = asyncio.Lock()
        return lock

    async def __aenter__(self) -> "StateStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def open(self) -> None:
        """Load or connect to the backing storage."""
        pass

    async def close(self) -> None:
        """Release backing storage resources."""
        return None

    @abstractmethod
    async def get(self, identifier: ResourceId) -> Optional[StateRecord]:
        """Return the record for ``identifier``, or None."""
        pass

    @abstractmethod
    async def snapshot(self) -> List[StateRecord]:
        """Return every record, ordered by identifier, from one consistent view."""
        pass

    async def put(self, identifier: ResourceId, record: StateRecord) -> None:
        """
        Insert or replace the record for ``identifier``.

        Raises:
            ValueError: If the record belongs to another identifier
            StateStoreError: If the write fails (prior state is kept)
        """
        if record.id != identifier:
            raise ValueError(f"Record for {record.id} cannot be stored as {identifier}")
        async with self._lock_for(identifier):
            await self._write_record(identifier, record)
        logger.debug(f"Stored state for {identifier}")

    async def delete(self, identifier: ResourceId) -> None:
        """
        Remove the record for ``identifier`` if present.

        Raises:
            StateStoreError: If the write fails (prior state is kept)
        """
        async with self._lock_for(identifier):
            await self._remove_record(identifier)
        logger.debug(f"Removed state for {identifier}")

    @abstractmethod
    async def _write_record(self, identifier: ResourceId, record: StateRecord) -> None:
        pass

    @abstractmethod
    async def _remove_record(self, identifier: ResourceId) -> None:
        pass


# ==================== Local File Backend ====================


class LocalStateStore(StateStore):
    """
    State kept in a single versioned JSON file.

    Every mutation writes a complete snapshot to a temporary file in the
    same directory and renames it over the previous one, so readers only
    ever see a whole snapshot. The in-memory view changes only after the
    rename succeeds.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self.lineage: Optional[str] = None
        self.serial = 0
        self._records: Optional[Dict[ResourceId, StateRecord]] = None
        self._commit_lock = asyncio.Lock()

    def _ensure_open(self) -> Dict[ResourceId, StateRecord]:
        if self._records is None:
            raise RuntimeError("State store not open. Call open() before use.")
        return self._records

    async def open(self) -> None:
        """
        Load the state file, or start empty if it does not exist.

        Raises:
            StateVersionError: If the file was written by a newer format
            StateStoreError: If the file is unreadable or malformed
        """
        if not self.path.exists():
            self._records = {}
            self.lineage = str(uuid.uuid4())
            self.serial = 0
            logger.info(f"No state file at {self.path}; starting with empty state")
            return

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Cannot read state file {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("format_version"), int):
            raise StateStoreError(f"State file {self.path} has no format_version")
        if data["format_version"] > STATE_FORMAT_VERSION:
            raise StateVersionError(
                f"State file {self.path} uses format version "
                f"{data['format_version']}; this version supports up to "
                f"{STATE_FORMAT_VERSION}"
            )

        records = {}
        try:
            for raw in data.get("resources", []):
                record = StateRecord.from_dict(raw)
                records[record.id] = record
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Malformed record in {self.path}: {e}") from e

        self._records = records
        self.lineage = data.get("lineage") or str(uuid.uuid4())
        self.serial = int(data.get("serial", 0))
        logger.info(
            f"Loaded {len(records)} state records from {self.path} (serial {self.serial})"
        )

    async def get(self, identifier: ResourceId) -> Optional[StateRecord]:
        return self._ensure_open().get(identifier)

    async def snapshot(self) -> List[StateRecord]:
        records = self._ensure_open()
        return [records[identifier] for identifier in sorted(records)]

    async def _write_record(self, identifier: ResourceId, record: StateRecord) -> None:
        async with self._commit_lock:
            records = dict(self._ensure_open())
            records[identifier] = record
            await self._commit(records)

    async def _remove_record(self, identifier: ResourceId) -> None:
        async with self._commit_lock:
            records = dict(self._ensure_open())
            if records.pop(identifier, None) is None:
                return
            await self._commit(records)

    async def _commit(self, records: Dict[ResourceId, StateRecord]) -> None:
        serial = self.serial + 1
        payload = {
            "format_version": STATE_FORMAT_VERSION,
            "serial": serial,
            "lineage": self.lineage,
            "resources": [records[key].to_dict() for key in sorted(records)],
        }
        await asyncio.to_thread(self._write_file, payload)
        self._records = records
        self.serial = serial

    def _write_file(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e


# ==================== PostgreSQL Backend ====================


class PostgresStateStore(StateStore):
    """
    State kept in PostgreSQL.

    Each put/delete runs in its own transaction holding a transaction-scoped
    advisory lock on the identifier, so writers in other processes are
    serialized too. The schema is versioned through migrations.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ):
        super().__init__()
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def open(self) -> None:
        await self.connect()
        await self.initialize_schema()

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("State schema initialized")

    async def get(self, identifier: ResourceId) -> Optional[StateRecord]:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM state_records WHERE identifier = $1",
                    str(identifier),
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StateStoreError(f"Failed to read state for {identifier}: {e}") from e
        if not row:
            return None
        return self._parse_record_row(row)

    async def snapshot(self) -> List[StateRecord]:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    rows = await conn.fetch(
                        "SELECT * FROM state_records ORDER BY resource_type, name"
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise StateStoreError(f"Failed to read state: {e}") from e
        return [self._parse_record_row(row) for row in rows]

    async def _write_record(self, identifier: ResourceId, record: StateRecord) -> None:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", str(identifier)
                    )
                    await conn.execute(
                        """
                        INSERT INTO state_records (
                            identifier, resource_type, name, external_id,
                            attributes, outputs, dependencies, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        ON CONFLICT (identifier) DO UPDATE SET
                            external_id = EXCLUDED.external_id,
                            attributes = EXCLUDED.attributes,
                            outputs = EXCLUDED.outputs,
                            dependencies = EXCLUDED.dependencies,
                            updated_at = EXCLUDED.updated_at
                        """,
                        str(identifier),
                        identifier.type,
                        identifier.name,
                        record.external_id,
                        json.dumps(record.attributes),
                        json.dumps(record.outputs),
                        json.dumps([str(dep) for dep in record.dependencies]),
                        record.updated_at,
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise StateStoreError(f"Failed to store state for {identifier}: {e}") from e

    async def _remove_record(self, identifier: ResourceId) -> None:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", str(identifier)
                    )
                    await conn.execute(
                        "DELETE FROM state_records WHERE identifier = $1",
                        str(identifier),
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise StateStoreError(f"Failed to remove state for {identifier}: {e}") from e

    def _parse_record_row(self, row) -> StateRecord:
        """Parse a state_records row, converting JSON fields."""
        result = dict(row)
        for key in ("attributes", "outputs", "dependencies"):
            if isinstance(result.get(key), str):
                result[key] = json.loads(result[key])
        return StateRecord(
            id=ResourceId(result["resource_type"], result["name"]),
            attributes=result.get("attributes") or {},
            external_id=result["external_id"],
            outputs=result.get("outputs") or {},
            dependencies=tuple(
                ResourceId.parse(dep) for dep in result.get("dependencies") or []
            ),
            updated_at=result["updated_at"],
        )


def create_state_store(state_config, database_config=None) -> StateStore:
    """
    Build the state store selected by configuration.

    Args:
        state_config: config.StateConfig
        database_config: config.DatabaseConfig, required for 'postgres'

    Raises:
        ValueError: On an unknown backend or missing database configuration
    """
    if state_config.backend == "local":
        return LocalStateStore(state_config.path)
    if state_config.backend == "postgres":
        if database_config is None:
            raise ValueError("The postgres state backend requires database configuration")
        return PostgresStateStore(
            host=database_config.host,
            port=database_config.port,
            database=database_config.database,
            user=database_config.user,
            password=database_config.password,
            min_pool_size=database_config.min_pool_size,
            max_pool_size=database_config.max_pool_size,
        )
    raise ValueError(f"Unknown state backend: {state_config.backend}")
