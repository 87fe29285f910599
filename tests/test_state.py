"""Unit tests for state.py - local file and PostgreSQL state stores."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from config import DatabaseConfig, StateConfig
from conftest import make_record, rid
from errors import StateStoreError, StateVersionError
from state import (
    STATE_FORMAT_VERSION,
    LocalStateStore,
    PostgresStateStore,
    create_state_store,
)


@pytest.mark.asyncio
class TestLocalStateStore:
    """Tests for the JSON file backend."""

    async def test_missing_file_starts_empty(self, tmp_path):
        store = LocalStateStore(tmp_path / "state.json")
        await store.open()
        assert await store.snapshot() == []
        assert store.serial == 0
        assert store.lineage
        assert not (tmp_path / "state.json").exists()

    async def test_put_get_round_trip_survives_reopen(self, tmp_path):
        path = tmp_path / "state.json"
        record = make_record(
            "subnet.a",
            {"cidr": "10.0.1.0/24", "nested": {"x": [1, 2]}},
            external_id="subnet-123",
            dependencies=["network.main"],
            outputs={"arn": "fake:subnet-123"},
        )
        async with LocalStateStore(path) as store:
            await store.put(record.id, record)
            lineage = store.lineage

        async with LocalStateStore(path) as reopened:
            loaded = await reopened.get(rid("subnet.a"))
            assert loaded == record
            assert reopened.serial == 1
            assert reopened.lineage == lineage

    async def test_file_format(self, store):
        await store.put(rid("network.main"), make_record("network.main", {"cidr": "x"}))
        data = json.loads(store.path.read_text())
        assert data["format_version"] == STATE_FORMAT_VERSION
        assert data["serial"] == 1
        assert data["resources"][0]["type"] == "network"
        assert data["resources"][0]["name"] == "main"
        assert data["resources"][0]["external_id"] == "network-main"

    async def test_snapshot_is_sorted(self, store):
        for identifier in ("subnet.b", "network.main", "subnet.a"):
            await store.put(rid(identifier), make_record(identifier))
        assert [str(r.id) for r in await store.snapshot()] == [
            "network.main",
            "subnet.a",
            "subnet.b",
        ]

    async def test_delete(self, store):
        await store.put(rid("network.main"), make_record("network.main"))
        await store.delete(rid("network.main"))
        assert await store.get(rid("network.main")) is None
        assert store.serial == 2

    async def test_delete_missing_is_noop(self, store):
        await store.delete(rid("network.ghost"))
        assert store.serial == 0

    async def test_put_rejects_mismatched_identifier(self, store):
        with pytest.raises(ValueError, match="cannot be stored as"):
            await store.put(rid("network.other"), make_record("network.main"))

    async def test_failed_write_keeps_prior_state(self, store):
        await store.put(rid("network.main"), make_record("network.main", {"v": 1}))

        with patch.object(
            LocalStateStore, "_write_file", side_effect=StateStoreError("disk full")
        ):
            with pytest.raises(StateStoreError, match="disk full"):
                await store.put(rid("network.main"), make_record("network.main", {"v": 2}))

        assert (await store.get(rid("network.main"))).attributes == {"v": 1}
        assert store.serial == 1
        data = json.loads(store.path.read_text())
        assert data["resources"][0]["attributes"] == {"v": 1}

    async def test_unserializable_record_raises_state_error(self, store):
        record = make_record("network.main", {"bad": object()})
        with pytest.raises(StateStoreError, match="Failed to write state file"):
            await store.put(record.id, record)
        assert await store.get(record.id) is None
        assert not list(store.path.parent.glob("*.tmp"))

    async def test_concurrent_puts_to_different_identifiers(self, store):
        identifiers = [f"subnet.s{i}" for i in range(20)]
        await asyncio.gather(
            *(store.put(rid(i), make_record(i)) for i in identifiers)
        )
        assert len(await store.snapshot()) == 20
        data = json.loads(store.path.read_text())
        assert len(data["resources"]) == 20
        assert data["serial"] == 20

    async def test_newer_format_version_refused(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"format_version": STATE_FORMAT_VERSION + 1}))
        with pytest.raises(StateVersionError, match="format version"):
            await LocalStateStore(path).open()

    async def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateStoreError, match="Cannot read state file"):
            await LocalStateStore(path).open()

    async def test_malformed_record(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"format_version": 1, "resources": [{"type": "a"}]}))
        with pytest.raises(StateStoreError, match="Malformed record"):
            await LocalStateStore(path).open()

    async def test_use_before_open(self, tmp_path):
        store = LocalStateStore(tmp_path / "state.json")
        with pytest.raises(RuntimeError, match="not open"):
            await store.get(rid("network.main"))


def _mock_connection(**methods):
    conn = AsyncMock()
    for name, value in methods.items():
        setattr(conn, name, value)

    @asynccontextmanager
    async def transaction(**kwargs):
        conn.transaction_kwargs = kwargs
        yield

    conn.transaction = MagicMock(side_effect=transaction)
    return conn


def _acquire_for(conn):
    @asynccontextmanager
    async def mock_acquire():
        yield conn

    return mock_acquire


@pytest.fixture
def pg_store():
    return PostgresStateStore(
        host="localhost",
        port=5432,
        database="converge",
        user="converge",
        password="secret",
    )


class TestPostgresStateStoreSync:
    def test_init(self, pg_store):
        assert pg_store.host == "localhost"
        assert pg_store.min_pool_size == 1
        assert pg_store.max_pool_size == 10
        assert pg_store.pool is None

    def test_ensure_connected_raises_when_not_connected(self, pg_store):
        with pytest.raises(RuntimeError, match="Database not connected"):
            pg_store._ensure_connected()

    def test_parse_record_row_decodes_json_columns(self, pg_store):
        updated = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = pg_store._parse_record_row(
            {
                "identifier": "subnet.a",
                "resource_type": "subnet",
                "name": "a",
                "external_id": "subnet-1",
                "attributes": '{"cidr": "10.0.0.0/24"}',
                "outputs": '{"arn": "x"}',
                "dependencies": '["network.main"]',
                "updated_at": updated,
            }
        )
        assert record.id == rid("subnet.a")
        assert record.attributes == {"cidr": "10.0.0.0/24"}
        assert record.outputs == {"arn": "x"}
        assert record.dependencies == (rid("network.main"),)
        assert record.updated_at == updated


@pytest.mark.asyncio
class TestPostgresStateStore:
    async def test_connect_creates_pool(self, pg_store):
        with patch("state.asyncpg.create_pool", new_callable=AsyncMock) as mock_create:
            await pg_store.connect()
            assert pg_store.pool is mock_create.return_value
            assert mock_create.call_args.kwargs["min_size"] == 1

    async def test_initialize_schema_calls_run_migrations(self, pg_store, mock_pool):
        pg_store.pool = mock_pool
        with patch("state.run_migrations", new_callable=AsyncMock) as mock_run:
            await pg_store.initialize_schema()
            mock_run.assert_called_once_with(mock_pool)

    async def test_get_missing(self, pg_store, mock_pool):
        conn = _mock_connection(fetchrow=AsyncMock(return_value=None))
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        assert await pg_store.get(rid("network.main")) is None
        assert conn.fetchrow.call_args.args[1] == "network.main"

    async def test_snapshot_uses_consistent_read(self, pg_store, mock_pool):
        row = {
            "resource_type": "network",
            "name": "main",
            "external_id": "net-1",
            "attributes": {},
            "outputs": {},
            "dependencies": [],
            "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        conn = _mock_connection(fetch=AsyncMock(return_value=[row]))
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        records = await pg_store.snapshot()

        assert [r.id for r in records] == [rid("network.main")]
        assert conn.transaction_kwargs == {"isolation": "repeatable_read", "readonly": True}

    async def test_put_takes_advisory_lock_then_upserts(self, pg_store, mock_pool):
        conn = _mock_connection()
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool
        record = make_record("subnet.a", {"cidr": "x"}, dependencies=["network.main"])

        await pg_store.put(record.id, record)

        lock_call, upsert_call = conn.execute.call_args_list
        assert "pg_advisory_xact_lock" in lock_call.args[0]
        assert lock_call.args[1] == "subnet.a"
        assert "ON CONFLICT (identifier)" in upsert_call.args[0]
        assert upsert_call.args[1:4] == ("subnet.a", "subnet", "a")
        assert json.loads(upsert_call.args[7]) == ["network.main"]

    async def test_put_wraps_database_errors(self, pg_store, mock_pool):
        conn = _mock_connection(
            execute=AsyncMock(side_effect=ConnectionResetError("connection lost"))
        )
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        with pytest.raises(StateStoreError, match="Failed to store state for network.main"):
            await pg_store.put(rid("network.main"), make_record("network.main"))

    async def test_get_wraps_database_errors(self, pg_store, mock_pool):
        conn = _mock_connection(
            fetchrow=AsyncMock(
                side_effect=asyncpg.exceptions.UndefinedTableError(
                    'relation "state_records" does not exist'
                )
            )
        )
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        with pytest.raises(StateStoreError, match="Failed to read state for network.main"):
            await pg_store.get(rid("network.main"))

    async def test_snapshot_wraps_connection_errors(self, pg_store, mock_pool):
        conn = _mock_connection(
            fetch=AsyncMock(side_effect=ConnectionRefusedError("connection refused"))
        )
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        with pytest.raises(StateStoreError, match="Failed to read state: connection refused"):
            await pg_store.snapshot()

    async def test_delete(self, pg_store, mock_pool):
        conn = _mock_connection()
        mock_pool.acquire = _acquire_for(conn)
        pg_store.pool = mock_pool

        await pg_store.delete(rid("network.main"))

        assert "DELETE FROM state_records" in conn.execute.call_args_list[-1].args[0]


class TestCreateStateStore:
    def test_local(self, tmp_path):
        store = create_state_store(StateConfig(backend="local", path=str(tmp_path / "s.json")))
        assert isinstance(store, LocalStateStore)

    def test_postgres(self):
        store = create_state_store(
            StateConfig(backend="postgres"), DatabaseConfig(password="pw", port=6543)
        )
        assert isinstance(store, PostgresStateStore)
        assert store.port == 6543

    def test_postgres_requires_database_config(self):
        with pytest.raises(ValueError, match="requires database configuration"):
            create_state_store(StateConfig(backend="postgres"))

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown state backend"):
            create_state_store(StateConfig(backend="etcd"))
