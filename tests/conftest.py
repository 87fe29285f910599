"""Pytest configuration and fixtures."""

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

import config as config_module
from document import parse_document
from errors import ResourceNotFoundError
from graph import build_graph
from models import AttributeChange, ChangeType, ResourceId, StateRecord
from plugins.base import ResourceTypeSchema
from plugins.providers.base import ProviderPlugin
from plugins.registry import PluginRegistry, reset_registry
from state import LocalStateStore

FAKE_TYPES: Dict[str, ResourceTypeSchema] = {
    "network": ResourceTypeSchema(
        name="network",
        schema={
            "type": "object",
            "properties": {"cidr": {"type": "string"}},
        },
        replace_on_change=frozenset({"cidr"}),
    ),
    "subnet": ResourceTypeSchema(
        name="subnet",
        schema={
            "type": "object",
            "required": ["network"],
            "properties": {
                "network": {"type": "string"},
                "cidr": {"type": "string"},
            },
        },
    ),
    "instance": ResourceTypeSchema(
        name="instance",
        schema={
            "type": "object",
            "properties": {
                "size": {"type": "string"},
                "image": {"type": "string"},
                "count": {"type": "integer"},
            },
        },
        replace_on_change=frozenset({"image"}),
    ),
    "dns_record": ResourceTypeSchema(
        name="dns_record",
        schema={"type": "object"},
        replace_on_change=frozenset({"zone"}),
        destroy_before_create=True,
    ),
}


class FakeProvider(ProviderPlugin):
    """
    In-memory provider that records every call.

    Failures are scripted per (operation, resource name) with ``fail``; the
    resource name is taken from the ``name`` attribute (or the object's
    stored ``name`` for update/delete).
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.delay: float = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = itertools.count(1)

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.delay = config.get("delay", 0.0)

    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return dict(FAKE_TYPES)

    def fail(self, operation: str, name: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of ``operation`` on ``name``."""
        self.failures.setdefault((operation, name), []).extend(errors)

    def call_order(self, operation: Optional[str] = None) -> List[str]:
        return [
            f"{op}:{name}" for op, _, name in self.calls if operation in (None, op)
        ]

    async def _enter(self, operation: str, resource_type: str, name: str) -> None:
        self.calls.append((operation, resource_type, name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            queued = self.failures.get((operation, name))
            if queued:
                raise queued.pop(0)
        finally:
            self.in_flight -= 1

    async def create(self, resource_type: str, attributes: Dict[str, Any]):
        name = str(attributes.get("name", resource_type))
        await self._enter("create", resource_type, name)
        external_id = f"{resource_type}-{next(self._counter)}"
        self.objects[external_id] = dict(attributes)
        return external_id, {"arn": f"fake:{external_id}"}

    async def read(self, resource_type: str, external_id: str) -> Dict[str, Any]:
        if external_id not in self.objects:
            raise ResourceNotFoundError(external_id)
        return dict(self.objects[external_id])

    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: Sequence[AttributeChange],
    ) -> Dict[str, Any]:
        current = self.objects.get(external_id, {})
        await self._enter("update", resource_type, str(current.get("name", resource_type)))
        for change in changes:
            if change.change is ChangeType.REMOVED:
                current.pop(change.key, None)
            else:
                current[change.key] = change.new
        self.objects[external_id] = current
        return {"arn": f"fake:{external_id}"}

    async def delete(self, resource_type: str, external_id: str) -> None:
        name = str(self.objects.get(external_id, {}).get("name", resource_type))
        await self._enter("delete", resource_type, name)
        if external_id not in self.objects:
            raise ResourceNotFoundError(external_id)
        del self.objects[external_id]


@pytest.fixture(autouse=True)
def reset_singletons():
    """Global config and registry never leak between tests."""
    config_module.reset_config()
    reset_registry()
    yield
    config_module.reset_config()
    reset_registry()


@pytest_asyncio.fixture
async def registry():
    """Registry with the fake provider initialized."""
    registry = PluginRegistry()
    registry.register_provider_plugin(FakeProvider)
    await registry.initialize_providers()
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def provider(registry) -> FakeProvider:
    return await registry.get_provider_plugin("fake")


@pytest_asyncio.fixture
async def store(tmp_path):
    """Opened local state store in a temporary directory."""
    state_store = LocalStateStore(tmp_path / "state.json")
    await state_store.open()
    yield state_store
    await state_store.close()


@pytest.fixture
def schemas():
    return dict(FAKE_TYPES)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


def rid(value: str) -> ResourceId:
    return ResourceId.parse(value)


def graph_from_yaml(text: str, schemas=None, variable_sources=None):
    return build_graph(parse_document(text, source="test.yaml"), schemas, variable_sources)


def make_record(
    identifier: str,
    attributes: Optional[Dict[str, Any]] = None,
    external_id: Optional[str] = None,
    dependencies: Sequence[str] = (),
    outputs: Optional[Dict[str, Any]] = None,
) -> StateRecord:
    resource_id = rid(identifier)
    return StateRecord(
        id=resource_id,
        attributes=dict(attributes or {}),
        external_id=external_id or f"{resource_id.type}-{resource_id.name}",
        outputs=dict(outputs or {}),
        dependencies=tuple(rid(dep) for dep in dependencies),
    )
