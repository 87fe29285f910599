"""
Local Provider Plugin - Implements ProviderPlugin on the local filesystem.

Every object is a JSON file at ``{directory}/{type}/{external_id}.json``.
It ships a small data-platform catalog (buckets, datasets and serving
endpoints) that is handy for trying the engine without remote systems.
"""

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Sequence, Tuple

from errors import ProviderPermanentError, ResourceNotFoundError
from models import AttributeChange, ChangeType
from plugins.base import ResourceTypeSchema
from plugins.providers.base import ProviderPlugin

logger = logging.getLogger(__name__)

CATALOG: Dict[str, ResourceTypeSchema] = {
    "storage_bucket": ResourceTypeSchema(
        name="storage_bucket",
        schema={
            "type": "object",
            "required": ["location"],
            "properties": {
                "location": {"type": "string"},
                "versioning": {"type": "boolean"},
                "labels": {"type": "object", "additionalProperties": {"type": "string"}},
            },
            "additionalProperties": False,
        },
        replace_on_change=frozenset({"location"}),
        description="Object storage bucket",
    ),
    "dataset": ResourceTypeSchema(
        name="dataset",
        schema={
            "type": "object",
            "required": ["bucket", "location"],
            "properties": {
                "bucket": {"type": "string"},
                "location": {"type": "string"},
                "format": {"enum": ["parquet", "csv", "json"]},
                "retention_days": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        replace_on_change=frozenset({"location"}),
        description="Dataset stored in a bucket",
    ),
    "serving_endpoint": ResourceTypeSchema(
        name="serving_endpoint",
        schema={
            "type": "object",
            "required": ["dataset", "model"],
            "properties": {
                "dataset": {"type": "string"},
                "model": {"type": "string"},
                "replicas": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        replace_on_change=frozenset({"model"}),
        destroy_before_create=True,
        description="Model serving endpoint reading from a dataset",
    ),
}


class LocalProviderPlugin(ProviderPlugin):
    """Provider that keeps objects as JSON files in a directory."""

    def __init__(self):
        self.directory: Path = Path(".converge/objects")

    @property
    def name(self) -> str:
        return "local"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load local provider configuration from environment variables."""
        return {"directory": os.getenv("LOCAL_PROVIDER_DIR", ".converge/objects")}

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.directory = Path(config.get("directory") or self.directory)
        logger.debug(f"Local provider storing objects under {self.directory}")

    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return dict(CATALOG)

    async def create(
        self, resource_type: str, attributes: Dict[str, Any]
    ) -> Tuple[str, Dict[str, Any]]:
        external_id = f"{resource_type}-{uuid.uuid4().hex[:12]}"
        path = self._object_path(resource_type, external_id)
        await asyncio.to_thread(self._write_object, path, attributes)
        logger.info(f"Created {resource_type} {external_id}")
        return external_id, self._outputs(resource_type, external_id, path)

    async def read(self, resource_type: str, external_id: str) -> Dict[str, Any]:
        path = self._object_path(resource_type, external_id)
        return await asyncio.to_thread(self._read_object, path)

    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: Sequence[AttributeChange],
    ) -> Dict[str, Any]:
        path = self._object_path(resource_type, external_id)
        current = await asyncio.to_thread(self._read_object, path)
        for change in changes:
            if change.change is ChangeType.REMOVED:
                current.pop(change.key, None)
            else:
                current[change.key] = change.new
        await asyncio.to_thread(self._write_object, path, current)
        logger.info(f"Updated {resource_type} {external_id}")
        return self._outputs(resource_type, external_id, path)

    async def delete(self, resource_type: str, external_id: str) -> None:
        path = self._object_path(resource_type, external_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError as e:
            raise ResourceNotFoundError(f"{resource_type} {external_id} does not exist") from e
        logger.info(f"Deleted {resource_type} {external_id}")

    # Private helper methods

    def _object_path(self, resource_type: str, external_id: str) -> Path:
        if resource_type not in CATALOG:
            raise ProviderPermanentError(
                f"Local provider does not manage resource type '{resource_type}'"
            )
        return self.directory / resource_type / f"{external_id}.json"

    @staticmethod
    def _outputs(resource_type: str, external_id: str, path: Path) -> Dict[str, Any]:
        return {"uri": f"local://{resource_type}/{external_id}", "path": str(path)}

    @staticmethod
    def _read_object(path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise ResourceNotFoundError(f"No object at {path}") from e

    @staticmethod
    def _write_object(path: Path, attributes: Dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(attributes, f, indent=2, sort_keys=True)
        except OSError as e:
            raise ProviderPermanentError(f"Could not write {path}: {e}") from e
