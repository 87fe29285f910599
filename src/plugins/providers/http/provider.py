"""
HTTP Provider Plugin - Implements ProviderPlugin for REST APIs.

Each configured resource type maps to a collection path on one base URL:

    POST   {base_url}/{path}          create (response body carries the id)
    GET    {base_url}/{path}/{id}     read
    PATCH  {base_url}/{path}/{id}     update (changed keys only)
    DELETE {base_url}/{path}/{id}     delete
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional, Sequence, Tuple

import aiohttp

from errors import (
    ProviderPermanentError,
    ProviderTransientError,
    ResourceNotFoundError,
)
from models import AttributeChange, ChangeType
from plugins.base import ResourceTypeSchema
from plugins.providers.base import ProviderPlugin

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({408, 425, 429})


def check_response_status(status: int, method: str, url: str, body: str = "") -> None:
    """
    Map an HTTP status to the provider error taxonomy.

    Raises:
        ResourceNotFoundError: On 404
        ProviderTransientError: On 408, 425, 429 and any 5xx
        ProviderPermanentError: On any other 4xx
    """
    if status < 400:
        return
    message = f"{method} {url} returned {status}"
    if body:
        message += f": {body[:200]}"
    if status == 404:
        raise ResourceNotFoundError(message)
    if status in TRANSIENT_STATUSES or status >= 500:
        raise ProviderTransientError(message)
    raise ProviderPermanentError(message)


class HTTPProviderPlugin(ProviderPlugin):
    """
    Provider that manages resources through a JSON REST API.

    Resource types are declared in configuration, so one plugin can front
    any API that follows collection/item conventions.
    """

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.timeout: float = 30.0
        self._types: Dict[str, ResourceTypeSchema] = {}
        self._paths: Dict[str, str] = {}
        self._id_fields: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP provider configuration from environment variables."""
        resource_types: Dict[str, Any] = {}
        if os.getenv("HTTP_PROVIDER_TYPES"):
            try:
                resource_types = json.loads(os.getenv("HTTP_PROVIDER_TYPES"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring malformed HTTP_PROVIDER_TYPES: {e}")
        return {
            "base_url": os.getenv("HTTP_PROVIDER_BASE_URL", ""),
            "token": os.getenv("HTTP_PROVIDER_TOKEN", ""),
            "timeout": float(os.getenv("HTTP_PROVIDER_TIMEOUT", "30")),
            "resource_types": resource_types,
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Raises:
            ValueError: If resource types are declared without a base URL
        """
        self.base_url = (config.get("base_url") or "").rstrip("/")
        self.token = config.get("token") or None
        self.timeout = float(config.get("timeout", self.timeout))

        for type_name, type_config in (config.get("resource_types") or {}).items():
            self._types[type_name] = ResourceTypeSchema.from_dict(type_name, type_config)
            self._paths[type_name] = str(type_config.get("path", type_name)).strip("/")
            self._id_fields[type_name] = type_config.get("id_field", "id")

        if self._types and not self.base_url:
            raise ValueError("HTTP provider declares resource types but has no base_url")

        logger.debug(
            f"HTTP provider initialized: base_url={self.base_url}, "
            f"timeout={self.timeout}s, types={sorted(self._types)}"
        )

    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return dict(self._types)

    async def create(
        self, resource_type: str, attributes: Dict[str, Any]
    ) -> Tuple[str, Dict[str, Any]]:
        url = self._collection_url(resource_type)
        body = await self._request("POST", url, attributes) or {}
        id_field = self._id_fields[resource_type]
        if id_field not in body:
            raise ProviderPermanentError(
                f"POST {url} response has no '{id_field}' field"
            )
        external_id = str(body[id_field])
        logger.info(f"Created {resource_type} {external_id}")
        return external_id, body

    async def read(self, resource_type: str, external_id: str) -> Dict[str, Any]:
        return await self._request("GET", self._item_url(resource_type, external_id)) or {}

    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: Sequence[AttributeChange],
    ) -> Dict[str, Any]:
        patch = {
            change.key: None if change.change is ChangeType.REMOVED else change.new
            for change in changes
        }
        url = self._item_url(resource_type, external_id)
        body = await self._request("PATCH", url, patch)
        logger.info(f"Updated {resource_type} {external_id}: {sorted(patch)}")
        return body or {}

    async def delete(self, resource_type: str, external_id: str) -> None:
        await self._request("DELETE", self._item_url(resource_type, external_id))
        logger.info(f"Deleted {resource_type} {external_id}")

    # Private helper methods

    def _collection_url(self, resource_type: str) -> str:
        if resource_type not in self._paths:
            raise ProviderPermanentError(
                f"HTTP provider does not manage resource type '{resource_type}'"
            )
        return f"{self.base_url}/{self._paths[resource_type]}"

    def _item_url(self, resource_type: str, external_id: str) -> str:
        return f"{self._collection_url(resource_type)}/{external_id}"

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self, method: str, url: str, payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Send one request; returns the decoded JSON body, or None if empty."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), json=payload
                ) as response:
                    text = await response.text()
                    check_response_status(response.status, method, url, text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderTransientError(f"{method} {url} failed: {e}") from e

        if not text:
            return None
        try:
            body = json.loads(text)
        except ValueError as e:
            raise ProviderPermanentError(f"{method} {url} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise ProviderPermanentError(f"{method} {url} returned a non-object body")
        return body
