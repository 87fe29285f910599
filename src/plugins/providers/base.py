"""
Provider Plugin Base - Abstract interface for infrastructure providers.

Providers translate planned actions into create/read/update/delete calls
against a remote API. The engine never talks to a remote system except
through this interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Sequence, Tuple

from models import AttributeChange
from plugins.base import ResourceTypeSchema


class ProviderPlugin(ABC):
    """
    Abstract base class for provider plugins.

    Each provider declares the resource types it manages. Calls signal
    failures with ``ProviderTransientError`` (worth retrying),
    ``ProviderPermanentError`` or ``ResourceNotFoundError``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Provider version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Called once when the provider is loaded.

        Args:
            config: Provider-specific configuration dictionary
        """
        pass

    @abstractmethod
    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        """
        Resource types managed by this provider.

        Only valid after initialize() has been called.

        Returns:
            Mapping of resource type name to its schema declaration.
        """
        pass

    @abstractmethod
    async def create(
        self, resource_type: str, attributes: Dict[str, Any]
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Create a remote object.

        Args:
            resource_type: The resource type name
            attributes: Fully resolved desired attributes

        Returns:
            Tuple of (external_id, resulting_attributes).
        """
        pass

    @abstractmethod
    async def read(self, resource_type: str, external_id: str) -> Dict[str, Any]:
        """
        Read a remote object.

        Raises:
            ResourceNotFoundError: If the object does not exist.
        """
        pass

    @abstractmethod
    async def update(
        self,
        resource_type: str,
        external_id: str,
        changes: Sequence[AttributeChange],
    ) -> Dict[str, Any]:
        """
        Update a remote object in place.

        Args:
            resource_type: The resource type name
            external_id: Identifier assigned by the remote system
            changes: Attribute-level diff to apply

        Returns:
            The resulting attributes.
        """
        pass

    @abstractmethod
    async def delete(self, resource_type: str, external_id: str) -> None:
        """
        Delete a remote object.

        Raises:
            ResourceNotFoundError: If the object is already gone.
        """
        pass

    async def close(self) -> None:
        """Release any held connections. Optional."""
        return None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load provider-specific configuration from environment variables.

        Override this method in subclasses to define how the provider
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this provider.
        """
        return {}
