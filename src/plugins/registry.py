"""
Plugin Registry - Discovery and registration of provider plugins.

This module provides the central registry for providers, handling
discovery, registration, instantiation and the mapping from resource type
to the provider that manages it.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import ResourceTypeSchema, logger
from plugins.providers.base import ProviderPlugin
from validation import validate_type_schema

ENTRY_POINT_GROUP = "converge.providers"


class PluginRegistry:
    """
    Central registry for provider plugins.

    Provider classes are registered first; ``initialize_providers`` then
    instantiates the enabled ones and claims their resource types. A
    resource type may be claimed by exactly one provider.
    """

    def __init__(self):
        # Registered provider classes (not instantiated)
        self._provider_plugins: Dict[str, Type[ProviderPlugin]] = {}

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._provider_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized provider instances
        self._provider_instances: Dict[str, ProviderPlugin] = {}

        # Provider configurations loaded from environment
        self._provider_plugin_configs: Dict[str, Dict[str, Any]] = {}

        # Mapping from resource type name to provider name
        self._resource_type_to_provider: Dict[str, str] = {}
        self._resource_type_schemas: Dict[str, ResourceTypeSchema] = {}

    # Registration methods

    def register_provider_plugin(self, plugin_class: Type[ProviderPlugin]) -> None:
        """
        Register a provider plugin class.

        Args:
            plugin_class: The ProviderPlugin subclass to register
        """
        # Create temporary instance to get name/version (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._provider_plugins:
            logger.warning(f"Overwriting existing provider plugin: {name}")

        self._provider_plugins[name] = plugin_class
        self._provider_plugin_info[name] = {"name": name, "version": version}
        self._provider_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered provider plugin: {name} v{version}")

    # Instantiation methods

    async def get_provider_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ProviderPlugin:
        """
        Get an initialized provider instance and claim its resource types.

        Args:
            name: The provider name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized ProviderPlugin instance

        Raises:
            ValueError: If the provider is not registered, declares an
                invalid schema, or claims a resource type that another
                provider already manages
        """
        if name not in self._provider_plugins:
            available = ", ".join(self._provider_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown provider plugin: {name}. Available plugins: {available}"
            )

        if name not in self._provider_instances:
            plugin = self._provider_plugins[name]()
            await plugin.initialize(config or {})
            self._claim_resource_types(name, plugin.resource_types())
            self._provider_instances[name] = plugin
            logger.info(f"Initialized provider plugin: {name}")

        return self._provider_instances[name]

    async def initialize_providers(
        self,
        enabled: Optional[List[str]] = None,
        configs: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> List[ProviderPlugin]:
        """
        Initialize a set of providers.

        Environment-loaded configuration is merged with ``configs``, with
        the latter taking precedence.

        Args:
            enabled: Provider names to initialize (empty = all registered)
            configs: Per-provider configuration overrides

        Returns:
            The initialized provider instances.
        """
        configs = configs or {}
        names = enabled or self.list_provider_plugins()
        providers = []
        for name in names:
            plugin_config = self.get_provider_plugin_config(name).copy()
            plugin_config.update(configs.get(name, {}))
            providers.append(await self.get_provider_plugin(name, plugin_config))
        return providers

    async def close(self) -> None:
        """Close every initialized provider."""
        for name, plugin in self._provider_instances.items():
            try:
                await plugin.close()
            except Exception as e:
                logger.error(f"Error closing provider '{name}': {e}")

    def _claim_resource_types(
        self, provider_name: str, schemas: Dict[str, ResourceTypeSchema]
    ) -> None:
        for type_name, type_schema in schemas.items():
            existing = self._resource_type_to_provider.get(type_name)
            if existing and existing != provider_name:
                raise ValueError(
                    f"Resource type '{type_name}' is already claimed by "
                    f"provider '{existing}'. Cannot register '{provider_name}'."
                )
            is_valid, error = validate_type_schema(type_schema.schema)
            if not is_valid:
                raise ValueError(
                    f"Provider '{provider_name}' declares an invalid schema "
                    f"for '{type_name}': {error}"
                )

        for type_name, type_schema in schemas.items():
            self._resource_type_to_provider[type_name] = provider_name
            self._resource_type_schemas[type_name] = type_schema

        if schemas:
            logger.info(
                f"Provider {provider_name} manages resource types: "
                f"{', '.join(sorted(schemas))}"
            )

    # Discovery methods

    def list_provider_plugins(self) -> list[str]:
        """List all registered provider plugin names."""
        return list(self._provider_plugins.keys())

    def has_provider_plugin(self, name: str) -> bool:
        """Check if a provider plugin is registered."""
        return name in self._provider_plugins

    def has_provider_for_resource_type(self, resource_type_name: str) -> bool:
        """Check if any initialized provider manages the given resource type."""
        return resource_type_name in self._resource_type_to_provider

    def get_provider_for_resource_type(self, resource_type_name: str) -> ProviderPlugin:
        """
        Get the initialized provider that manages a resource type.

        Raises:
            ValueError: If no initialized provider manages the type
        """
        provider_name = self._resource_type_to_provider.get(resource_type_name)
        if provider_name is None:
            raise ValueError(
                f"No provider manages resource type '{resource_type_name}'"
            )
        return self._provider_instances[provider_name]

    def resource_type_schemas(self) -> Dict[str, ResourceTypeSchema]:
        """Schemas of every resource type claimed by an initialized provider."""
        return dict(self._resource_type_schemas)

    def get_provider_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered provider plugin.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._provider_plugin_info.get(name)

    def get_provider_plugin_config(self, name: str) -> Dict[str, Any]:
        """
        Get environment-loaded configuration for a provider plugin.

        Returns:
            Dictionary of configuration values, or empty dict if not found
        """
        return self._provider_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins(registry: Optional[PluginRegistry] = None) -> None:
    """
    Register the built-in providers and discover third-party providers
    via entry points.

    Args:
        registry: Registry to populate (defaults to the global registry)
    """
    registry = registry or get_registry()

    try:
        from plugins.providers.local import LocalProviderPlugin

        registry.register_provider_plugin(LocalProviderPlugin)
    except ImportError as e:
        logger.warning(f"Could not load local provider: {e}")

    try:
        from plugins.providers.http import HTTPProviderPlugin

        registry.register_provider_plugin(HTTPProviderPlugin)
    except ImportError as e:
        logger.warning(f"Could not load HTTP provider: {e}")

    discovered = entry_points(group=ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            provider_class = ep.load()
            registry.register_provider_plugin(provider_class)
        except Exception as e:
            logger.warning(f"Could not load provider plugin {ep.name}: {e}")
