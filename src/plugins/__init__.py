"""
Plugin system for converge.

This package provides the plugin architecture for resource providers.
"""

from plugins.base import ResourceTypeSchema
from plugins.providers.base import ProviderPlugin
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ResourceTypeSchema",
    "ProviderPlugin",
    "PluginRegistry",
    "get_registry",
]
