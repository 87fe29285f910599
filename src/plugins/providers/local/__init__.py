"""
Local Provider Plugin - stores resources as JSON files on disk.
"""

from plugins.providers.local.provider import LocalProviderPlugin

__all__ = ["LocalProviderPlugin"]
