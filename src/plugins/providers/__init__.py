"""
Provider plugins package.

Providers perform create/read/update/delete calls against the systems
that hold real resources.
"""

from plugins.providers.base import ProviderPlugin

__all__ = ["ProviderPlugin"]
