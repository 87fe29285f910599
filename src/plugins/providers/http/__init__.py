"""
HTTP Provider Plugin - manages resources through a generic REST API.
"""

from plugins.providers.http.provider import HTTPProviderPlugin

__all__ = ["HTTPProviderPlugin"]
