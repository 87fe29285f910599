"""
Core plugin types and dataclasses.

This module contains shared types used across the provider plugin system.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceTypeSchema:
    """
    Declaration of a resource type offered by a provider.

    ``schema`` is a JSON Schema (Draft 7) applied to the desired attributes
    when the resource graph is built. Changing any attribute listed in
    ``replace_on_change`` forces the resource to be replaced rather than
    updated in place. Types flagged ``destroy_before_create`` destroy the
    old object before its replacement is created.
    """

    name: str
    schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    replace_on_change: FrozenSet[str] = frozenset()
    destroy_before_create: bool = False
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ResourceTypeSchema":
        """Build a schema declaration from plugin configuration."""
        return cls(
            name=name,
            schema=data.get("schema") or {"type": "object"},
            replace_on_change=frozenset(data.get("replace_on_change") or ()),
            destroy_before_create=bool(data.get("destroy_before_create", False)),
            description=data.get("description"),
        )
