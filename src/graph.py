"""
Resource Graph Builder.

Turns a desired-state document into an immutable graph of resource nodes.
Dependency edges come from explicit ``depends_on`` lists and from an
edge-extraction pass over every attribute value.
"""

import logging
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set

from document import DesiredStateDocument, interpolate, resolve_variables
from errors import (
    CyclicDependencyError,
    DuplicateIdentifierError,
    ParseError,
    UnresolvedReferenceError,
)
from models import NAME_PATTERN, TYPE_PATTERN, ResourceId, ResourceNode, iter_references
from plugins.base import ResourceTypeSchema
from validation import validate_attributes_against_schema

logger = logging.getLogger(__name__)

RESOURCE_BLOCK_KEYS = {"type", "name", "attributes", "depends_on"}


class ResourceGraph:
    """Directed graph of desired resources, edges pointing at dependencies."""

    def __init__(self, nodes: Optional[Mapping[ResourceId, ResourceNode]] = None):
        self._nodes: Dict[ResourceId, ResourceNode] = dict(nodes or {})
        self._dependents: Dict[ResourceId, Set[ResourceId]] = {
            resource_id: set() for resource_id in self._nodes
        }
        for node in self._nodes.values():
            for dependency in node.dependencies:
                self._dependents.setdefault(dependency, set()).add(node.id)

    @property
    def nodes(self) -> Mapping[ResourceId, ResourceNode]:
        return MappingProxyType(self._nodes)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def __iter__(self) -> Iterator[ResourceId]:
        return iter(sorted(self._nodes))

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, resource_id: ResourceId) -> ResourceNode:
        return self._nodes[resource_id]

    def get(self, resource_id: ResourceId) -> Optional[ResourceNode]:
        return self._nodes.get(resource_id)

    def dependencies_of(self, resource_id: ResourceId) -> FrozenSet[ResourceId]:
        node = self._nodes.get(resource_id)
        return node.dependencies if node else frozenset()

    def dependents_of(self, resource_id: ResourceId) -> FrozenSet[ResourceId]:
        return frozenset(self._dependents.get(resource_id, ()))

    def dependency_closure(self, resource_id: ResourceId) -> Set[ResourceId]:
        """All resources ``resource_id`` transitively depends on."""
        return self._closure(resource_id, self.dependencies_of)

    @staticmethod
    def _closure(start: ResourceId, neighbours) -> Set[ResourceId]:
        seen: Set[ResourceId] = set()
        stack = list(neighbours(start))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(neighbours(current))
        return seen

    def topological_order(self) -> List[ResourceId]:
        """
        Order nodes so every node comes after its dependencies.

        Ties are broken by identifier so the order is deterministic.

        Raises:
            CyclicDependencyError: If the graph contains a cycle
        """
        sorter = TopologicalSorter(
            {resource_id: set(node.dependencies) for resource_id, node in self._nodes.items()}
        )
        try:
            sorter.prepare()
        except CycleError as e:
            raise CyclicDependencyError(e.args[1]) from e

        order: List[ResourceId] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            order.extend(ready)
            sorter.done(*ready)
        return order


class GraphBuilder:
    """
    Builds a ResourceGraph from a desired-state document.

    When ``schemas`` is given, every resource type must be declared there
    and attributes are validated against its JSON Schema.
    """

    def __init__(self, schemas: Optional[Mapping[str, ResourceTypeSchema]] = None):
        self.schemas = schemas

    def build(
        self,
        document: DesiredStateDocument,
        variable_sources: Optional[List[Mapping[str, Any]]] = None,
    ) -> ResourceGraph:
        """
        Build the graph.

        Args:
            document: Parsed desired-state document
            variable_sources: Variable value mappings, highest precedence first

        Raises:
            ParseError: On malformed blocks, unknown types or schema violations
            DuplicateIdentifierError: If two blocks share an identifier
            UnresolvedReferenceError: If a reference targets an unknown resource
        """
        source = document.source
        variables = resolve_variables(
            document.variables, *(variable_sources or []), source=source
        )

        parsed: Dict[ResourceId, Dict[str, Any]] = {}
        explicit: Dict[ResourceId, Set[ResourceId]] = {}

        for index, block in enumerate(document.resources):
            resource_id, attributes, depends_on = self._parse_block(
                index, block, variables, source
            )
            if resource_id in parsed:
                raise DuplicateIdentifierError(resource_id)
            self._validate(resource_id, attributes, source)
            parsed[resource_id] = attributes
            explicit[resource_id] = depends_on

        nodes: Dict[ResourceId, ResourceNode] = {}
        for resource_id, attributes in parsed.items():
            dependencies = set(explicit[resource_id])
            for reference in iter_references(attributes):
                if reference.target not in parsed:
                    raise UnresolvedReferenceError(
                        reference, resource_id, "no such resource"
                    )
                dependencies.add(reference.target)
            for dependency in explicit[resource_id]:
                if dependency not in parsed:
                    raise UnresolvedReferenceError(
                        dependency, resource_id, "depends_on names no such resource"
                    )
            nodes[resource_id] = ResourceNode(
                id=resource_id,
                attributes=MappingProxyType(attributes),
                dependencies=frozenset(dependencies),
            )

        logger.debug(f"Built resource graph with {len(nodes)} nodes")
        return ResourceGraph(nodes)

    def _parse_block(self, index: int, block: Any, variables, source):
        location = f"resources[{index}]"
        if not isinstance(block, dict):
            raise ParseError(f"{location}: resource block must be a mapping", source)

        unknown = set(block) - RESOURCE_BLOCK_KEYS
        if unknown:
            raise ParseError(
                f"{location}: unknown keys {', '.join(sorted(map(str, unknown)))}",
                source,
            )

        resource_type = block.get("type")
        name = block.get("name")
        if not isinstance(resource_type, str) or not TYPE_PATTERN.match(resource_type):
            raise ParseError(f"{location}: invalid or missing 'type'", source)
        if not isinstance(name, str) or not NAME_PATTERN.match(name):
            raise ParseError(f"{location}: invalid or missing 'name'", source)
        resource_id = ResourceId(resource_type, name)

        raw_attributes = block.get("attributes") or {}
        if not isinstance(raw_attributes, dict):
            raise ParseError(f"{resource_id}: 'attributes' must be a mapping", source)
        for key in raw_attributes:
            if not isinstance(key, str):
                raise ParseError(
                    f"{resource_id}: attribute names must be strings, got {key!r}",
                    source,
                )
        try:
            attributes = interpolate(raw_attributes, variables, str(resource_id))
        except ParseError as e:
            raise ParseError(str(e), source) from e

        raw_depends_on = block.get("depends_on") or []
        if not isinstance(raw_depends_on, list):
            raise ParseError(f"{resource_id}: 'depends_on' must be a list", source)
        depends_on = set()
        for entry in raw_depends_on:
            try:
                depends_on.add(ResourceId.parse(str(entry)))
            except ValueError as e:
                raise ParseError(f"{resource_id}: {e}", source) from e

        return resource_id, attributes, depends_on

    def _validate(self, resource_id: ResourceId, attributes, source) -> None:
        if self.schemas is None:
            return
        type_schema = self.schemas.get(resource_id.type)
        if type_schema is None:
            raise ParseError(
                f"{resource_id}: unknown resource type '{resource_id.type}'", source
            )
        is_valid, error = validate_attributes_against_schema(
            attributes, type_schema.schema
        )
        if not is_valid:
            raise ParseError(f"{resource_id}: {error}", source)


def build_graph(
    document: DesiredStateDocument,
    schemas: Optional[Mapping[str, ResourceTypeSchema]] = None,
    variable_sources: Optional[List[Mapping[str, Any]]] = None,
) -> ResourceGraph:
    """Convenience wrapper around GraphBuilder.build."""
    return GraphBuilder(schemas).build(document, variable_sources)
