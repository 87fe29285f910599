"""
Differ - compares the desired graph with stored state.

Produces one ChangeAction per resource: Create for resources with no
record, Update or NoOp depending on attribute and dependency equality,
and Destroy for records no longer desired. References are resolved
before comparison.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from errors import UnresolvedReferenceError
from graph import ResourceGraph
from models import (
    UNKNOWN,
    ActionKind,
    AttributeChange,
    ChangeAction,
    ChangeType,
    Reference,
    ResourceId,
    StateRecord,
    Template,
    contains_unknown,
)
from plugins.base import ResourceTypeSchema

logger = logging.getLogger(__name__)

ReferenceLookup = Callable[[Reference], Any]

_NOT_FOUND = object()


# ==================== Value Helpers ====================


def values_equal(left: Any, right: Any) -> bool:
    """
    Structural equality of attribute values.

    Mapping key order is irrelevant. Booleans never equal numbers, and
    unknown values never equal anything.
    """
    if left is UNKNOWN or right is UNKNOWN:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left) != set(right):
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right)
        )
    if isinstance(left, (Mapping, list, tuple)) or isinstance(right, (Mapping, list, tuple)):
        return False
    return left == right


def diff_attributes(
    old: Mapping[str, Any], new: Mapping[str, Any]
) -> Tuple[AttributeChange, ...]:
    """Attribute-level changes from ``old`` to ``new``, ordered by key."""
    changes = []
    for key in sorted(set(old) | set(new)):
        if key not in old:
            changes.append(AttributeChange(key, ChangeType.ADDED, None, new[key]))
        elif key not in new:
            changes.append(AttributeChange(key, ChangeType.REMOVED, old[key], None))
        elif not values_equal(old[key], new[key]):
            changes.append(AttributeChange(key, ChangeType.CHANGED, old[key], new[key]))
    return tuple(changes)


def lookup_path(values: Mapping[str, Any], attribute: str) -> Any:
    """Walk a dotted attribute path; returns _NOT_FOUND when absent."""
    current: Any = values
    for part in attribute.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _NOT_FOUND
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def resolve_value(value: Any, lookup: ReferenceLookup) -> Any:
    """
    Replace every Reference and Template in ``value``.

    ``lookup`` returns the concrete value for a reference, UNKNOWN when it
    will only be known after apply, or raises UnresolvedReferenceError.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        parts = []
        for part in value.parts:
            if isinstance(part, Reference):
                resolved = lookup(part)
                if contains_unknown(resolved):
                    return UNKNOWN
                parts.append(_stringify(resolved))
            else:
                parts.append(part)
        return "".join(parts)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def lookup_in_record(
    reference: Reference, record: Optional[StateRecord], referrer: ResourceId
) -> Any:
    """
    Resolve a reference against an applied record.

    Attributes are looked up first, then provider outputs.

    Raises:
        UnresolvedReferenceError: If there is no record or no such attribute
    """
    if record is None:
        raise UnresolvedReferenceError(reference, referrer, "target has no applied state")
    if reference.attribute in (None, "id"):
        return record.external_id
    for source in (record.attributes, record.outputs):
        found = lookup_path(source, reference.attribute)
        if found is not _NOT_FOUND:
            return found
    raise UnresolvedReferenceError(
        reference, referrer, f"{reference.target} has no attribute '{reference.attribute}'"
    )


# ==================== Differ ====================


class Differ:
    """
    Computes the change set between a desired graph and stored state.

    Nodes are visited in dependency order so that, when a reference is
    resolved, the action planned for its target is already known.
    """

    def __init__(self, schemas: Optional[Mapping[str, ResourceTypeSchema]] = None):
        self.schemas = schemas or {}

    def diff(
        self,
        graph: ResourceGraph,
        records: Mapping[ResourceId, StateRecord],
    ) -> List[ChangeAction]:
        """
        Diff the graph against stored records.

        Args:
            graph: Desired resource graph (empty for a full destroy)
            records: Stored state keyed by identifier

        Returns:
            One action per desired node (dependency order) followed by a
            Destroy for each record with no desired node.

        Raises:
            CyclicDependencyError: If the graph has a cycle
            UnresolvedReferenceError: If a reference cannot be resolved
        """
        resolved: Dict[ResourceId, Dict[str, Any]] = {}
        planned: Dict[ResourceId, ChangeAction] = {}
        actions: List[ChangeAction] = []

        for resource_id in graph.topological_order():
            node = graph[resource_id]
            record = records.get(resource_id)

            def lookup(reference: Reference, _referrer=resource_id) -> Any:
                return self._lookup_planned(
                    reference, _referrer, resolved, planned, records
                )

            attributes = resolve_value(dict(node.attributes), lookup)
            resolved[resource_id] = attributes
            action = self._action_for(node, record, attributes)
            planned[resource_id] = action
            actions.append(action)

        for resource_id in sorted(records):
            if resource_id in graph:
                continue
            record = records[resource_id]
            actions.append(
                ChangeAction(
                    id=resource_id,
                    kind=ActionKind.DESTROY,
                    changes=diff_attributes(record.attributes, {}),
                    prior=record,
                    dependencies=record.dependencies,
                )
            )

        counts = {kind: 0 for kind in ActionKind}
        for action in actions:
            counts[action.kind] += 1
        logger.info(
            "Diff complete: "
            + ", ".join(f"{counts[kind]} {kind.value}" for kind in ActionKind)
        )
        return actions

    def _action_for(self, node, record: Optional[StateRecord], attributes) -> ChangeAction:
        dependencies = tuple(sorted(node.dependencies))
        if record is None:
            return ChangeAction(
                id=node.id,
                kind=ActionKind.CREATE,
                changes=diff_attributes({}, attributes),
                desired=node.attributes,
                dependencies=dependencies,
            )

        changes = diff_attributes(record.attributes, attributes)
        # Stored dependencies order future destroys, so a changed set
        # rewrites the record even when no attribute changed
        if not changes and set(record.dependencies) == set(node.dependencies):
            return ChangeAction(
                id=node.id,
                kind=ActionKind.NOOP,
                desired=node.attributes,
                prior=record,
                dependencies=dependencies,
            )

        return ChangeAction(
            id=node.id,
            kind=ActionKind.UPDATE,
            changes=changes,
            desired=node.attributes,
            prior=record,
            dependencies=dependencies,
            replacement=self._requires_replacement(node.id.type, changes),
        )

    def _requires_replacement(
        self, resource_type: str, changes: Sequence[AttributeChange]
    ) -> bool:
        type_schema = self.schemas.get(resource_type)
        if type_schema is None:
            return False
        return any(change.key in type_schema.replace_on_change for change in changes)

    @staticmethod
    def _lookup_planned(
        reference: Reference,
        referrer: ResourceId,
        resolved: Mapping[ResourceId, Dict[str, Any]],
        planned: Mapping[ResourceId, ChangeAction],
        records: Mapping[ResourceId, StateRecord],
    ) -> Any:
        target = reference.target
        action = planned.get(target)
        if action is None:
            raise UnresolvedReferenceError(reference, referrer, "no such resource")

        record = records.get(target)
        recreated = action.kind is ActionKind.CREATE or action.replacement

        if reference.attribute in (None, "id"):
            if record is not None and not recreated:
                return record.external_id
            return UNKNOWN

        found = lookup_path(resolved[target], reference.attribute)
        if found is not _NOT_FOUND:
            return found
        if action.kind is ActionKind.NOOP:
            return lookup_in_record(reference, record, referrer)
        # Computed by the provider once the target is applied
        return UNKNOWN
