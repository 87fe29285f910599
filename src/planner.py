"""
Planner - orders change actions into an execution plan.

Create/Update actions run after the changes of the resources they depend
on; Destroy actions run in reverse dependency order. Resources that are
not changing are transparent: ordering passes through them.

Replacement expands into a Create and a Destroy on the same identifier.
By default the new object is created first and the old one destroyed once
every dependent has moved over. Types flagged ``destroy_before_create``
destroy first, and their dependents wait until the replacement exists.
"""

import dataclasses
import logging
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from errors import CyclicDependencyError, UnresolvedReferenceError
from graph import ResourceGraph
from models import ActionKey, ActionKind, ChangeAction, ExecutionPlan, ResourceId
from plugins.base import ResourceTypeSchema

logger = logging.getLogger(__name__)

APPLY_KINDS = (ActionKind.CREATE, ActionKind.UPDATE)


class Planner:
    """Builds an ExecutionPlan from the Differ's actions."""

    def __init__(self, schemas: Optional[Mapping[str, ResourceTypeSchema]] = None):
        self.schemas = schemas or {}

    def plan(
        self,
        graph: ResourceGraph,
        actions: Iterable[ChangeAction],
        target: Optional[ResourceId] = None,
        destroy: bool = False,
    ) -> ExecutionPlan:
        """
        Order the actions.

        Args:
            graph: Desired graph the actions were computed from
            actions: Output of the Differ
            target: Restrict the plan to this resource and the resources
                it requires (its dependencies, or its dependents when
                destroying)
            destroy: Whether this is a destroy plan

        Raises:
            CyclicDependencyError: If the ordering constraints form a cycle
            UnresolvedReferenceError: If the target does not exist
        """
        actions = list(actions)
        if target is not None:
            scope = self._target_scope(graph, actions, target, destroy)
            actions = [action for action in actions if action.id in scope]

        changed = {action.id: action for action in actions if action.is_change}
        noops = tuple(action for action in actions if not action.is_change)

        steps: Dict[ActionKey, ChangeAction] = {}
        for action in changed.values():
            if action.replacement:
                for kind in (ActionKind.CREATE, ActionKind.DESTROY):
                    step = dataclasses.replace(action, kind=kind)
                    steps[step.key] = step
            else:
                steps[action.key] = action

        predecessors = self._order_constraints(graph, steps)
        ordered = self._sort(steps, predecessors)

        plan = ExecutionPlan(
            actions=tuple(steps[key] for key in ordered),
            predecessors=MappingProxyType(
                {key: frozenset(predecessors[key]) for key in ordered}
            ),
            noops=noops,
            destroy=destroy,
            target=target,
        )
        summary = plan.summary()
        logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['destroy']} to destroy, {summary['no-op']} unchanged"
        )
        return plan

    # ==================== Ordering ====================

    def _destroys_first(self, resource_type: str) -> bool:
        type_schema = self.schemas.get(resource_type)
        return bool(type_schema and type_schema.destroy_before_create)

    def _order_constraints(
        self, graph: ResourceGraph, steps: Mapping[ActionKey, ChangeAction]
    ) -> Dict[ActionKey, Set[ActionKey]]:
        predecessors: Dict[ActionKey, Set[ActionKey]] = {key: set() for key in steps}

        def apply_key(resource_id: ResourceId) -> Optional[ActionKey]:
            for kind in APPLY_KINDS:
                if (resource_id, kind) in steps:
                    return (resource_id, kind)
            return None

        def destroy_step(resource_id: ResourceId) -> Optional[ChangeAction]:
            return steps.get((resource_id, ActionKind.DESTROY))

        def is_deferred_destroy(step: ChangeAction) -> bool:
            # Replacement destroy that waits for dependents to move over
            return step.replacement and not self._destroys_first(step.id.type)

        for key, step in steps.items():
            resource_id, kind = key

            if kind in APPLY_KINDS:
                # Dependencies are created/updated first
                for dependency in self._changed_neighbours(
                    resource_id, graph.dependencies_of, apply_key
                ):
                    predecessors[key].add(apply_key(dependency))

                # Stop depending on a resource before it is destroyed
                if step.prior is not None:
                    for dependency in step.prior.dependencies:
                        old = destroy_step(dependency)
                        if old is not None and not old.replacement:
                            predecessors[old.key].add(key)
                continue

            # Destroy: dependents go first, unless the dependency is
            # replaced destroy-first, in which case dependents are paused.
            # Declared dependencies count too; stored ones may predate them.
            dependencies = set(graph.dependencies_of(resource_id))
            if step.prior is not None:
                dependencies.update(step.prior.dependencies)
            for dependency in sorted(dependencies):
                old = destroy_step(dependency)
                if old is None:
                    continue
                if old.replacement and self._destroys_first(dependency.type):
                    continue
                predecessors[old.key].add(key)

            if step.replacement:
                replacement_key = (resource_id, ActionKind.CREATE)
                if self._destroys_first(resource_id.type):
                    predecessors[replacement_key].add(key)
                else:
                    predecessors[key].add(replacement_key)

            if is_deferred_destroy(step):
                for dependent in self._changed_neighbours(
                    resource_id, graph.dependents_of, apply_key
                ):
                    predecessors[key].add(apply_key(dependent))

        return predecessors

    @staticmethod
    def _changed_neighbours(
        start: ResourceId,
        neighbours: Callable[[ResourceId], Iterable[ResourceId]],
        apply_key: Callable[[ResourceId], Optional[ActionKey]],
    ) -> Set[ResourceId]:
        """Nearest changing resources along ``neighbours``, passing through unchanged ones."""
        found: Set[ResourceId] = set()
        seen: Set[ResourceId] = set()
        stack = list(neighbours(start))
        while stack:
            current = stack.pop()
            if current in seen or current == start:
                continue
            seen.add(current)
            if apply_key(current) is not None:
                found.add(current)
            else:
                stack.extend(neighbours(current))
        return found

    @staticmethod
    def _sort(
        steps: Mapping[ActionKey, ChangeAction],
        predecessors: Mapping[ActionKey, Set[ActionKey]],
    ) -> List[ActionKey]:
        sorter = TopologicalSorter(
            {key: predecessors[key] for key in steps}
        )
        try:
            sorter.prepare()
        except CycleError as e:
            members = []
            for resource_id, _ in e.args[1]:
                if not members or members[-1] != resource_id:
                    members.append(resource_id)
            raise CyclicDependencyError(members) from e

        ordered: List[ActionKey] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=lambda k: (k[0], k[1].value))
            ordered.extend(ready)
            sorter.done(*ready)
        return ordered

    # ==================== Targeting ====================

    @staticmethod
    def _target_scope(
        graph: ResourceGraph,
        actions: List[ChangeAction],
        target: ResourceId,
        destroy: bool,
    ) -> Set[ResourceId]:
        known = {action.id for action in actions}
        if target not in known and target not in graph:
            raise UnresolvedReferenceError(
                target, None, "target is neither declared nor in state"
            )

        if not destroy:
            return {target} | graph.dependency_closure(target)

        # Destroying a resource takes everything that depends on it along
        stored_dependents: Dict[ResourceId, Set[ResourceId]] = {}
        for action in actions:
            for dependency in action.prior.dependencies if action.prior else ():
                stored_dependents.setdefault(dependency, set()).add(action.id)

        scope = {target}
        stack = [target]
        while stack:
            current = stack.pop()
            for dependent in stored_dependents.get(current, set()) | set(
                graph.dependents_of(current)
            ):
                if dependent not in scope:
                    scope.add(dependent)
                    stack.append(dependent)
        return scope


def build_plan(
    graph: ResourceGraph,
    actions: Iterable[ChangeAction],
    schemas: Optional[Mapping[str, ResourceTypeSchema]] = None,
    target: Optional[ResourceId] = None,
    destroy: bool = False,
) -> ExecutionPlan:
    """Convenience wrapper around Planner.plan."""
    return Planner(schemas).plan(graph, actions, target=target, destroy=destroy)
