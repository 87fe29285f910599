"""
Engine - wires the pipeline together.

document -> graph -> diff against state snapshot -> plan -> execute
"""

import asyncio
import logging
from typing import Any, List, Mapping, Optional

from config import ExecutorConfig
from differ import Differ
from document import DesiredStateDocument
from events import EventBus
from executor import Executor
from graph import GraphBuilder, ResourceGraph
from models import ApplyReport, ExecutionPlan, ResourceId
from planner import Planner
from plugins.registry import PluginRegistry
from state import StateStore

logger = logging.getLogger(__name__)


class Engine:
    """Plans and applies a desired-state document against a state store."""

    def __init__(
        self,
        store: StateStore,
        registry: PluginRegistry,
        executor_config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry
        self.executor_config = executor_config or ExecutorConfig()
        self.event_bus = event_bus

    async def plan(
        self,
        document: DesiredStateDocument,
        variable_sources: Optional[List[Mapping[str, Any]]] = None,
        target: Optional[ResourceId] = None,
        destroy: bool = False,
    ) -> ExecutionPlan:
        """
        Compute an execution plan. Nothing is mutated.

        A destroy plan still parses and validates the document, then diffs
        an empty graph so every stored resource is planned for destruction.

        Raises:
            PlanningError: On any parse, reference or cycle error
        """
        schemas = self.registry.resource_type_schemas()
        graph = GraphBuilder(schemas).build(document, variable_sources)

        records = {record.id: record for record in await self.store.snapshot()}
        logger.debug(f"Loaded {len(records)} state records")

        desired = ResourceGraph() if destroy else graph
        actions = Differ(schemas).diff(desired, records)
        return Planner(schemas).plan(graph, actions, target=target, destroy=destroy)

    async def apply(
        self, plan: ExecutionPlan, cancel_event: Optional[asyncio.Event] = None
    ) -> ApplyReport:
        """Execute a plan produced by :meth:`plan`."""
        executor = Executor(
            self.store,
            self.registry,
            config=self.executor_config,
            event_bus=self.event_bus,
            cancel_event=cancel_event,
        )
        return await executor.execute(plan)
