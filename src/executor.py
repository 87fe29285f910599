"""
Executor - applies an execution plan through providers.

Actions whose predecessors have all reached a terminal state are
dispatched concurrently, bounded by a semaphore. A failed action marks
everything downstream of it Skipped while independent branches carry on.
The state store is written only for actions that were applied.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

from config import ExecutorConfig
from differ import diff_attributes, lookup_in_record, resolve_value
from errors import (
    ProviderPermanentError,
    ProviderTransientError,
    ResourceNotFoundError,
    StateStoreError,
)
from events import ActionEvent, EventBus, EventType
from models import (
    ActionKey,
    ActionKind,
    ActionOutcome,
    ActionResult,
    ApplyReport,
    ChangeAction,
    ExecutionPlan,
    Reference,
    StateRecord,
    iter_references,
    utcnow,
)
from plugins.registry import PluginRegistry
from state import StateStore

logger = logging.getLogger(__name__)

TERMINAL_FAILURES = (ActionOutcome.FAILED, ActionOutcome.SKIPPED)


class Executor:
    """
    Drives the provider interface for each action of a plan.

    Set ``cancel_event`` (or call ``cancel()``) to stop dispatching: actions
    already talking to a provider finish, the rest are reported Skipped.
    """

    def __init__(
        self,
        store: StateStore,
        registry: PluginRegistry,
        config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.semaphore = asyncio.Semaphore(self.config.parallelism)
        self._event_bus = event_bus
        self._cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Stop dispatching new actions."""
        logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(self, plan: ExecutionPlan) -> ApplyReport:
        """
        Apply every action of the plan.

        Args:
            plan: The plan to execute (consumed; it cannot be run twice)

        Returns:
            ApplyReport with one result per action, in plan order, followed
            by a NoOp result for every unchanged resource.
        """
        plan.consume()
        actions: Dict[ActionKey, ChangeAction] = {a.key: a for a in plan.actions}
        results: Dict[ActionKey, ActionResult] = {}
        remaining: List[ActionKey] = [a.key for a in plan.actions]
        running: Dict[asyncio.Task, ActionKey] = {}
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())

        try:
            while remaining or running:
                if self.cancelled:
                    for key in remaining:
                        results[key] = await self._skip(
                            actions[key], "Cancelled before dispatch"
                        )
                    remaining = []
                else:
                    remaining = await self._dispatch_ready(
                        plan, actions, remaining, results, running
                    )

                if not running:
                    if remaining and not self.cancelled:
                        raise RuntimeError(
                            "Execution plan has actions with unknown predecessors"
                        )
                    continue

                waiters = set(running)
                if not cancel_waiter.done():
                    waiters.add(cancel_waiter)
                done, _ = await asyncio.wait(
                    waiters, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    key = running.pop(task)
                    results[key] = task.result()
        finally:
            cancel_waiter.cancel()

        report = ApplyReport(
            results=[results[a.key] for a in plan.actions]
            + [ActionResult(action=a, outcome=ActionOutcome.NOOP) for a in plan.noops],
            cancelled=self.cancelled,
        )
        counts = report.counts()
        logger.info(
            f"Apply finished: {counts['applied']} applied, {counts['failed']} failed, "
            f"{counts['skipped']} skipped, {counts['no-op']} unchanged"
        )
        return report

    async def _dispatch_ready(
        self,
        plan: ExecutionPlan,
        actions: Dict[ActionKey, ChangeAction],
        remaining: List[ActionKey],
        results: Dict[ActionKey, ActionResult],
        running: Dict[asyncio.Task, ActionKey],
    ) -> List[ActionKey]:
        """Start (or skip) every action whose predecessors are terminal."""
        still_waiting = []
        # Plan order is topological, so a skip propagates within one pass
        for key in remaining:
            predecessors = plan.predecessors.get(key, frozenset())
            if not all(p in results for p in predecessors):
                still_waiting.append(key)
                continue

            blocked = sorted(
                str(p[0])
                for p in predecessors
                if results[p].outcome in TERMINAL_FAILURES
            )
            if blocked:
                results[key] = await self._skip(
                    actions[key], f"Dependency did not apply: {', '.join(blocked)}"
                )
                continue

            task = asyncio.create_task(self._run_action(actions[key]))
            running[task] = key
        return still_waiting

    async def _skip(self, action: ChangeAction, reason: str) -> ActionResult:
        logger.warning(f"Skipping {action.label} of {action.id}: {reason}")
        await self._publish(EventType.SKIPPED, action, reason)
        return ActionResult(action=action, outcome=ActionOutcome.SKIPPED, error=reason)

    async def _run_action(self, action: ChangeAction) -> ActionResult:
        """Run a single action, isolating any failure to it."""
        async with self.semaphore:
            if self.cancelled:
                return await self._skip(action, "Cancelled before dispatch")

            result = ActionResult(action=action)
            start_time = time.monotonic()
            logger.info(f"Starting {action.label} of {action.id}")
            await self._publish(EventType.STARTED, action)

            try:
                await self._apply_action(action, result)
            except Exception as e:
                result.outcome = ActionOutcome.FAILED
                result.error = str(e) or type(e).__name__
                logger.error(f"Failed to {action.kind.value} {action.id}: {result.error}")
                await self._publish(EventType.FAILED, action, result.error, result.attempts)
            else:
                result.outcome = ActionOutcome.APPLIED
                logger.info(f"Completed {action.label} of {action.id}")
                await self._publish(EventType.APPLIED, action, attempt=result.attempts)
            finally:
                result.duration_seconds = time.monotonic() - start_time

            return result

    async def _apply_action(self, action: ChangeAction, result: ActionResult) -> None:
        provider = self.registry.get_provider_for_resource_type(action.id.type)
        resource_type = action.id.type

        if action.kind is ActionKind.DESTROY:
            prior = action.prior
            try:
                await self._call_provider(
                    result, provider.delete, resource_type, prior.external_id
                )
            except ResourceNotFoundError:
                logger.warning(
                    f"{action.id} ({prior.external_id}) was already gone; "
                    f"removing it from state"
                )
            current = await self.store.get(action.id)
            # A replacement may already have stored its new object
            if current is not None and current.external_id == prior.external_id:
                await self.store.delete(action.id)
            return

        attributes = await self._resolve_attributes(action)

        if action.kind is ActionKind.CREATE:
            external_id, outputs = await self._call_provider(
                result, provider.create, resource_type, attributes
            )
        elif action.kind is ActionKind.UPDATE:
            external_id = action.prior.external_id
            changes = diff_attributes(action.prior.attributes, attributes)
            if changes:
                outputs = await self._call_provider(
                    result, provider.update, resource_type, external_id, changes
                )
            else:
                # Only the dependencies changed; nothing to send remotely
                outputs = action.prior.outputs
        else:
            raise ValueError(f"Cannot execute {action.kind.value} action")

        record = StateRecord(
            id=action.id,
            attributes=attributes,
            external_id=str(external_id),
            outputs=dict(outputs or {}),
            dependencies=action.dependencies,
            updated_at=utcnow(),
        )
        try:
            await self.store.put(action.id, record)
        except StateStoreError as e:
            raise StateStoreError(
                f"{action.kind.value} succeeded remotely (external id "
                f"{external_id}) but state could not be saved: {e}"
            ) from e

    async def _resolve_attributes(self, action: ChangeAction) -> Dict[str, Any]:
        """Resolve references against the state written by predecessors."""
        targets = {reference.target for reference in iter_references(action.desired)}
        records = {target: await self.store.get(target) for target in targets}

        def lookup(reference: Reference) -> Any:
            return lookup_in_record(reference, records[reference.target], action.id)

        return resolve_value(dict(action.desired), lookup)

    async def _call_provider(self, result: ActionResult, operation, *args) -> Any:
        """
        Call a provider operation, retrying transient failures.

        Raises:
            ProviderPermanentError: When retries are exhausted
        """
        max_attempts = self.config.retry_max_attempts
        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            try:
                return await operation(*args)
            except ProviderTransientError as e:
                if attempt >= max_attempts:
                    raise ProviderPermanentError(
                        f"Giving up after {attempt} attempts: {e}"
                    ) from e
                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"Transient error for {result.action.id} "
                    f"(attempt {attempt}/{max_attempts}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await self._publish(
                    EventType.RETRYING, result.action, str(e), attempt
                )
                await asyncio.sleep(delay)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff capped at the max delay, with ±jitter."""
        delay = min(
            self.config.backoff_base_delay * (2 ** (attempt - 1)),
            self.config.backoff_max_delay,
        )
        jitter = self.config.backoff_jitter_factor
        return max(0.0, delay * (1 + (random.random() * 2 - 1) * jitter))

    async def _publish(
        self,
        event_type: EventType,
        action: ChangeAction,
        message: str = "",
        attempt: int = 0,
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ActionEvent.from_action(event_type, action, message, attempt)
            )
