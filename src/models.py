"""
Data model for the reconciliation engine.

Resource graph nodes, persisted state records, planned change actions and
execution outcomes. Everything here is plain data; behaviour lives in the
builder, differ, planner and executor modules.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple, Union

TYPE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class ResourceId:
    """Stable identifier of a resource: its type plus logical name."""

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> "ResourceId":
        """
        Parse a ``type.name`` string.

        Raises:
            ValueError: If the string is not a valid identifier.
        """
        parts = value.split(".")
        if len(parts) != 2:
            raise ValueError(f"Invalid resource identifier '{value}': expected type.name")
        resource_type, name = parts
        if not TYPE_PATTERN.match(resource_type):
            raise ValueError(f"Invalid resource type '{resource_type}' in '{value}'")
        if not NAME_PATTERN.match(name):
            raise ValueError(f"Invalid resource name '{name}' in '{value}'")
        return cls(resource_type, name)


@dataclass(frozen=True)
class Reference:
    """
    Reference to another resource.

    With no attribute it stands for the target's external id; otherwise for
    one of the target's attributes or provider outputs (dotted paths walk
    into nested mappings).
    """

    target: ResourceId
    attribute: Optional[str] = None

    def __str__(self) -> str:
        if self.attribute:
            return f"${{{self.target}.{self.attribute}}}"
        return f"${{{self.target}}}"


@dataclass(frozen=True)
class Template:
    """A string with embedded references, joined once they are all known."""

    parts: Tuple[Union[str, Reference], ...]

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)

    @property
    def references(self) -> List[Reference]:
        return [part for part in self.parts if isinstance(part, Reference)]


class Unknown:
    """Placeholder for a value that is only known after apply."""

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = Unknown()


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in an attribute value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


@dataclass(frozen=True)
class ResourceNode:
    """A desired resource, as parsed from the desired-state document."""

    id: ResourceId
    attributes: Mapping[str, Any]
    dependencies: FrozenSet[ResourceId] = frozenset()


@dataclass(frozen=True)
class StateRecord:
    """Last-known-applied state of one resource."""

    id: ResourceId
    attributes: Dict[str, Any]
    external_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: Tuple[ResourceId, ...] = ()
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "type": self.id.type,
            "name": self.id.name,
            "external_id": self.external_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": [str(dep) for dep in self.dependencies],
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        """
        Deserialize from the dict produced by ``to_dict``.

        Raises:
            KeyError, ValueError: If the data is malformed.
        """
        return cls(
            id=ResourceId(data["type"], data["name"]),
            attributes=dict(data.get("attributes") or {}),
            external_id=str(data["external_id"]),
            outputs=dict(data.get("outputs") or {}),
            dependencies=tuple(
                ResourceId.parse(dep) for dep in data.get("dependencies") or []
            ),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class ActionKind(Enum):
    """Kind of change planned for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"


class ChangeType(Enum):
    """How a single attribute changes."""

    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class AttributeChange:
    """Attribute-level difference between stored and desired state."""

    key: str
    change: ChangeType
    old: Any = None
    new: Any = None


ActionKey = Tuple[ResourceId, ActionKind]


@dataclass(frozen=True)
class ChangeAction:
    """
    Planned action for one resource.

    ``desired`` holds the unresolved desired attributes (references
    included); the executor resolves them at dispatch time. ``changes``
    reflect what was known when planning.
    """

    id: ResourceId
    kind: ActionKind
    changes: Tuple[AttributeChange, ...] = ()
    desired: Mapping[str, Any] = field(default_factory=dict)
    prior: Optional[StateRecord] = None
    dependencies: Tuple[ResourceId, ...] = ()
    replacement: bool = False

    @property
    def key(self) -> ActionKey:
        return (self.id, self.kind)

    @property
    def is_change(self) -> bool:
        return self.kind is not ActionKind.NOOP

    @property
    def label(self) -> str:
        """Human-readable action name."""
        if self.replacement:
            return f"replace ({self.kind.value})"
        return self.kind.value


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Ordered, immutable set of actions produced by the planner.

    ``predecessors`` maps each action key to the keys that must reach a
    terminal state first. A plan can be executed only once.
    """

    actions: Tuple[ChangeAction, ...]
    predecessors: Mapping[ActionKey, FrozenSet[ActionKey]]
    noops: Tuple[ChangeAction, ...] = ()
    destroy: bool = False
    target: Optional[ResourceId] = None
    _consumed: List[bool] = field(
        default_factory=lambda: [False], repr=False, compare=False
    )

    @property
    def has_changes(self) -> bool:
        return bool(self.actions)

    def index(self, resource_id: ResourceId, kind: ActionKind) -> int:
        """Position of an action in the plan."""
        for position, action in enumerate(self.actions):
            if action.id == resource_id and action.kind is kind:
                return position
        raise KeyError(f"No {kind.value} action for {resource_id} in plan")

    def summary(self) -> Dict[str, int]:
        """Count of planned actions by kind."""
        counts = {kind.value: 0 for kind in ActionKind}
        for action in self.actions:
            counts[action.kind.value] += 1
        counts[ActionKind.NOOP.value] = len(self.noops)
        return counts

    def consume(self) -> None:
        """
        Mark the plan as executed.

        Raises:
            RuntimeError: If the plan was already executed.
        """
        if self._consumed[0]:
            raise RuntimeError("Execution plan has already been applied")
        self._consumed[0] = True


class ActionOutcome(Enum):
    """Terminal state of an action after execution."""

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "no-op"


@dataclass
class ActionResult:
    """Outcome of executing one action."""

    action: ChangeAction
    outcome: ActionOutcome = ActionOutcome.SKIPPED
    error: Optional[str] = None
    attempts: int = 0
    duration_seconds: float = 0.0


@dataclass
class ApplyReport:
    """Per-action outcomes of an apply, in plan order."""

    results: List[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return all(
            result.outcome in (ActionOutcome.APPLIED, ActionOutcome.NOOP)
            for result in self.results
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in ActionOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def outcome_of(self, resource_id: ResourceId, kind: Optional[ActionKind] = None):
        """Outcome for a resource (first matching action when kind is omitted)."""
        for result in self.results:
            if result.action.id == resource_id and (
                kind is None or result.action.kind is kind
            ):
                return result.outcome
        raise KeyError(f"No result for {resource_id}")

    def failures(self) -> List[ActionResult]:
        return [r for r in self.results if r.outcome is ActionOutcome.FAILED]
