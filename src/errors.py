"""
Error taxonomy for the reconciliation engine.

Planning errors abort an operation before anything remote or persisted is
touched. Provider errors are isolated to the action that raised them.
"""

from typing import List, Optional, Sequence


class ConvergeError(Exception):
    """Base class for all engine errors."""


# ==================== Planning Errors ====================


class PlanningError(ConvergeError):
    """Raised during graph building, diffing or planning. Always fatal."""


class ParseError(PlanningError):
    """The desired-state document is malformed or fails schema validation."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class DuplicateIdentifierError(PlanningError):
    """Two resources in one document share an identifier."""

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"Duplicate resource identifier: {identifier}")


class UnresolvedReferenceError(PlanningError):
    """A reference points at a resource or attribute that does not exist."""

    def __init__(self, reference, referrer=None, detail: str = ""):
        self.reference = reference
        self.referrer = referrer
        message = f"Unresolved reference {reference}"
        if referrer is not None:
            message += f" in {referrer}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class CyclicDependencyError(PlanningError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence):
        self.cycle: List = list(cycle)
        members = " -> ".join(str(member) for member in self.cycle)
        super().__init__(f"Dependency cycle detected: {members}")


# ==================== Provider Errors ====================


class ProviderError(ConvergeError):
    """A Provider Interface call failed."""


class ProviderTransientError(ProviderError):
    """A provider call failed in a way that may succeed if retried."""


class ProviderPermanentError(ProviderError):
    """A provider call failed and will not be retried."""


class ResourceNotFoundError(ProviderError):
    """The remote object does not exist."""


# ==================== State Errors ====================


class StateStoreError(ConvergeError):
    """The state store could not be read or written."""


class StateVersionError(StateStoreError):
    """The persisted state uses a format version this engine cannot read."""
