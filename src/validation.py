"""
Resource type schemas are JSON Schema (Draft 7) documents.

Desired attributes are checked against them while the graph is built.
Values that are still references cannot be type checked until the
executor resolves them, so errors located under one are ignored.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

from models import Reference, Template

logger = logging.getLogger(__name__)

_DEFERRED = (Reference, Template)


def validate_type_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Check that a provider's type schema is itself valid Draft 7."""
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"
    return True, None


def _is_deferred(instance: Any, path) -> bool:
    """True if any value along ``path`` is an unresolved reference."""
    current = instance
    for part in path:
        if isinstance(current, _DEFERRED):
            return True
        try:
            current = current[part]
        except (KeyError, IndexError, TypeError):
            return False
    return isinstance(current, _DEFERRED)


def _location(error) -> str:
    return ".".join(str(part) for part in error.absolute_path) or "(root)"


def validate_attributes_against_schema(
    attributes: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate desired attributes against a resource type schema.

    Missing required attributes are still reported when siblings hold
    references.

    Returns:
        Tuple of (is_valid, error_message); messages for several
        violations are joined with "; " in attribute order.
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    problems = sorted(
        (
            (_location(error), error.message)
            for error in validator.iter_errors(attributes)
            if not _is_deferred(attributes, error.absolute_path)
        ),
    )
    if not problems:
        return True, None

    logger.debug(f"{len(problems)} schema violation(s) in desired attributes")
    return False, "; ".join(f"{where}: {message}" for where, message in problems)
