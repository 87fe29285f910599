"""
Desired-state documents.

Loads YAML or JSON documents, collects variable values from the command
line, variable files and the environment, and turns ``${...}``
expressions in attribute values into substituted values, references and
templates.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import yaml

from errors import ParseError
from models import NAME_PATTERN, TYPE_PATTERN, Reference, ResourceId, Template

logger = logging.getLogger(__name__)

EXPRESSION_PATTERN = re.compile(r"\$\{([^}]*)\}")
ENV_VAR_PREFIX = "CONVERGE_VAR_"

_MISSING = object()


@dataclass
class VariableDeclaration:
    """A named input declared by the document."""

    name: str
    default: Any = _MISSING
    description: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING


@dataclass
class DesiredStateDocument:
    """Raw desired-state document: resource blocks plus variable declarations."""

    resources: List[Dict[str, Any]] = field(default_factory=list)
    variables: Dict[str, VariableDeclaration] = field(default_factory=dict)
    source: Optional[str] = None


def _load_structured(text: str, source: Optional[str], fmt: str) -> Any:
    try:
        if fmt == "json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ParseError(f"Malformed {fmt.upper()} document: {e}", source) from e


def _format_for(path: Union[str, Path]) -> str:
    return "json" if str(path).endswith(".json") else "yaml"


def parse_document(
    text: str, source: Optional[str] = None, fmt: str = "yaml"
) -> DesiredStateDocument:
    """
    Parse a desired-state document.

    Args:
        text: Document contents
        source: Name used in error messages (usually the file path)
        fmt: 'yaml' or 'json'

    Returns:
        The parsed document

    Raises:
        ParseError: If the document is malformed
    """
    data = _load_structured(text, source, fmt)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("Document must be a mapping", source)

    unknown = set(data) - {"variables", "resources"}
    if unknown:
        raise ParseError(
            f"Unknown top-level keys: {', '.join(sorted(unknown))}", source
        )

    variables: Dict[str, VariableDeclaration] = {}
    raw_variables = data.get("variables") or {}
    if not isinstance(raw_variables, dict):
        raise ParseError("'variables' must be a mapping", source)
    for name, declaration in raw_variables.items():
        if not isinstance(name, str) or not TYPE_PATTERN.match(name):
            raise ParseError(f"Invalid variable name: {name!r}", source)
        if declaration is None:
            declaration = {}
        if not isinstance(declaration, dict):
            raise ParseError(f"Variable '{name}' must be a mapping", source)
        variables[name] = VariableDeclaration(
            name=name,
            default=declaration.get("default", _MISSING),
            description=declaration.get("description"),
        )

    resources = data.get("resources") or []
    if not isinstance(resources, list):
        raise ParseError("'resources' must be a list of resource blocks", source)

    return DesiredStateDocument(resources=resources, variables=variables, source=source)


def load_document(path: Union[str, Path]) -> DesiredStateDocument:
    """
    Load a desired-state document from a file.

    Raises:
        ParseError: If the file cannot be read or is malformed
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"Cannot read document: {e}", str(path)) from e
    return parse_document(text, source=str(path), fmt=_format_for(path))


def load_variable_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load variable values from a YAML or JSON file.

    Raises:
        ParseError: If the file is unreadable or not a mapping
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"Cannot read variable file: {e}", str(path)) from e
    data = _load_structured(text, str(path), _format_for(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError("Variable file must be a mapping", str(path))
    return data


def parse_variable_assignments(assignments: Sequence[str]) -> Dict[str, str]:
    """
    Parse ``NAME=VALUE`` assignments given on the command line.

    Raises:
        ParseError: If an assignment has no '='
    """
    values = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name.strip():
            raise ParseError(
                f"Invalid variable assignment '{assignment}': expected NAME=VALUE"
            )
        values[name.strip()] = value
    return values


def variables_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Collect ``CONVERGE_VAR_<NAME>`` environment variables."""
    environ = os.environ if environ is None else environ
    return {
        key[len(ENV_VAR_PREFIX) :]: value
        for key, value in environ.items()
        if key.startswith(ENV_VAR_PREFIX) and len(key) > len(ENV_VAR_PREFIX)
    }


def resolve_variables(
    declarations: Mapping[str, VariableDeclaration],
    *sources: Mapping[str, Any],
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Determine the value of every declared variable.

    Sources are consulted in order; the first one defining a variable wins.
    Declared defaults apply last.

    Raises:
        ParseError: If a declared variable has no value
    """
    values: Dict[str, Any] = {}
    for name, declaration in declarations.items():
        for supplied in sources:
            if name in supplied:
                values[name] = supplied[name]
                break
        else:
            if not declaration.has_default:
                raise ParseError(f"No value supplied for variable '{name}'", source)
            values[name] = declaration.default

    for supplied in sources:
        for name in supplied:
            if name not in declarations:
                logger.warning(f"Ignoring value for undeclared variable '{name}'")
    return values


def _parse_expression(
    expression: str, variables: Mapping[str, Any], location: str
) -> Any:
    expression = expression.strip()
    if expression.startswith("var."):
        name = expression[len("var.") :]
        if name not in variables:
            raise ParseError(f"{location}: unknown variable '{name}'")
        return variables[name]

    parts = expression.split(".", 2)
    if len(parts) < 2:
        raise ParseError(f"{location}: invalid expression '${{{expression}}}'")
    resource_type, name = parts[0], parts[1]
    if not TYPE_PATTERN.match(resource_type) or not NAME_PATTERN.match(name):
        raise ParseError(f"{location}: invalid reference '${{{expression}}}'")
    attribute = parts[2] if len(parts) == 3 else None
    if attribute is not None and not attribute:
        raise ParseError(f"{location}: invalid reference '${{{expression}}}'")
    return Reference(ResourceId(resource_type, name), attribute)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def interpolate(value: Any, variables: Mapping[str, Any], location: str = "") -> Any:
    """
    Substitute variables and turn resource references into Reference values.

    A string that consists of a single expression takes the expression's
    value as-is; expressions embedded in longer strings are joined as text
    (or kept as a Template while they contain references).

    Raises:
        ParseError: On unknown variables or malformed expressions
    """
    if isinstance(value, dict):
        return {
            key: interpolate(item, variables, f"{location}.{key}" if location else str(key))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            interpolate(item, variables, f"{location}[{index}]")
            for index, item in enumerate(value)
        ]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = EXPRESSION_PATTERN.fullmatch(value)
    if whole:
        return _parse_expression(whole.group(1), variables, location)

    parts: List[Union[str, Reference]] = []
    position = 0
    for match in EXPRESSION_PATTERN.finditer(value):
        if match.start() > position:
            parts.append(value[position : match.start()])
        resolved = _parse_expression(match.group(1), variables, location)
        parts.append(resolved if isinstance(resolved, Reference) else _stringify(resolved))
        position = match.end()
    if position < len(value):
        parts.append(value[position:])

    # Merge adjacent literal chunks
    merged: List[Union[str, Reference]] = []
    for part in parts:
        if merged and isinstance(part, str) and isinstance(merged[-1], str):
            merged[-1] = merged[-1] + part
        else:
            merged.append(part)

    if all(isinstance(part, str) for part in merged):
        return "".join(merged)
    return Template(tuple(merged))
