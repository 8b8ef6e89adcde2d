"""
Variable type constraints.

Grammar:

    type   := "string" | "number" | "bool" | "any"
            | "list(" type ")" | "set(" type ")" | "map(" type ")"

Values coming from files are already structured (YAML) and are checked
directly. Raw strings from the environment or ``--var`` flags are taken
literally for ``string`` and parsed as YAML for every other constraint.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import yaml

from converge.core.errors import ConfigError, TypeMismatchError

PRIMITIVES = ("string", "number", "bool", "any")
COLLECTIONS = ("list", "set", "map")

_COLLECTION_RE = re.compile(r"^(list|set|map)\((.*)\)$")


@dataclass(frozen=True)
class TypeConstraint:
    kind: str
    element: TypeConstraint | None = None

    def __str__(self) -> str:
        if self.element is None:
            return self.kind
        return f"{self.kind}({self.element})"


def parse_type(text: str) -> TypeConstraint:
    """Parse a type constraint string.

    Raises:
        ConfigError: For unknown or malformed types.
    """
    text = (text or "any").strip().replace(" ", "")
    if text in PRIMITIVES:
        return TypeConstraint(text)
    if text in COLLECTIONS:
        return TypeConstraint(text, TypeConstraint("any"))

    match = _COLLECTION_RE.match(text)
    if match is None:
        raise ConfigError(f"Unknown type constraint: {text!r}")
    return TypeConstraint(match.group(1), parse_type(match.group(2)))


def _describe(value: Any) -> str:
    return f"got {type(value).__name__} {value!r}"


def convert(value: Any, constraint: TypeConstraint, *, name: str, source: str = "") -> Any:
    """Check ``value`` against ``constraint`` and return its typed form.

    Raises:
        TypeMismatchError: If the value cannot satisfy the constraint.
    """

    def fail(detail: str) -> TypeMismatchError:
        return TypeMismatchError(name, str(constraint), detail, source)

    kind = constraint.kind

    if kind == "any":
        return value

    if kind == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise fail(_describe(value))

    if kind == "number":
        if isinstance(value, bool):
            raise fail(_describe(value))
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            for cast in (int, float):
                try:
                    return cast(value)
                except ValueError:
                    continue
        raise fail(_describe(value))

    if kind == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise fail(_describe(value))

    element = constraint.element or TypeConstraint("any")

    if kind == "list":
        if not isinstance(value, (list, tuple)):
            raise fail(_describe(value))
        return [convert(v, element, name=name, source=source) for v in value]

    if kind == "set":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise fail(_describe(value))
        items = [convert(v, element, name=name, source=source) for v in value]
        try:
            return frozenset(items)
        except TypeError:
            raise fail("set elements must be primitive values") from None

    if kind == "map":
        if not isinstance(value, dict):
            raise fail(_describe(value))
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise fail(f"map keys must be strings, got {key!r}")
            out[key] = convert(item, element, name=name, source=source)
        return out

    raise ConfigError(f"Unknown type constraint: {constraint}")


def convert_raw(text: str, constraint: TypeConstraint, *, name: str, source: str = "") -> Any:
    """Convert an unparsed string (environment, CLI) to a typed value."""
    if constraint.kind == "string":
        return text
    try:
        parsed = yaml.safe_load(text) if text.strip() else None
    except yaml.YAMLError as e:
        raise TypeMismatchError(name, str(constraint), f"unparseable value: {e}", source) from e
    if parsed is None and constraint.kind != "any":
        raise TypeMismatchError(name, str(constraint), f"got empty value {text!r}", source)
    return convert(parsed, constraint, name=name, source=source)
