"""
Expression trees and resolved values.

Declarations carry attribute expressions, not values. An expression is a
small immutable tree; evaluating it (see ``converge.core.engine.resolver``)
yields either ``Known(value)`` or ``Deferred(reason)`` when the value can
only be learned after a provider call.

Reference syntax accepted by ``parse_reference``:

    var.region                      variable
    local.prefix                    local value
    count.index                     index of a count expansion
    each.key / each.value[.path]    entry of a for_each expansion
    compute_instance.web[0].id      attribute of another instance
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from converge.core.errors import ConfigError
from converge.core.models.address import InstanceAddress, split_address

# ── Resolved values ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Known:
    """A value that is fully known at plan time."""

    value: Any


@dataclass(frozen=True)
class Deferred:
    """A value that is only known after apply."""

    reason: str

    def __str__(self) -> str:
        return f"(known after apply: {self.reason})"


Value = Known | Deferred


# ── Expression nodes ────────────────────────────────────────────────

Path = tuple[str | int, ...]


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class VarRef:
    name: str


@dataclass(frozen=True)
class LocalRef:
    name: str


@dataclass(frozen=True)
class ResourceRef:
    """Read of another instance's attribute (or the whole instance)."""

    address: InstanceAddress
    path: Path = ()

    def __str__(self) -> str:
        suffix = "".join(f".{p}" for p in self.path)
        return f"{self.address}{suffix}"


@dataclass(frozen=True)
class CountIndex:
    pass


@dataclass(frozen=True)
class EachKey:
    pass


@dataclass(frozen=True)
class EachValue:
    path: Path = ()


@dataclass(frozen=True)
class ListExpr:
    items: tuple[Expression, ...]


@dataclass(frozen=True)
class SetExpr:
    items: tuple[Expression, ...]


@dataclass(frozen=True)
class MapExpr:
    items: tuple[tuple[str, Expression], ...]


@dataclass(frozen=True)
class Format:
    """``template.format(*args)`` over evaluated arguments."""

    template: str
    args: tuple[Expression, ...]


Expression = (
    Literal
    | VarRef
    | LocalRef
    | ResourceRef
    | CountIndex
    | EachKey
    | EachValue
    | ListExpr
    | SetExpr
    | MapExpr
    | Format
)


# ── Tree helpers ────────────────────────────────────────────────────


def children(expr: Expression) -> tuple[Expression, ...]:
    if isinstance(expr, (ListExpr, SetExpr)):
        return expr.items
    if isinstance(expr, MapExpr):
        return tuple(value for _, value in expr.items)
    if isinstance(expr, Format):
        return expr.args
    return ()


def walk(expr: Expression) -> Iterator[Expression]:
    """Depth-first iteration over every node of an expression tree."""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(children(node)))


def resource_refs(expr: Expression) -> list[ResourceRef]:
    return [node for node in walk(expr) if isinstance(node, ResourceRef)]


def local_refs(expr: Expression) -> list[str]:
    return [node.name for node in walk(expr) if isinstance(node, LocalRef)]


def to_data(expr: Expression) -> Any:
    """JSON-compatible description of an expression (for hashing and display)."""
    if isinstance(expr, Literal):
        return {"literal": expr.value}
    if isinstance(expr, VarRef):
        return {"ref": f"var.{expr.name}"}
    if isinstance(expr, LocalRef):
        return {"ref": f"local.{expr.name}"}
    if isinstance(expr, ResourceRef):
        return {"ref": str(expr)}
    if isinstance(expr, CountIndex):
        return {"ref": "count.index"}
    if isinstance(expr, EachKey):
        return {"ref": "each.key"}
    if isinstance(expr, EachValue):
        return {"ref": ".".join(["each.value", *map(str, expr.path)])}
    if isinstance(expr, ListExpr):
        return {"list": [to_data(i) for i in expr.items]}
    if isinstance(expr, SetExpr):
        return {"set": [to_data(i) for i in expr.items]}
    if isinstance(expr, MapExpr):
        return {"map": {k: to_data(v) for k, v in expr.items}}
    if isinstance(expr, Format):
        return {"format": expr.template, "args": [to_data(a) for a in expr.args]}
    raise TypeError(f"Not an expression: {expr!r}")


# ── Reference parsing ───────────────────────────────────────────────


def _parse_path(text: str) -> Path:
    if not text:
        return ()
    parts: list[str | int] = []
    for segment in text.split("."):
        if not segment:
            raise ConfigError(f"Empty path segment in {text!r}")
        parts.append(int(segment) if segment.isdigit() else segment)
    return tuple(parts)


def parse_reference(text: str) -> Expression:
    """Parse a dotted reference into an expression node.

    Raises:
        ConfigError: If the reference is malformed.
    """
    text = text.strip()
    head, _, tail = text.partition(".")

    if head == "var":
        if not tail or "." in tail:
            raise ConfigError(f"Invalid variable reference: {text!r}")
        return VarRef(tail)
    if head == "local":
        if not tail or "." in tail:
            raise ConfigError(f"Invalid local reference: {text!r}")
        return LocalRef(tail)
    if head == "count":
        if tail != "index":
            raise ConfigError(f"Invalid count reference: {text!r}")
        return CountIndex()
    if head == "each":
        attr, _, rest = tail.partition(".")
        if attr == "key" and not rest:
            return EachKey()
        if attr == "value":
            return EachValue(_parse_path(rest))
        raise ConfigError(f"Invalid each reference: {text!r}")

    address, rest = split_address(text)
    return ResourceRef(address, _parse_path(rest))
