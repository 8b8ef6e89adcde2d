"""
Expression resolution — turns expression trees into Known or Deferred values.

Rule: anything computed from a Deferred input is itself Deferred. There
is no partial knowledge inside a single expression; a list with one
unknown element is an unknown list.

Resource reads go through a lookup callback supplied by the caller. The
planner answers from this cycle's planned instances and prior state; the
scheduler answers from live state during apply.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from converge.core.errors import ConfigError, DependencyCycleError, UnknownReferenceError
from converge.core.models.expressions import (
    CountIndex,
    Deferred,
    EachKey,
    EachValue,
    Expression,
    Format,
    Known,
    ListExpr,
    Literal,
    LocalRef,
    MapExpr,
    Path,
    ResourceRef,
    SetExpr,
    Value,
    VarRef,
)

ResourceLookup = Callable[[ResourceRef], Value]


@dataclass(frozen=True)
class Bindings:
    """Per-instance names available to expressions (count.index, each.*)."""

    count_index: int | None = None
    each_key: str | None = None
    each_value: Any = None


@dataclass(frozen=True)
class EvalContext:
    variables: Mapping[str, Any] = field(default_factory=dict)
    locals: Mapping[str, Expression] = field(default_factory=dict)
    lookup: ResourceLookup | None = None
    bindings: Bindings = field(default_factory=Bindings)
    where: str = ""

    def with_bindings(self, bindings: Bindings, where: str = "") -> EvalContext:
        return replace(self, bindings=bindings, where=where or self.where)


def get_path(value: Any, path: Path, what: str) -> Any:
    """Walk ``path`` into nested maps and lists.

    Raises:
        UnknownReferenceError: If a segment does not exist.
    """
    current = value
    for segment in path:
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, dict) and str(segment) in current:
            current = current[str(segment)]
        elif isinstance(current, (list, tuple)) and isinstance(segment, int) and segment < len(current):
            current = current[segment]
        else:
            raise UnknownReferenceError(f"{what} has no attribute path {'.'.join(map(str, path))!r}")
    return current


def _first_deferred(values: list[Value]) -> Deferred | None:
    for value in values:
        if isinstance(value, Deferred):
            return value
    return None


def evaluate(expr: Expression, ctx: EvalContext, _locals_stack: tuple[str, ...] = ()) -> Value:
    """Evaluate an expression tree.

    Raises:
        UnknownReferenceError: Undefined variable, local, or resource.
        DependencyCycleError: Locals that reference each other in a loop.
    """
    where = f" in {ctx.where}" if ctx.where else ""

    if isinstance(expr, Literal):
        return Known(copy.deepcopy(expr.value))

    if isinstance(expr, VarRef):
        if expr.name not in ctx.variables:
            raise UnknownReferenceError(f"Reference to undeclared variable var.{expr.name}{where}")
        return Known(ctx.variables[expr.name])

    if isinstance(expr, LocalRef):
        if expr.name not in ctx.locals:
            raise UnknownReferenceError(f"Reference to undeclared local local.{expr.name}{where}")
        if expr.name in _locals_stack:
            cycle = [f"local.{n}" for n in _locals_stack[_locals_stack.index(expr.name):]]
            raise DependencyCycleError([*cycle, f"local.{expr.name}"])
        local_ctx = replace(ctx, bindings=Bindings(), where=f"local.{expr.name}")
        return evaluate(ctx.locals[expr.name], local_ctx, (*_locals_stack, expr.name))

    if isinstance(expr, CountIndex):
        if ctx.bindings.count_index is None:
            raise UnknownReferenceError(f"count.index used outside a counted resource{where}")
        return Known(ctx.bindings.count_index)

    if isinstance(expr, EachKey):
        if ctx.bindings.each_key is None:
            raise UnknownReferenceError(f"each.key used outside a for_each resource{where}")
        return Known(ctx.bindings.each_key)

    if isinstance(expr, EachValue):
        if ctx.bindings.each_key is None:
            raise UnknownReferenceError(f"each.value used outside a for_each resource{where}")
        return Known(get_path(ctx.bindings.each_value, expr.path, "each.value"))

    if isinstance(expr, ResourceRef):
        if ctx.lookup is None:
            raise UnknownReferenceError(f"Resource reference {expr} not allowed here{where}")
        return ctx.lookup(expr)

    if isinstance(expr, (ListExpr, SetExpr)):
        values = [evaluate(item, ctx, _locals_stack) for item in expr.items]
        deferred = _first_deferred(values)
        if deferred is not None:
            return deferred
        items = [v.value for v in values]  # type: ignore[union-attr]
        if isinstance(expr, SetExpr):
            try:
                return Known(frozenset(items))
            except TypeError:
                raise ConfigError(f"Set elements must be primitive values{where}") from None
        return Known(items)

    if isinstance(expr, MapExpr):
        values = [evaluate(item, ctx, _locals_stack) for _, item in expr.items]
        deferred = _first_deferred(values)
        if deferred is not None:
            return deferred
        return Known({key: v.value for (key, _), v in zip(expr.items, values)})  # type: ignore[union-attr]

    if isinstance(expr, Format):
        values = [evaluate(arg, ctx, _locals_stack) for arg in expr.args]
        deferred = _first_deferred(values)
        if deferred is not None:
            return deferred
        try:
            return Known(expr.template.format(*(v.value for v in values)))  # type: ignore[union-attr]
        except (IndexError, KeyError, ValueError) as e:
            raise ConfigError(f"Invalid format template {expr.template!r}{where}: {e}") from e

    raise TypeError(f"Not an expression: {expr!r}")


def evaluate_attributes(attributes: Mapping[str, Expression], ctx: EvalContext) -> dict[str, Value]:
    """Evaluate every attribute expression independently."""
    return {name: evaluate(expr, ctx) for name, expr in attributes.items()}


def deferred_attributes(values: Mapping[str, Value]) -> list[str]:
    """Names of attributes whose value is not yet known."""
    return sorted(name for name, value in values.items() if isinstance(value, Deferred))


def known_attributes(values: Mapping[str, Value]) -> dict[str, Any]:
    """Unwrap a fully known attribute mapping.

    Raises:
        ValueError: If any attribute is still Deferred.
    """
    pending = deferred_attributes(values)
    if pending:
        raise ValueError(f"Attributes not yet known: {', '.join(pending)}")
    return {name: value.value for name, value in values.items()}  # type: ignore[union-attr]
