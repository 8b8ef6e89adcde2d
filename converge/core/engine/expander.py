"""
Resource expander — meta-arguments to concrete instances.

    Single          → one instance, key None
    Counted(N)      → keys 0..N-1, count.index bound
    EachOver(M)     → one instance per map key / set element, each.* bound

When the count or for_each value is not known yet the expansion is
reported as pending instead of guessing; the caller surfaces it as a
distinct plan state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from converge.core.engine.resolver import Bindings, EvalContext, evaluate, evaluate_attributes
from converge.core.errors import InvalidCountError, InvalidForEachKeysError
from converge.core.models.address import InstanceAddress, InstanceKey
from converge.core.models.declaration import Counted, Declaration, EachOver, Single
from converge.core.models.expressions import Deferred, Value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceInstance:
    """One concrete expansion of a declaration for a single plan cycle."""

    address: InstanceAddress
    declaration: Declaration
    bindings: Bindings = field(default_factory=Bindings)
    attributes: dict[str, Value] = field(default_factory=dict)

    @property
    def resource_type(self) -> str:
        return self.address.resource_type

    @property
    def provider(self) -> str:
        return self.declaration.provider_alias


@dataclass(frozen=True)
class PendingExpansion:
    """A declaration whose instance set is only known after apply."""

    declaration: str
    reason: str


def count_keys(value: Any, where: str) -> list[tuple[InstanceKey, Bindings]]:
    """Keys for a resolved ``count`` value.

    Raises:
        InvalidCountError: If the value is not a non-negative whole number.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidCountError(f"{where}: count must be a whole number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidCountError(f"{where}: count must be a whole number, got {value!r}")
        value = int(value)
    if value < 0:
        raise InvalidCountError(f"{where}: count must be non-negative, got {value}")
    return [(i, Bindings(count_index=i)) for i in range(value)]


def each_keys(value: Any, where: str) -> list[tuple[InstanceKey, Bindings]]:
    """Keys for a resolved ``for_each`` value, sorted by key.

    Maps yield (key, value) pairs; sets yield each element as both key
    and value. Keys are stringified and must stay distinct. Lists are
    rejected: their order would leak into instance identity.

    Raises:
        InvalidForEachKeysError: Null input, null keys, duplicate keys,
            or a value that is neither a map nor a set.
    """
    if value is None:
        raise InvalidForEachKeysError(f"{where}: for_each value is null")

    entries: list[tuple[Any, Any]]
    if isinstance(value, Mapping):
        entries = list(value.items())
    elif isinstance(value, (set, frozenset)):
        entries = [(item, item) for item in value]
    else:
        raise InvalidForEachKeysError(
            f"{where}: for_each requires a map or a set, got {type(value).__name__}"
        )

    keyed: dict[str, Any] = {}
    for raw_key, item in entries:
        if raw_key is None:
            raise InvalidForEachKeysError(f"{where}: for_each keys must not be null")
        if isinstance(raw_key, (dict, list, set, frozenset, tuple)):
            raise InvalidForEachKeysError(f"{where}: for_each keys must be scalars, got {raw_key!r}")
        if isinstance(raw_key, bool):
            key = "true" if raw_key else "false"
        else:
            key = str(raw_key)
        if key in keyed:
            raise InvalidForEachKeysError(f"{where}: duplicate for_each key {key!r}")
        keyed[key] = item

    return [(key, Bindings(each_key=key, each_value=keyed[key])) for key in sorted(keyed)]


def expand(decl: Declaration, ctx: EvalContext) -> list[ResourceInstance] | PendingExpansion:
    """Expand one declaration into its instances.

    ``ctx`` must be able to resolve every reference the declaration makes;
    the planner guarantees this by expanding declarations in dependency order.
    """
    where = decl.address
    mode = decl.mode
    keys: list[tuple[InstanceKey, Bindings]]

    match mode:
        case Single():
            keys = [(None, Bindings())]
        case Counted(expr=expr):
            resolved = evaluate(expr, ctx.with_bindings(Bindings(), where))
            if isinstance(resolved, Deferred):
                logger.info("Expansion of %s pending: count %s", where, resolved)
                return PendingExpansion(where, f"count {resolved}")
            keys = count_keys(resolved.value, where)
        case EachOver(expr=expr):
            resolved = evaluate(expr, ctx.with_bindings(Bindings(), where))
            if isinstance(resolved, Deferred):
                logger.info("Expansion of %s pending: for_each %s", where, resolved)
                return PendingExpansion(where, f"for_each {resolved}")
            keys = each_keys(resolved.value, where)

    instances = []
    for key, bindings in keys:
        address = InstanceAddress(decl.resource_type, decl.name, key)
        attributes = evaluate_attributes(decl.attributes, ctx.with_bindings(bindings, str(address)))
        instances.append(
            ResourceInstance(
                address=address,
                declaration=decl,
                bindings=bindings,
                attributes=attributes,
            )
        )

    logger.debug("Expanded %s into %d instance(s)", where, len(instances))
    return instances
