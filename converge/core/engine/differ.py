"""
Diff engine — desired instance vs. state record → one action.

Action priority:
    1. record only                                  → destroy
    2. desired only                                 → create
    3. equal after ignore_changes                   → no-op
    4. differences, all updatable in place          → update
    5. a difference the provider cannot update      → replace
    6. destroy/replace under prevent_destroy        → ProtectedResourceError

Only attributes present in the desired configuration are compared;
attributes the provider computed (ids, self links) live only in state
and never cause a diff. Comparison is structural: sets compare as sets,
lists position by position, and bools never equal numbers.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from converge.core.engine.expander import ResourceInstance
from converge.core.errors import ProtectedResourceError
from converge.core.models.expressions import Deferred, Value
from converge.core.models.state import StateRecord

ReplacementCheck = Callable[[str, str], bool]


class ActionKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "no-op"

    @property
    def destroys(self) -> bool:
        """Whether the action removes an existing object."""
        return self in (ActionKind.DESTROY, ActionKind.REPLACE)


# ── Structural comparison ───────────────────────────────────────────


def normalize(value: Any) -> Any:
    """JSON-compatible form of a resolved value (sets become sorted lists)."""
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((normalize(v) for v in value), key=_canonical)
    return value


def _canonical(value: Any) -> str:
    return json.dumps(normalize(value), sort_keys=True, default=str)


def values_equal(left: Any, right: Any) -> bool:
    """Deep structural equality."""
    if isinstance(left, (set, frozenset)) or isinstance(right, (set, frozenset)):
        collections = (list, tuple, set, frozenset)
        if not (isinstance(left, collections) and isinstance(right, collections)):
            return False
        return {_canonical(v) for v in left} == {_canonical(v) for v in right}
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    return left == right


def _strip(value: Any, path: list[str]) -> Any:
    """Copy of ``value`` with the nested map entry at ``path`` removed."""
    if not path or not isinstance(value, dict):
        return value
    head, rest = path[0], path[1:]
    if head not in value:
        return value
    out = dict(value)
    if rest:
        out[head] = _strip(out[head], rest)
    else:
        del out[head]
    return out


def _graft(value: Any, prior: Any, path: list[str]) -> Any:
    """Copy of ``value`` with the nested map entry at ``path`` taken from ``prior``."""
    if not path or not isinstance(value, dict) or not isinstance(prior, dict):
        return value
    head, rest = path[0], path[1:]
    out = dict(value)
    if rest:
        if head in out and head in prior:
            out[head] = _graft(out[head], prior[head], rest)
    elif head in prior:
        out[head] = prior[head]
    else:
        out.pop(head, None)
    return out


def keep_ignored(name: str, value: Any, before: Any, ignore_changes: Iterable[str]) -> Any:
    """Desired ``value`` of attribute ``name`` with ignored nested paths kept as ``before``."""
    for path in sorted(ignore_changes):
        head, _, rest = path.partition(".")
        if head == name and rest:
            value = _graft(value, before, rest.split("."))
    return value


# ── Instance diff ───────────────────────────────────────────────────


@dataclass
class AttributeChange:
    attribute: str
    before: Any
    after: Any                      # resolved value or Deferred
    requires_replacement: bool = False

    def to_dict(self) -> dict[str, Any]:
        after = str(self.after) if isinstance(self.after, Deferred) else normalize(self.after)
        return {
            "attribute": self.attribute,
            "before": self.before,
            "after": after,
            "requires_replacement": self.requires_replacement,
        }


@dataclass
class InstanceDiff:
    action: ActionKind
    changes: list[AttributeChange] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


def changed_attributes(
    desired: dict[str, Value],
    prior: dict[str, Any],
    ignore_changes: Iterable[str] = (),
) -> list[tuple[str, Any, Any]]:
    """(name, before, after) for every desired attribute that differs."""
    ignored = set(ignore_changes)
    if "all" in ignored:
        return []

    changes = []
    for name in sorted(desired):
        if name in ignored:
            continue
        value = desired[name]
        before = prior.get(name)
        if isinstance(value, Deferred):
            changes.append((name, before, value))
            continue

        after = value.value
        left, right = after, before
        for path in ignored:
            head, _, rest = path.partition(".")
            if head == name and rest:
                left = _strip(left, rest.split("."))
                right = _strip(right, rest.split("."))
        if not values_equal(left, right):
            changes.append((name, before, after))
    return changes


def diff_instance(
    instance: ResourceInstance | None,
    record: StateRecord | None,
    *,
    requires_replacement: ReplacementCheck,
    forced_replace: str | None = None,
) -> InstanceDiff:
    """Decide the action for one instance address.

    ``forced_replace`` carries the reason when a replace_triggered_by
    trigger fired; it turns no-op and update into replace.
    """
    if instance is None and record is None:
        raise ValueError("diff_instance needs a desired instance or a state record")
    if instance is None:
        return InstanceDiff(ActionKind.DESTROY, reasons=["no longer in configuration"])
    if record is None:
        return InstanceDiff(ActionKind.CREATE)

    policy = instance.declaration.lifecycle
    changes = [
        AttributeChange(
            attribute=name,
            before=before,
            after=after,
            requires_replacement=requires_replacement(instance.resource_type, name),
        )
        for name, before, after in changed_attributes(
            instance.attributes, record.attributes, policy.ignore_changes
        )
    ]

    reasons = [f"{c.attribute} cannot be updated in place" for c in changes if c.requires_replacement]
    if forced_replace:
        reasons.append(forced_replace)

    if reasons:
        return InstanceDiff(ActionKind.REPLACE, changes, reasons)
    if changes:
        return InstanceDiff(ActionKind.UPDATE, changes)
    return InstanceDiff(ActionKind.NOOP)


def check_prevent_destroy(entries: Iterable[tuple[str, ActionKind, bool]]) -> None:
    """Fail closed when a destroying action targets a protected instance.

    Args:
        entries: (address, action, prevent_destroy) for every planned action.

    Raises:
        ProtectedResourceError: Listing every violating address.
    """
    violations = [address for address, action, protected in entries if protected and action.destroys]
    if violations:
        raise ProtectedResourceError(violations)
