"""
Declarations — authored, unexpanded resource definitions.

A Configuration is what the configuration source hands to the engine:
resource declarations, variable declarations, locals and settings. Nothing
here is evaluated yet; expressions are resolved later by the planner.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from converge.core.errors import ConfigError
from converge.core.models.address import InstanceAddress
from converge.core.models.expressions import Expression, to_data
from converge.core.models.settings import EngineSettings


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()


@dataclass(frozen=True)
class LifecyclePolicy:
    """Lifecycle flags applied to every instance of a declaration."""

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()
    replace_triggered_by: tuple[InstanceAddress, ...] = ()

    @property
    def ignore_all(self) -> bool:
        return "all" in self.ignore_changes


# ── Expansion mode ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Single:
    """No meta-argument: exactly one instance with an empty key."""


@dataclass(frozen=True)
class Counted:
    expr: Expression


@dataclass(frozen=True)
class EachOver:
    expr: Expression


ExpansionMode = Single | Counted | EachOver


@dataclass(frozen=True)
class Declaration:
    """One authored resource block."""

    resource_type: str
    name: str
    attributes: dict[str, Expression] = field(default_factory=dict)
    count: Expression | None = None
    for_each: Expression | None = None
    depends_on: tuple[InstanceAddress, ...] = ()
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    provider: str | None = None

    def __post_init__(self) -> None:
        if self.count is not None and self.for_each is not None:
            raise ConfigError(
                f"{self.address}: 'count' and 'for_each' are mutually exclusive"
            )

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def mode(self) -> ExpansionMode:
        if self.count is not None:
            return Counted(self.count)
        if self.for_each is not None:
            return EachOver(self.for_each)
        return Single()

    @property
    def provider_alias(self) -> str:
        """Explicit provider alias, or the type prefix before the first '_'."""
        if self.provider:
            return self.provider
        return self.resource_type.split("_", 1)[0]

    def fingerprint(self) -> str:
        """Content hash of the declaration body (name excluded).

        Two declarations with the same body under different names share a
        fingerprint, which is how renames are recognised across plans.
        """
        body = {
            "type": self.resource_type,
            "attributes": {k: to_data(v) for k, v in sorted(self.attributes.items())},
            "count": to_data(self.count) if self.count is not None else None,
            "for_each": to_data(self.for_each) if self.for_each is not None else None,
            "provider": self.provider_alias,
        }
        raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class VariableDeclaration:
    """An input variable: name, type constraint, optional default."""

    name: str
    type: str = "any"
    default: Any = NO_DEFAULT
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is NO_DEFAULT


@dataclass
class Configuration:
    """Everything the configuration source supplies for one plan cycle."""

    declarations: list[Declaration] = field(default_factory=list)
    variables: list[VariableDeclaration] = field(default_factory=list)
    locals: dict[str, Expression] = field(default_factory=dict)
    settings: EngineSettings = field(default_factory=EngineSettings)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for decl in self.declarations:
            if decl.address in seen:
                raise ConfigError(f"Duplicate resource declaration: {decl.address}")
            seen.add(decl.address)

        names: set[str] = set()
        for var in self.variables:
            if var.name in names:
                raise ConfigError(f"Duplicate variable declaration: {var.name}")
            names.add(var.name)

    def get(self, address: str) -> Declaration | None:
        """Look up a declaration by ``type.name``."""
        for decl in self.declarations:
            if decl.address == address:
                return decl
        return None
