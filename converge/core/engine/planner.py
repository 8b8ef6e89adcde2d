"""
Planner — configuration + prior state → ordered action plan.

Steps:
    1. Resolve variables from every value source
    2. Build the declaration graph (evaluation order, cycle check)
    3. Expand declarations in that order, diffing each instance as it
       appears so later declarations can read its planned values
    4. Build the instance graph (scheduling order, cycle check)
    5. Plan destroys for records without a desired instance
    6. Enforce prevent_destroy over the whole plan

Planning never calls a provider and never mutates state. A plan
remembers the revision of every record it read; apply refuses to act on
a record that has moved since.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from converge.core.config.variables import ValueSource, resolve_variables
from converge.core.engine.differ import (
    ActionKind,
    AttributeChange,
    InstanceDiff,
    check_prevent_destroy,
    diff_instance,
    normalize,
)
from converge.core.engine.expander import PendingExpansion, ResourceInstance, expand
from converge.core.engine.graph import (
    DependencyGraph,
    build_declaration_graph,
    build_instance_graph,
)
from converge.core.engine.resolver import EvalContext, get_path
from converge.core.errors import UnknownReferenceError
from converge.core.models.address import InstanceAddress, parse_address
from converge.core.models.declaration import Configuration, Declaration, Single
from converge.core.models.expressions import Deferred, Expression, Known, ResourceRef, Value
from converge.core.models.state import LifecycleSnapshot, StateDocument, StateRecord
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


# ── Plan model ──────────────────────────────────────────────────────


@dataclass
class PlannedAction:
    """One planned change to one instance (or to one deposed object)."""

    address: str
    action: ActionKind
    resource_type: str
    provider: str

    instance: ResourceInstance | None = None      # None for destroys
    prior: StateRecord | None = None
    prior_revision: int | None = None

    changes: list[AttributeChange] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    deposed_id: str | None = None                 # destroy of a deposed object
    note: str = ""

    @property
    def label(self) -> str:
        if self.deposed_id:
            return f"{self.address} (deposed {self.deposed_id})"
        return self.address

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "address": self.address,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "changes": [c.to_dict() for c in self.changes],
        }
        if self.reasons:
            data["reasons"] = list(self.reasons)
        if self.action == ActionKind.REPLACE:
            data["create_before_destroy"] = self.create_before_destroy
        if self.deposed_id:
            data["deposed"] = self.deposed_id
        if self.note:
            data["note"] = self.note
        return data


@dataclass
class Plan:
    """The outcome of planning: what apply would do, in order."""

    actions: list[PlannedAction] = field(default_factory=list)
    pending: list[PendingExpansion] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    locals: dict[str, Expression] = field(default_factory=dict)
    graph: DependencyGraph = field(default_factory=DependencyGraph)
    state_lineage: str = ""
    state_serial: int = 0
    destroy: bool = False

    @property
    def changes(self) -> list[PlannedAction]:
        """Every action except no-ops."""
        return [a for a in self.actions if a.action != ActionKind.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def get(self, label: str) -> PlannedAction | None:
        for action in self.actions:
            if action.label == label:
                return action
        return None

    def summary(self) -> dict[str, int]:
        counts = Counter(a.action for a in self.actions)
        return {
            "create": counts[ActionKind.CREATE],
            "update": counts[ActionKind.UPDATE],
            "replace": counts[ActionKind.REPLACE],
            "destroy": counts[ActionKind.DESTROY],
            "no-op": counts[ActionKind.NOOP],
            "pending": len(self.pending),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "destroy": self.destroy,
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.changes],
            "pending": [{"declaration": p.declaration, "reason": p.reason} for p in self.pending],
            "state": {"lineage": self.state_lineage, "serial": self.state_serial},
        }


# ── Planning ────────────────────────────────────────────────────────


class _Planning:
    """Mutable bookkeeping for one plan() call."""

    def __init__(self, config: Configuration, state: StateDocument, registry: ProviderRegistry):
        self.config = config
        self.state = state
        self.registry = registry
        self.declarations = {d.address: d for d in config.declarations}
        self.instances: dict[str, list[ResourceInstance]] = {}
        self.diffs: dict[str, InstanceDiff] = {}
        self.pending: dict[str, PendingExpansion] = {}

    # ── Planned-value lookup ────────────────────────────────────────

    def lookup(self, reference: ResourceRef) -> Value:
        """Answer a resource reference from this cycle's plan.

        no-op            → prior state
        update           → prior state overlaid with desired values
        create / replace → desired values; everything else is Deferred
        """
        address = reference.address
        decl = self.declarations.get(address.declaration)
        if decl is None:
            raise UnknownReferenceError(f"Reference to undeclared resource {address.declaration}")
        if address.key is None and not isinstance(decl.mode, Single):
            raise UnknownReferenceError(
                f"{reference}: {decl.address} has count or for_each; reference an instance by key"
            )
        if address.key is not None and isinstance(decl.mode, Single):
            raise UnknownReferenceError(f"{reference}: {decl.address} has no instance keys")

        node = str(address)
        diff = self.diffs.get(node)
        instance = next((i for i in self.instances.get(decl.address, []) if str(i.address) == node), None)
        if diff is None or instance is None:
            raise UnknownReferenceError(f"Reference to non-existent instance {node}")

        record = self.state.get(node)
        deferred = Deferred(str(reference))
        if diff.action in (ActionKind.CREATE, ActionKind.REPLACE) or record is None:
            view: dict[str, Any] = {}
        else:
            view = record_view(record)
        for name, value in instance.attributes.items():
            view[name] = value if isinstance(value, Deferred) else value.value

        if not reference.path:
            settled = diff.action in (ActionKind.NOOP, ActionKind.UPDATE) and record is not None
            if not settled or any(isinstance(v, Deferred) for v in view.values()):
                return deferred
            return Known(view)

        head = reference.path[0]
        if head not in view:
            if diff.action in (ActionKind.CREATE, ActionKind.REPLACE):
                return deferred
            raise UnknownReferenceError(f"{node} has no attribute {head!r}")
        if isinstance(view[head], Deferred):
            return view[head]
        return Known(get_path(view[head], reference.path[1:], f"{node}.{head}"))

    # ── Per-instance diff ───────────────────────────────────────────

    def trigger_reason(self, decl: Declaration) -> str | None:
        for address in decl.lifecycle.replace_triggered_by:
            for target in self.instances.get(address.declaration, []):
                if address.key is not None and target.address != address:
                    continue
                diff = self.diffs.get(str(target.address))
                if diff and diff.action in (ActionKind.CREATE, ActionKind.REPLACE):
                    return f"replace_triggered_by {target.address} ({diff.action.value})"
        return None

    def diff(self, instance: ResourceInstance, forced: str | None) -> InstanceDiff:
        node = str(instance.address)
        record = self.state.get(node)
        alias = instance.provider
        self.registry.require(alias)
        return diff_instance(
            instance,
            record,
            requires_replacement=lambda rtype, attr: self.registry.requires_replacement(alias, rtype, attr),
            forced_replace=forced,
        )


def plan(
    config: Configuration,
    state: StateDocument,
    registry: ProviderRegistry,
    *,
    sources: Sequence[ValueSource] = (),
    destroy: bool = False,
) -> Plan:
    """Compute the action plan that reconciles ``state`` with ``config``.

    Raises:
        ConfigError: Any configuration problem, including dependency
            cycles and prevent_destroy violations. No plan is produced.
    """
    if destroy:
        return _plan_destroy(config, state, registry)

    variables = resolve_variables(config.variables, sources)
    decl_graph = build_declaration_graph(config)
    work = _Planning(config, state, registry)
    ctx = EvalContext(variables=variables, locals=config.locals, lookup=work.lookup)

    # ── Expand + diff in dependency order ────────────────────────
    for address in decl_graph.topological_order():
        decl = work.declarations[address]
        blocked_by = sorted(up for up in decl_graph.upstream(address) if up in work.pending)
        if blocked_by:
            work.pending[address] = PendingExpansion(
                address, f"depends on pending expansion of {', '.join(blocked_by)}"
            )
            logger.info("Expansion of %s pending: depends on %s", address, ", ".join(blocked_by))
            continue

        expanded = expand(decl, ctx.with_bindings(ctx.bindings, address))
        if isinstance(expanded, PendingExpansion):
            work.pending[address] = expanded
            continue

        work.instances[address] = expanded
        forced = work.trigger_reason(decl)
        for instance in expanded:
            work.diffs[str(instance.address)] = work.diff(instance, forced)

    all_instances = [i for group in work.instances.values() for i in group]
    graph = build_instance_graph(all_instances, config.locals)

    # ── Actions for desired instances, in dependency order ───────
    by_node = {str(i.address): i for i in all_instances}
    actions: list[PlannedAction] = []
    for node in graph.topological_order():
        instance = by_node[node]
        diff = work.diffs[node]
        record = state.get(node)
        policy = instance.declaration.lifecycle
        actions.append(
            PlannedAction(
                address=node,
                action=diff.action,
                resource_type=instance.resource_type,
                provider=instance.provider,
                instance=instance,
                prior=record,
                prior_revision=record.revision if record else None,
                changes=diff.changes,
                reasons=diff.reasons,
                create_before_destroy=policy.create_before_destroy,
                prevent_destroy=policy.prevent_destroy,
            )
        )

    # ── Destroys: records with no desired instance ───────────────
    orphans = []
    for address in state.addresses():
        if address in by_node:
            continue
        declaration = parse_address(address).declaration
        if declaration in work.pending:
            logger.debug("Leaving %s untouched: expansion of %s pending", address, declaration)
            continue
        orphans.append(state.records[address])
    actions.extend(_destroy_actions(orphans, work.declarations, registry))
    actions.extend(_deposed_actions(state, work.pending, registry))

    _annotate_renames(actions, work.declarations)
    check_prevent_destroy((a.label, a.action, a.prevent_destroy) for a in actions)

    result = Plan(
        actions=actions,
        pending=[work.pending[a] for a in sorted(work.pending)],
        variables=variables,
        locals=dict(config.locals),
        graph=graph,
        state_lineage=state.lineage,
        state_serial=state.serial,
    )
    _log_summary(result)
    return result


def _plan_destroy(config: Configuration, state: StateDocument, registry: ProviderRegistry) -> Plan:
    """Plan the removal of everything in state, dependents first."""
    declarations = {d.address: d for d in config.declarations}
    records = [state.records[a] for a in state.addresses()]

    graph = DependencyGraph(r.address for r in records)
    for record in records:
        for upstream in record.dependencies:
            if upstream in graph:
                graph.add_edge(upstream, record.address)

    actions = _destroy_actions(records, declarations, registry)
    actions.extend(_deposed_actions(state, {}, registry))
    check_prevent_destroy((a.label, a.action, a.prevent_destroy) for a in actions)

    result = Plan(
        actions=actions,
        graph=graph,
        state_lineage=state.lineage,
        state_serial=state.serial,
        destroy=True,
    )
    _log_summary(result)
    return result


def _destroy_actions(
    records: Sequence[StateRecord],
    declarations: Mapping[str, Declaration],
    registry: ProviderRegistry,
) -> list[PlannedAction]:
    """Destroy actions ordered so dependents go before what they depend on."""
    by_address = {r.address: r for r in records}
    graph = DependencyGraph(by_address)
    for record in records:
        for upstream in record.dependencies:
            if upstream in by_address:
                graph.add_edge(upstream, record.address)

    actions = []
    for address in reversed(graph.topological_order()):
        record = by_address[address]
        registry.require(record.provider)
        decl = declarations.get(parse_address(address).declaration)
        # The declaration's current flags win; the snapshot covers removed blocks.
        protected = decl.lifecycle.prevent_destroy if decl else record.lifecycle.prevent_destroy
        actions.append(
            PlannedAction(
                address=address,
                action=ActionKind.DESTROY,
                resource_type=record.resource_type,
                provider=record.provider,
                prior=record,
                prior_revision=record.revision,
                reasons=["no longer in configuration"],
                prevent_destroy=protected,
            )
        )
    return actions


def _deposed_actions(
    state: StateDocument,
    pending: Mapping[str, PendingExpansion],
    registry: ProviderRegistry,
) -> list[PlannedAction]:
    """Destroy actions for objects left deposed by an interrupted replace."""
    actions = []
    for address in state.addresses():
        record = state.records[address]
        if not record.deposed or parse_address(address).declaration in pending:
            continue
        registry.require(record.provider)
        for deposed in record.deposed:
            actions.append(
                PlannedAction(
                    address=address,
                    action=ActionKind.DESTROY,
                    resource_type=record.resource_type,
                    provider=record.provider,
                    prior=record,
                    prior_revision=record.revision,
                    reasons=["deposed by an earlier create-before-destroy replace"],
                    deposed_id=deposed.external_id,
                )
            )
    return actions


def _annotate_renames(actions: list[PlannedAction], declarations: Mapping[str, Declaration]) -> None:
    """Mark destroy + create pairs whose declaration bodies are identical."""
    creates: dict[str, list[PlannedAction]] = {}
    for action in actions:
        if action.action == ActionKind.CREATE and action.instance is not None:
            creates.setdefault(action.instance.declaration.fingerprint(), []).append(action)

    for action in actions:
        if action.action != ActionKind.DESTROY or action.deposed_id or action.prior is None:
            continue
        old = parse_address(action.address)
        if old.declaration in declarations:
            continue
        for candidate in creates.get(action.prior.fingerprint, []):
            new: InstanceAddress = candidate.instance.address  # type: ignore[union-attr]
            if new.declaration != old.declaration and new.key == old.key:
                action.note = f"probably renamed to {candidate.address}"
                candidate.note = f"probably renamed from {action.address}"
                break


def _log_summary(result: Plan) -> None:
    s = result.summary()
    logger.info(
        "Plan: %d to create, %d to update, %d to replace, %d to destroy, %d unchanged, %d pending",
        s["create"],
        s["update"],
        s["replace"],
        s["destroy"],
        s["no-op"],
        s["pending"],
    )


def record_for(
    action: PlannedAction,
    external_id: str,
    attributes: Mapping[str, Any],
    dependencies: Sequence[str],
) -> StateRecord:
    """Build the state record committed after a successful create or update."""
    instance = action.instance
    assert instance is not None
    policy = instance.declaration.lifecycle
    return StateRecord(
        address=action.address,
        resource_type=action.resource_type,
        provider=action.provider,
        external_id=external_id,
        attributes=normalize(dict(attributes)),
        fingerprint=instance.declaration.fingerprint(),
        dependencies=sorted(dependencies),
        lifecycle=LifecycleSnapshot(
            prevent_destroy=policy.prevent_destroy,
            create_before_destroy=policy.create_before_destroy,
        ),
    )


def record_view(record: StateRecord) -> dict[str, Any]:
    """Attributes a reference sees; ``id`` falls back to the external id."""
    return {"id": record.external_id, **record.attributes}
