"""
Apply scheduler — runs a plan's provider calls in dependency order.

Every planned action becomes one or two operations:

    create        provider.create, commit new record
    update        provider.update, commit record
    delete        provider.delete, drop record
    replace       create half + destroy half; create_before_destroy runs
                  the create first and keeps the old object deposed until
                  the destroy half deletes it

Operations form their own graph and run on a bounded thread pool. A
single coordinator thread owns the graph and submits an operation once
everything it waits for has succeeded; workers only talk to the
provider registry and the state store.

Each operation:
    stale check → claim address → resolve attributes → provider call
    → commit → release

A failed operation blocks everything downstream of it while independent
branches keep going. A concurrent claim on one address is fatal and
stops all scheduling.
"""

from __future__ import annotations

import heapq
import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from converge.core.engine.differ import ActionKind, keep_ignored, normalize
from converge.core.engine.graph import DependencyGraph
from converge.core.engine.planner import Plan, PlannedAction, record_for, record_view
from converge.core.engine.resolver import EvalContext, evaluate_attributes, get_path, known_attributes
from converge.core.errors import (
    ConcurrentStateConflictError,
    ConvergeError,
    ResourceNotFound,
    UnknownReferenceError,
)
from converge.core.models.expressions import Known, ResourceRef, Value
from converge.core.models.state import DeposedObject, StateDocument
from converge.core.persistence.state_file import StateStore
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class ApplyOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    NOT_STARTED = "not_started"


# Worst outcome wins when an action has several operations
_SEVERITY = {
    ApplyOutcome.SUCCEEDED: 0,
    ApplyOutcome.NOT_STARTED: 1,
    ApplyOutcome.BLOCKED: 2,
    ApplyOutcome.FAILED: 3,
}


class Phase(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class CancelToken:
    """Cooperative cancellation, checked between operations."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class InstanceOutcome:
    address: str
    action: ActionKind
    outcome: ApplyOutcome
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {"address": self.address, "action": self.action.value, "outcome": self.outcome.value}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ApplyResult:
    """Per-instance outcome table plus the state after apply."""

    outcomes: dict[str, InstanceOutcome] = field(default_factory=dict)
    state: StateDocument = field(default_factory=StateDocument)
    cancelled: bool = False
    error: str | None = None      # fatal error that stopped scheduling
    operation_id: str = ""

    def count(self, outcome: ApplyOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self.count(ApplyOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self.count(ApplyOutcome.FAILED)

    @property
    def blocked(self) -> int:
        return self.count(ApplyOutcome.BLOCKED)

    @property
    def not_started(self) -> int:
        return self.count(ApplyOutcome.NOT_STARTED)

    @property
    def all_ok(self) -> bool:
        return self.error is None and self.succeeded == len(self.outcomes)

    @property
    def status(self) -> str:
        if self.all_ok:
            return "ok"
        if self.cancelled and self.failed == 0 and self.blocked == 0 and self.error is None:
            return "cancelled"
        if self.succeeded > 0:
            return "partial"
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": self.status,
            "total": len(self.outcomes),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "blocked": self.blocked,
            "not_started": self.not_started,
            "cancelled": self.cancelled,
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes.values()],
        }


@dataclass
class Operation:
    """One provider call plus its state commit."""

    id: str
    action: PlannedAction
    phase: Phase
    deposes: bool = False           # create half of a create_before_destroy replace
    deposed_id: str | None = None   # delete targets a deposed object

    @property
    def address(self) -> str:
        return self.action.address


# ── Operation graph ─────────────────────────────────────────────────


def build_operations(plan: Plan) -> tuple[dict[str, Operation], DependencyGraph]:
    """Expand planned actions into operations and wire their ordering edges."""
    ops: dict[str, Operation] = {}
    writes: dict[str, str] = {}         # address → op that creates/updates it
    deletes: dict[str, str] = {}        # address → op that deletes its current object
    deposed_ops: dict[str, list[str]] = {}
    cbd_destroys: dict[str, str] = {}

    def add(op: Operation) -> Operation:
        ops[op.id] = op
        return op

    graph = DependencyGraph()
    for action in plan.actions:
        label = action.label
        if action.action == ActionKind.NOOP:
            continue
        if action.action == ActionKind.CREATE:
            writes[label] = add(Operation(f"{label}#create", action, Phase.CREATE)).id
        elif action.action == ActionKind.UPDATE:
            writes[label] = add(Operation(f"{label}#update", action, Phase.UPDATE)).id
        elif action.action == ActionKind.DESTROY and action.deposed_id:
            op = add(Operation(f"{label}#delete", action, Phase.DELETE, deposed_id=action.deposed_id))
            deposed_ops.setdefault(action.address, []).append(op.id)
        elif action.action == ActionKind.DESTROY:
            deletes[label] = add(Operation(f"{label}#delete", action, Phase.DELETE)).id
        elif action.create_before_destroy:
            create = add(Operation(f"{label}#create", action, Phase.CREATE, deposes=True))
            destroy = add(Operation(f"{label}#delete", action, Phase.DELETE))
            graph.add_edge(create.id, destroy.id)
            writes[label] = create.id
            cbd_destroys[label] = destroy.id
        else:
            destroy = add(Operation(f"{label}#delete", action, Phase.DELETE))
            create = add(Operation(f"{label}#create", action, Phase.CREATE))
            graph.add_edge(destroy.id, create.id)
            writes[label] = create.id
            deletes[label] = destroy.id

    for op_id in ops:
        graph.add_node(op_id)

    # Leftover deposed objects go before anything else touches the address
    for address, deposed in deposed_ops.items():
        firsts = [
            op.id for op in ops.values()
            if op.address == address and op.deposed_id is None and not graph.upstream(op.id)
        ]
        for deposed_id in deposed:
            for first in firsts:
                graph.add_edge(deposed_id, first)

    # Creates and updates wait for what they reference
    for address, write in writes.items():
        for upstream in plan.graph.upstream(address):
            if upstream in writes:
                graph.add_edge(writes[upstream], write)

    # Deletes wait for the deletes of their dependents; plain destroys
    # also wait for dependents to be updated away from them
    for address, delete in {**deletes, **cbd_destroys}.items():
        kind = ops[delete].action.action
        delete_first = address in deletes and kind == ActionKind.REPLACE
        for action in plan.actions:
            prior = action.prior
            dependent = action.address
            if prior is None or action.deposed_id or dependent == address:
                continue
            if address not in prior.dependencies:
                continue
            if dependent in deletes:
                graph.add_edge(deletes[dependent], delete)
            elif dependent in cbd_destroys and not delete_first:
                graph.add_edge(cbd_destroys[dependent], delete)
            if kind == ActionKind.DESTROY and dependent in writes:
                graph.add_edge(writes[dependent], delete)

    # A create_before_destroy destroy half waits for its new dependents
    for address, destroy in cbd_destroys.items():
        for downstream in plan.graph.downstream(address):
            if downstream in writes:
                graph.add_edge(writes[downstream], destroy)

    graph.check_acyclic()
    return ops, graph


# ── Scheduler ───────────────────────────────────────────────────────


class Scheduler:
    """Executes one plan against a state store.

    Args:
        plan: The plan to apply.
        store: State store (the only shared mutable resource).
        registry: Provider registry used for every provider call.
        parallelism: Maximum concurrent operations.
        cancel: Optional cancellation token.
    """

    def __init__(
        self,
        plan: Plan,
        store: StateStore,
        registry: ProviderRegistry,
        *,
        parallelism: int = 10,
        cancel: CancelToken | None = None,
    ):
        self._plan = plan
        self._store = store
        self._registry = registry
        self._parallelism = max(1, parallelism)
        self._cancel = cancel or CancelToken()
        self._ops, self._graph = build_operations(plan)
        # Revision each address is expected to have when its next operation runs
        self._expected: dict[str, int | None] = {}
        for action in plan.actions:
            self._expected.setdefault(action.address, action.prior_revision)

    @property
    def operations(self) -> dict[str, Operation]:
        return self._ops

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def run(self) -> ApplyResult:
        status: dict[str, ApplyOutcome] = {}
        errors: dict[str, str] = {}
        waiting = {op_id: self._graph.upstream(op_id) for op_id in self._ops}
        ready = [op_id for op_id, ups in waiting.items() if not ups]
        heapq.heapify(ready)
        fatal: str | None = None
        cancelled = False

        logger.info("Applying %d operation(s), parallelism %d", len(self._ops), self._parallelism)

        with ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="converge-apply") as pool:
            running: dict[Future[int | None], str] = {}
            while True:
                while ready and fatal is None and len(running) < self._parallelism:
                    if self._cancel.cancelled:
                        cancelled = True
                        break
                    op = self._ops[heapq.heappop(ready)]
                    logger.info("%s %s: starting", op.phase.value, op.action.label)
                    running[pool.submit(self._execute, op, self._expected[op.address])] = op.id

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: running[f]):
                    op = self._ops[running.pop(future)]
                    try:
                        revision = future.result()
                    except ConcurrentStateConflictError as e:
                        logger.error("Fatal: %s; stopping apply", e)
                        fatal = str(e)
                        status[op.id] = ApplyOutcome.FAILED
                        errors[op.id] = str(e)
                        continue
                    except Exception as e:
                        logger.error("%s %s failed: %s", op.phase.value, op.action.label, e)
                        status[op.id] = ApplyOutcome.FAILED
                        errors[op.id] = str(e)
                        for blocked in self._graph.descendants(op.id):
                            if blocked not in status:
                                status[blocked] = ApplyOutcome.BLOCKED
                                errors[blocked] = f"blocked by failed {op.id}"
                        continue

                    self._expected[op.address] = revision
                    status[op.id] = ApplyOutcome.SUCCEEDED
                    logger.info("%s %s: done", op.phase.value, op.action.label)
                    for child in self._graph.downstream(op.id):
                        waiting[child].discard(op.id)
                        if not waiting[child] and child not in status:
                            heapq.heappush(ready, child)

        for op_id in self._ops:
            status.setdefault(op_id, ApplyOutcome.NOT_STARTED)
        if cancelled:
            logger.warning("Apply cancelled; %d operation(s) not started",
                           sum(1 for s in status.values() if s == ApplyOutcome.NOT_STARTED))

        return ApplyResult(
            outcomes=self._outcomes(status, errors),
            state=self._store.snapshot(),
            cancelled=cancelled,
            error=fatal,
        )

    def _outcomes(self, status: dict[str, ApplyOutcome], errors: dict[str, str]) -> dict[str, InstanceOutcome]:
        outcomes: dict[str, InstanceOutcome] = {}
        for op in self._ops.values():
            label = op.action.label
            current = outcomes.get(label)
            outcome = status[op.id]
            if current is None or _SEVERITY[outcome] > _SEVERITY[current.outcome]:
                outcomes[label] = InstanceOutcome(label, op.action.action, outcome, errors.get(op.id))
        return outcomes

    # ── Worker side ─────────────────────────────────────────────────

    def _execute(self, op: Operation, expected: int | None) -> int | None:
        """Run one operation; returns the address's revision afterwards."""
        self._store.check_revision(op.address, expected)
        self._store.claim(op.address)
        try:
            handler: Callable[[Operation], None]
            if op.phase == Phase.CREATE:
                handler = self._create
            elif op.phase == Phase.UPDATE:
                handler = self._update
            else:
                handler = self._delete
            handler(op)
        finally:
            self._store.release(op.address)
        return self._store.revision(op.address)

    def _live_lookup(self, reference: ResourceRef) -> Value:
        record = self._store.get(str(reference.address))
        if record is None:
            raise UnknownReferenceError(f"{reference.address} is not in state")
        view = record_view(record)
        if not reference.path:
            return Known(view)
        return Known(get_path(view, reference.path, str(reference.address)))

    def _resolve(self, action: PlannedAction) -> dict[str, Any]:
        """Desired attributes evaluated against live state; must be fully known."""
        instance = action.instance
        assert instance is not None
        ctx = EvalContext(
            variables=self._plan.variables,
            locals=self._plan.locals,
            lookup=self._live_lookup,
            bindings=instance.bindings,
            where=action.address,
        )
        try:
            return normalize(known_attributes(evaluate_attributes(instance.declaration.attributes, ctx)))
        except ValueError as e:
            raise ConvergeError(f"{action.address}: {e}") from e

    def _dependencies(self, address: str) -> list[str]:
        return sorted(self._plan.graph.upstream(address))

    def _create(self, op: Operation) -> None:
        action = op.action
        attributes = self._resolve(action)
        external_id, actual = self._registry.create(
            action.provider, action.address, action.resource_type, attributes
        )
        record = record_for(action, external_id, actual, self._dependencies(action.address))
        current = self._store.get(action.address)
        if op.deposes and current is not None:
            record.deposed = [
                *current.deposed,
                DeposedObject(external_id=current.external_id, attributes=current.attributes),
            ]
        self._store.commit(record)

    def _update(self, op: Operation) -> None:
        action = op.action
        current = self._store.get(action.address)
        if current is None:
            raise ResourceNotFound(f"{action.address} disappeared from state")
        attributes = self._resolve(action)
        ignored = action.instance.declaration.lifecycle.ignore_changes
        changes = {
            c.attribute: keep_ignored(
                c.attribute, attributes.get(c.attribute), current.attributes.get(c.attribute), ignored
            )
            for c in action.changes
        }
        actual = self._registry.update(
            action.provider, action.address, action.resource_type, current.external_id, changes
        )
        record = record_for(action, current.external_id, actual, self._dependencies(action.address))
        record.deposed = current.deposed
        self._store.commit(record)

    def _delete(self, op: Operation) -> None:
        action = op.action
        current = self._store.get(action.address)

        if op.deposed_id is not None or (op.action.action == ActionKind.REPLACE and action.create_before_destroy):
            target = op.deposed_id
            if target is None:
                # create half already moved the old object aside
                assert current is not None and current.deposed
                target = current.deposed[-1].external_id
            self._delete_object(action, target)
            if current is not None:
                current.deposed = [d for d in current.deposed if d.external_id != target]
                self._store.commit(current)
            return

        if current is None:
            logger.warning("%s already absent from state", action.address)
            return
        self._delete_object(action, current.external_id)
        self._store.remove(action.address)

    def _delete_object(self, action: PlannedAction, external_id: str) -> None:
        try:
            self._registry.delete(action.provider, action.address, action.resource_type, external_id)
        except ResourceNotFound:
            logger.info("%s (%s) already gone", action.address, external_id)
