"""
Dependency graph — ordering constraints between declarations and instances.

Edges point upstream → downstream: ``add_edge(b, a)`` means b must exist
before a is evaluated or applied. Three edge kinds exist:

    implicit   a reads an attribute of b
    explicit   a lists b in depends_on
    trigger    a lists b in lifecycle.replace_triggered_by

The same graph type is built twice per plan: once over declarations (to
decide evaluation order) and once over concrete instances (to schedule
provider calls). Both are checked for cycles before any provider call.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping, Sequence
from enum import StrEnum

from converge.core.engine.expander import ResourceInstance
from converge.core.errors import DependencyCycleError, UnknownReferenceError
from converge.core.models.address import InstanceAddress
from converge.core.models.declaration import Configuration, Declaration
from converge.core.models.expressions import Expression, ResourceRef, local_refs, resource_refs

logger = logging.getLogger(__name__)


class EdgeKind(StrEnum):
    IMPLICIT = "implicit"
    EXPLICIT = "explicit"
    TRIGGER = "trigger"


class DependencyGraph:
    """Directed graph over string node ids with typed edges."""

    def __init__(self, nodes: Iterable[str] = ()):
        self._upstream: dict[str, dict[str, set[EdgeKind]]] = {}
        self._downstream: dict[str, set[str]] = {}
        for node in nodes:
            self.add_node(node)

    # ── Construction ────────────────────────────────────────────────

    def add_node(self, node: str) -> None:
        self._upstream.setdefault(node, {})
        self._downstream.setdefault(node, set())

    def add_edge(self, upstream: str, downstream: str, kind: EdgeKind = EdgeKind.IMPLICIT) -> None:
        self.add_node(upstream)
        self.add_node(downstream)
        self._upstream[downstream].setdefault(upstream, set()).add(kind)
        self._downstream[upstream].add(downstream)

    # ── Queries ─────────────────────────────────────────────────────

    def __contains__(self, node: object) -> bool:
        return node in self._upstream

    def __len__(self) -> int:
        return len(self._upstream)

    @property
    def nodes(self) -> list[str]:
        return sorted(self._upstream)

    def upstream(self, node: str) -> set[str]:
        return set(self._upstream.get(node, {}))

    def downstream(self, node: str) -> set[str]:
        return set(self._downstream.get(node, set()))

    def edge_kinds(self, upstream: str, downstream: str) -> set[EdgeKind]:
        return set(self._upstream.get(downstream, {}).get(upstream, set()))

    def edges(self) -> list[tuple[str, str, set[EdgeKind]]]:
        return [
            (up, down, set(kinds))
            for down in sorted(self._upstream)
            for up, kinds in sorted(self._upstream[down].items())
        ]

    def ancestors(self, node: str) -> set[str]:
        return self._reach(node, self._upstream)

    def descendants(self, node: str) -> set[str]:
        return self._reach(node, self._downstream)

    def _reach(self, node: str, links: Mapping[str, Iterable[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(links.get(node, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(links.get(current, ()))
        return seen

    # ── Cycle detection ─────────────────────────────────────────────

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as ``[a, b, ..., a]`` or None (DFS colouring)."""
        white, gray, black = 0, 1, 2
        colour = {node: white for node in self._upstream}

        for root in sorted(self._upstream):
            if colour[root] != white:
                continue
            path: list[str] = [root]
            iterators = [iter(sorted(self._downstream[root]))]
            colour[root] = gray
            while iterators:
                child = next(iterators[-1], None)
                if child is None:
                    colour[path.pop()] = black
                    iterators.pop()
                    continue
                if colour[child] == gray:
                    return path[path.index(child):] + [child]
                if colour[child] == white:
                    colour[child] = gray
                    path.append(child)
                    iterators.append(iter(sorted(self._downstream[child])))
        return None

    def check_acyclic(self) -> None:
        """Raise DependencyCycleError naming the cycle, if there is one."""
        cycle = self.find_cycle()
        if cycle is not None:
            logger.error("Dependency cycle detected: %s", " -> ".join(cycle))
            raise DependencyCycleError(cycle)

    def topological_order(self) -> list[str]:
        """Deterministic topological order (Kahn, lexicographic tie-break)."""
        self.check_acyclic()
        indegree = {node: len(ups) for node, ups in self._upstream.items()}
        ready = [node for node, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for child in self._downstream[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)
        return order


# ── Builders ────────────────────────────────────────────────────────


def expression_refs(expr: Expression, local_values: Mapping[str, Expression]) -> list[ResourceRef]:
    """Resource references in ``expr``, following locals transitively."""
    refs = list(resource_refs(expr))
    pending = list(local_refs(expr))
    seen: set[str] = set()
    while pending:
        name = pending.pop()
        if name in seen or name not in local_values:
            continue
        seen.add(name)
        refs.extend(resource_refs(local_values[name]))
        pending.extend(local_refs(local_values[name]))
    return refs


def declaration_refs(decl: Declaration, local_values: Mapping[str, Expression]) -> list[ResourceRef]:
    exprs: list[Expression] = list(decl.attributes.values())
    if decl.count is not None:
        exprs.append(decl.count)
    if decl.for_each is not None:
        exprs.append(decl.for_each)
    refs: list[ResourceRef] = []
    for expr in exprs:
        refs.extend(expression_refs(expr, local_values))
    return refs


def build_declaration_graph(config: Configuration) -> DependencyGraph:
    """Graph over ``type.name`` declaration addresses.

    Raises:
        UnknownReferenceError: A reference names an undeclared resource.
        DependencyCycleError: The declarations depend on each other in a loop.
    """
    declared = {decl.address for decl in config.declarations}
    graph = DependencyGraph(declared)

    def target(address: InstanceAddress, origin: str, what: str) -> str:
        if address.declaration not in declared:
            raise UnknownReferenceError(
                f"{origin}: {what} references undeclared resource {address.declaration}"
            )
        return address.declaration

    for decl in config.declarations:
        for reference in declaration_refs(decl, config.locals):
            graph.add_edge(target(reference.address, decl.address, "expression"), decl.address)
        for address in decl.depends_on:
            graph.add_edge(target(address, decl.address, "depends_on"), decl.address, EdgeKind.EXPLICIT)
        for address in decl.lifecycle.replace_triggered_by:
            graph.add_edge(
                target(address, decl.address, "replace_triggered_by"), decl.address, EdgeKind.TRIGGER
            )

    graph.check_acyclic()
    return graph


def _targets(address: InstanceAddress, by_declaration: Mapping[str, Sequence[str]]) -> list[str]:
    """Instance nodes matched by a reference (all instances when keyless)."""
    instances = by_declaration.get(address.declaration, [])
    if address.key is None:
        return list(instances)
    wanted = str(address)
    return [node for node in instances if node == wanted]


def build_instance_graph(
    instances: Sequence[ResourceInstance],
    local_values: Mapping[str, Expression],
) -> DependencyGraph:
    """Graph over concrete instance addresses.

    References to instances that are not part of this cycle (pending
    expansions, removed keys) add no edge; evaluation reports those.
    """
    graph = DependencyGraph(str(inst.address) for inst in instances)
    by_declaration: dict[str, list[str]] = {}
    for inst in instances:
        by_declaration.setdefault(inst.address.declaration, []).append(str(inst.address))

    for inst in instances:
        node = str(inst.address)
        decl = inst.declaration
        for reference in declaration_refs(decl, local_values):
            for upstream in _targets(reference.address, by_declaration):
                graph.add_edge(upstream, node, EdgeKind.IMPLICIT)
        for address in decl.depends_on:
            for upstream in _targets(address, by_declaration):
                graph.add_edge(upstream, node, EdgeKind.EXPLICIT)
        for address in decl.lifecycle.replace_triggered_by:
            for upstream in _targets(address, by_declaration):
                graph.add_edge(upstream, node, EdgeKind.TRIGGER)

    graph.check_acyclic()
    return graph
