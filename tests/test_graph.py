"""
Tests for the dependency graph — construction, cycles, ordering.
"""

import pytest

from converge.core.engine.expander import expand
from converge.core.engine.graph import (
    DependencyGraph,
    EdgeKind,
    build_declaration_graph,
    build_instance_graph,
)
from converge.core.engine.resolver import EvalContext
from converge.core.errors import DependencyCycleError, UnknownReferenceError
from converge.core.models.expressions import Deferred

# ── Graph primitives ─────────────────────────────────────────────────


class TestDependencyGraph:
    def test_topological_order_lexicographic_ties(self):
        graph = DependencyGraph(["c", "b", "a"])
        assert graph.topological_order() == ["a", "b", "c"]

    def test_chain(self):
        graph = DependencyGraph()
        graph.add_edge("b", "c")
        graph.add_edge("a", "b")
        assert graph.topological_order() == ["a", "b", "c"]

    def test_ancestors_descendants(self):
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "c")
        graph.add_edge("x", "c")
        assert graph.ancestors("c") == {"a", "b", "x"}
        assert graph.descendants("a") == {"b", "c"}

    def test_edge_kinds_accumulate(self):
        graph = DependencyGraph()
        graph.add_edge("a", "b", EdgeKind.IMPLICIT)
        graph.add_edge("a", "b", EdgeKind.EXPLICIT)
        assert graph.edge_kinds("a", "b") == {EdgeKind.IMPLICIT, EdgeKind.EXPLICIT}

    def test_find_cycle(self):
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "c")
        graph.add_edge("c", "a")
        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_check_acyclic_raises(self):
        graph = DependencyGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "a")
        with pytest.raises(DependencyCycleError) as exc:
            graph.check_acyclic()
        assert set(exc.value.members) == {"a", "b"}

    def test_self_loop(self):
        graph = DependencyGraph()
        graph.add_edge("a", "a")
        assert graph.find_cycle() == ["a", "a"]


# ── Builders ─────────────────────────────────────────────────────────


class TestDeclarationGraph:
    def test_edges_from_refs_depends_on_and_triggers(self, make_config):
        config = make_config("""
            resources:
              compute_network:
                main: {name: net}
              compute_firewall:
                fw: {name: fw}
              compute_image:
                base: {name: img}
              compute_instance:
                web:
                  network: {"$ref": compute_network.main.id}
                  depends_on: [compute_firewall.fw]
                  lifecycle:
                    replace_triggered_by: [compute_image.base]
        """)
        graph = build_declaration_graph(config)
        web = "compute_instance.web"
        assert graph.edge_kinds("compute_network.main", web) == {EdgeKind.IMPLICIT}
        assert graph.edge_kinds("compute_firewall.fw", web) == {EdgeKind.EXPLICIT}
        assert graph.edge_kinds("compute_image.base", web) == {EdgeKind.TRIGGER}
        assert graph.topological_order()[-1] == web

    def test_refs_through_locals(self, make_config):
        config = make_config("""
            locals:
              net: {"$ref": compute_network.main.id}
            resources:
              compute_network:
                main: {name: net}
              compute_instance:
                web:
                  network: {"$ref": local.net}
        """)
        graph = build_declaration_graph(config)
        assert graph.upstream("compute_instance.web") == {"compute_network.main"}

    def test_cycle_names_members(self, make_config):
        config = make_config("""
            resources:
              compute_instance:
                a: {peer: {"$ref": compute_instance.b.id}}
                b: {peer: {"$ref": compute_instance.a.id}}
        """)
        with pytest.raises(DependencyCycleError) as exc:
            build_declaration_graph(config)
        assert set(exc.value.members) == {"compute_instance.a", "compute_instance.b"}

    def test_unknown_reference(self, make_config):
        config = make_config("""
            resources:
              compute_instance:
                web: {network: {"$ref": compute_network.missing.id}}
        """)
        with pytest.raises(UnknownReferenceError, match="compute_network.missing"):
            build_declaration_graph(config)

    def test_unknown_depends_on(self, make_config):
        config = make_config("""
            resources:
              compute_instance:
                web: {depends_on: [compute_network.gone]}
        """)
        with pytest.raises(UnknownReferenceError, match="depends_on"):
            build_declaration_graph(config)


class TestInstanceGraph:
    def test_keyless_reference_fans_out(self, make_config):
        config = make_config("""
            resources:
              compute_disk:
                data: {count: 2, size: 10}
              compute_instance:
                web:
                  depends_on: [compute_disk.data]
        """)
        ctx = EvalContext(lookup=lambda r: Deferred(str(r)))
        instances = [i for d in config.declarations for i in expand(d, ctx)]
        graph = build_instance_graph(instances, config.locals)
        assert graph.upstream("compute_instance.web") == {"compute_disk.data[0]", "compute_disk.data[1]"}

    def test_keyed_reference_targets_one_instance(self, make_config):
        config = make_config("""
            resources:
              compute_disk:
                data: {count: 2, size: 10}
              compute_instance:
                web:
                  disk: {"$ref": "compute_disk.data[1].id"}
        """)
        ctx = EvalContext(lookup=lambda r: Deferred(str(r)))
        instances = [i for d in config.declarations for i in expand(d, ctx)]
        graph = build_instance_graph(instances, config.locals)
        assert graph.upstream("compute_instance.web") == {"compute_disk.data[1]"}
