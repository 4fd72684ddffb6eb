"""Tests for graph construction and validation."""

import pytest

from infraplan.exceptions import (
    CycleDetectedError,
    DeclarationError,
    DuplicateResourceError,
    UnresolvedReferenceError,
)
from infraplan.graph import ResourceGraph, build_graph
from infraplan.models import Ref, Resource, ResourceId
from infraplan.validator import find_cycle, validate_graph


def rid(value):
    return ResourceId.parse(value)


def ref(value):
    return Ref.parse(value)


class TestBuildGraph:
    """Tests for build_graph."""

    def test_edges_from_references(self, nsi):
        graph = build_graph(nsi)
        assert graph.dependencies(rid("subnet.a")) == (rid("network.main"),)
        assert graph.dependencies(rid("instance.web")) == (rid("subnet.a"),)
        assert graph.dependencies(rid("network.main")) == ()
        assert graph.dependents(rid("network.main")) == (rid("subnet.a"),)

    def test_keeps_declaration_order(self, nsi):
        graph = build_graph(reversed(nsi))
        assert list(graph) == [rid("instance.web"), rid("subnet.a"), rid("network.main")]
        assert graph.index(rid("network.main")) == 2

    def test_explicit_depends_on_adds_edge(self):
        graph = build_graph(
            [
                Resource.declare("gateway", "main"),
                Resource.declare("route", "default", depends_on=["gateway.main"]),
            ]
        )
        assert graph.dependencies(rid("route.default")) == (rid("gateway.main"),)

    def test_duplicate_edges_collapse(self):
        graph = build_graph(
            [
                Resource.declare("network", "main"),
                Resource.declare(
                    "subnet",
                    "a",
                    {"a": ref("network.main.id"), "b": [ref("network.main.arn")]},
                    depends_on=["network.main"],
                ),
            ]
        )
        assert list(graph.edges()) == [(rid("subnet.a"), rid("network.main"))]

    def test_duplicate_declaration(self):
        with pytest.raises(DuplicateResourceError) as exc_info:
            build_graph([Resource.declare("network", "main"), Resource.declare("network", "main")])
        assert exc_info.value.resource_id == rid("network.main")

    def test_unresolved_reference_names_holder_target_and_path(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_graph([Resource.declare("subnet", "a", {"tags": {"n": ref("network.gone.id")}})])
        err = exc_info.value
        assert err.resource_id == rid("subnet.a")
        assert err.target == rid("network.gone")
        assert err.path == "tags.n"
        assert "network.gone" in str(err)

    def test_unresolved_depends_on(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_graph([Resource.declare("subnet", "a", depends_on=["network.gone"])])
        assert exc_info.value.path == "depends_on"

    def test_errors_are_declaration_errors(self):
        with pytest.raises(DeclarationError):
            build_graph([Resource.declare("subnet", "a", {"n": ref("network.gone.id")})])


class TestValidateGraph:
    """Tests for cycle detection and topological ordering."""

    def test_order_puts_dependencies_first(self, nsi):
        order = validate_graph(build_graph(reversed(nsi)))
        assert order.index(rid("network.main")) < order.index(rid("subnet.a"))
        assert order.index(rid("subnet.a")) < order.index(rid("instance.web"))

    def test_every_edge_respects_order(self):
        resources = [
            Resource.declare("a", "x", {"p": ref("b.x.id"), "q": ref("c.x.id")}),
            Resource.declare("b", "x", {"p": ref("d.x.id")}),
            Resource.declare("c", "x", {"p": ref("d.x.id")}),
            Resource.declare("d", "x"),
            Resource.declare("e", "x"),
        ]
        graph = build_graph(resources)
        order = validate_graph(graph)
        assert sorted(order) == sorted(graph)
        position = {r: i for i, r in enumerate(order)}
        for source, target in graph.edges():
            assert position[target] < position[source]

    def test_order_is_deterministic(self, nsi):
        graph = build_graph(nsi)
        assert validate_graph(graph) == validate_graph(graph)

    def test_two_node_cycle(self):
        graph = build_graph(
            [
                Resource.declare("a", "x", {"p": ref("b.x.id")}),
                Resource.declare("b", "x", {"p": ref("a.x.id")}),
            ]
        )
        with pytest.raises(CycleDetectedError) as exc_info:
            validate_graph(graph)
        assert exc_info.value.cycle == [rid("a.x"), rid("b.x"), rid("a.x")]
        assert exc_info.value.resource_ids == [rid("a.x"), rid("b.x")]
        assert "a.x -> b.x -> a.x" in str(exc_info.value)

    def test_self_reference_is_a_cycle(self):
        graph = build_graph([Resource.declare("a", "x", {"p": ref("a.x.id")})])
        with pytest.raises(CycleDetectedError) as exc_info:
            validate_graph(graph)
        assert exc_info.value.cycle == [rid("a.x"), rid("a.x")]

    def test_cycle_reported_without_its_tail(self):
        graph = build_graph(
            [
                Resource.declare("entry", "x", {"p": ref("a.x.id")}),
                Resource.declare("a", "x", {"p": ref("b.x.id")}),
                Resource.declare("b", "x", {"p": ref("c.x.id")}),
                Resource.declare("c", "x", {"p": ref("a.x.id")}),
            ]
        )
        assert find_cycle(graph) == [rid("a.x"), rid("b.x"), rid("c.x"), rid("a.x")]

    def test_find_cycle_none_for_dag(self, nsi):
        assert find_cycle(build_graph(nsi)) is None

    def test_deep_chain_does_not_recurse(self):
        resources = [Resource.declare("n", "r0")]
        for i in range(1, 3000):
            resources.append(Resource.declare("n", f"r{i}", {"p": ref(f"n.r{i - 1}.id")}))
        order = validate_graph(build_graph(reversed(resources)))
        assert order[0] == rid("n.r0")
        assert order[-1] == rid("n.r2999")

    def test_edge_outside_graph_is_unresolved(self):
        graph = ResourceGraph(
            {rid("a.x"): Resource.declare("a", "x")},
            {rid("a.x"): (rid("b.x"),)},
        )
        with pytest.raises(UnresolvedReferenceError):
            validate_graph(graph)
