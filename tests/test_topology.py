"""
Tests for edge classification, start agents and parallel groups
"""

import pytest

from agent_graph.common.enums import EdgeKind
from agent_graph.core.agent_config import GraphEdge
from agent_graph.graphs.topology import (
    classify_edge,
    compile_topology,
    compute_parallel_groups,
    find_start_agents,
)


def test_explicit_direct_wins():
    """An explicit direct kind is kept even with a condition"""
    edge = GraphEdge(source="a", destination="b", kind="direct", condition=lambda state: True)
    assert classify_edge(edge) == EdgeKind.DIRECT


def test_condition_makes_handoff():
    """A conditioned fan-out edge is a handoff"""
    edge = GraphEdge(source="a", destination=["b", "c"], condition=lambda state: "b")
    assert classify_edge(edge) == EdgeKind.HANDOFF


def test_single_source_fan_out_defaults_to_direct():
    """One source with several destinations reads as parallel dispatch"""
    assert classify_edge(GraphEdge(source="a", destination=["b", "c", "d"])) == EdgeKind.DIRECT


@pytest.mark.parametrize("source, destination", [
    ("a", "b"),
    (["a", "b"], "c"),
    (["a", "b"], ["c", "d"]),
])
def test_other_unconditioned_edges_default_to_handoff(source, destination):
    """1:1, fan-in and many-to-many edges default to handoff"""
    assert classify_edge(GraphEdge(source=source, destination=destination)) == EdgeKind.HANDOFF


def test_start_agents_without_incoming_edges():
    """Start agents are those never named as a destination"""
    edges = [GraphEdge(source="a", destination="b"), GraphEdge(source="c", destination="b")]
    assert find_start_agents(["a", "b", "c"], edges) == ["a", "c"]


def test_start_agent_falls_back_to_first_agent():
    """A fully cyclic topology starts at the first declared agent"""
    edges = [GraphEdge(source="a", destination="b"), GraphEdge(source="b", destination="a")]
    assert find_start_agents(["a", "b"], edges) == ["a"]


def test_fan_out_forms_one_group():
    """A -> [B, C, D] puts the destinations in group 1 and leaves A ungrouped"""
    topology = compile_topology(["A", "B", "C", "D"], [GraphEdge(source="A", destination=["B", "C", "D"])])

    assert topology.parallel_groups == {"B": 1, "C": 1, "D": 1}
    assert topology.group_id_for("A") is None
    assert topology.start_agents == ["A"]


def test_several_start_agents_form_group_one():
    """Independent start agents run as the first parallel group"""
    edges = [GraphEdge(source="a", destination=["x", "y"]), GraphEdge(source="b", destination="z", kind="direct")]
    groups = compute_parallel_groups(["a", "b"], [edges[0], edges[1]], [])

    assert groups["a"] == 1
    assert groups["b"] == 1
    assert groups["x"] == 2
    assert groups["y"] == 2
    assert "z" not in groups


def test_group_ids_increase_and_first_assignment_wins():
    """A diamond keeps the shared node in the first group that reached it"""
    edges = [
        GraphEdge(source="root", destination=["left", "right"]),
        GraphEdge(source="left", destination=["shared", "l2"]),
        GraphEdge(source="right", destination=["shared", "r2"]),
    ]
    topology = compile_topology(["root", "left", "right", "shared", "l2", "r2"], edges)
    groups = topology.parallel_groups

    assert groups["left"] == groups["right"] == 1
    assert groups["shared"] == groups["l2"] == 2
    assert groups["r2"] == 3
    # Every agent belongs to at most one group
    members = topology.group_members()
    assert sorted(agent for agents in members.values() for agent in agents) == sorted(groups)


def test_cycles_terminate():
    """Cyclic direct and handoff edges are traversed once"""
    edges = [
        GraphEdge(source="a", destination=["b", "c"]),
        GraphEdge(source="b", destination="a", kind="direct"),
        GraphEdge(source="c", destination="a"),
    ]
    topology = compile_topology(["a", "b", "c"], edges)
    assert topology.parallel_groups == {"b": 1, "c": 1}


def test_handoff_edges_never_allocate_groups():
    """Handoff edges extend reachability only"""
    edges = [
        GraphEdge(source="a", destination="b"),
        GraphEdge(source="b", destination=["c", "d"]),
    ]
    topology = compile_topology(["a", "b", "c", "d"], edges)

    assert topology.handoff_destinations("a") == ["b"]
    assert topology.direct_destinations("b") == ["c", "d"]
    assert topology.parallel_groups == {"c": 1, "d": 1}


def test_needs_command_routing_requires_both_kinds():
    """Only agents with handoff and direct out-edges route through commands"""
    edges = [
        GraphEdge(source="a", destination="b"),
        GraphEdge(source="a", destination="c", kind="direct"),
        GraphEdge(source="b", destination="c", kind="direct"),
    ]
    topology = compile_topology(["a", "b", "c"], edges)

    assert topology.needs_command_routing("a") is True
    assert topology.needs_command_routing("b") is False
    assert topology.needs_command_routing("c") is False
    assert [edge.sources for edge in topology.direct_edges_by_destination()["c"]] == [["a"], ["b"]]
    assert list(topology.handoff_edges_by_source()) == ["a"]
