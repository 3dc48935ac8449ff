# agent_graph/graphs/topology.py

"""
Compiles a declarative edge list into routing metadata.

Edges are classified into handoff edges (realized as transfer tools the
model may call) and direct edges (static wiring executed after a turn).
Start agents and parallel groups are derived by traversal over a plain
adjacency list, so cyclic topologies are handled with a visited set.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from agent_graph.common.enums import EdgeKind
from agent_graph.core.agent_config import GraphEdge

logger = logging.getLogger(__name__)


def classify_edge(edge: GraphEdge) -> EdgeKind:
    """
    Classify an edge as handoff or direct. First match wins:

    1. explicit kind "direct" -> direct
    2. explicit kind "handoff", or a condition is set -> handoff
    3. one source with several destinations -> direct (fan-out)
    4. anything else -> handoff
    """
    if edge.kind == EdgeKind.DIRECT:
        return EdgeKind.DIRECT
    if edge.kind == EdgeKind.HANDOFF or edge.condition is not None:
        return EdgeKind.HANDOFF
    if len(edge.sources) == 1 and len(edge.destinations) > 1:
        return EdgeKind.DIRECT
    return EdgeKind.HANDOFF


def find_start_agents(agent_ids: List[str], edges: Iterable[GraphEdge]) -> List[str]:
    """Agents that are never a destination; the first agent when every agent is one."""
    has_incoming = set()
    for edge in edges:
        has_incoming.update(edge.destinations)

    start_agents = [agent_id for agent_id in agent_ids if agent_id not in has_incoming]
    if not start_agents and agent_ids:
        start_agents = [agent_ids[0]]
    return start_agents


def compute_parallel_groups(
    start_agents: List[str],
    direct_edges: List[GraphEdge],
    handoff_edges: List[GraphEdge],
) -> Dict[str, int]:
    """
    Assign incrementing group ids to agents that run as siblings of one fan-out wave.

    For `researcher -> [analyst1, analyst2] -> summarizer` only the analysts
    get a group (1). Several start agents form group 1 themselves. A node
    keeps the first group it is assigned.
    """
    groups: Dict[str, int] = {}
    group_counter = 1

    if len(start_agents) > 1:
        for agent_id in start_agents:
            groups[agent_id] = group_counter
        group_counter += 1

    visited = set()
    queue = deque(start_agents)
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)

        for edge in direct_edges:
            if current not in edge.sources:
                continue
            destinations = edge.destinations
            if len(destinations) > 1:
                for dest in destinations:
                    groups.setdefault(dest, group_counter)
                    if dest not in visited:
                        queue.append(dest)
                group_counter += 1
            else:
                queue.extend(dest for dest in destinations if dest not in visited)

        # Handoff edges only extend reachability
        for edge in handoff_edges:
            if current in edge.sources:
                queue.extend(dest for dest in edge.destinations if dest not in visited)

    return groups


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


@dataclass
class Topology:
    """Compiled routing metadata for a multi-agent graph"""
    agent_ids: List[str]
    handoff_edges: List[GraphEdge] = field(default_factory=list)
    direct_edges: List[GraphEdge] = field(default_factory=list)
    start_agents: List[str] = field(default_factory=list)
    parallel_groups: Dict[str, int] = field(default_factory=dict)

    def handoff_destinations(self, agent_id: str) -> List[str]:
        return _unique(
            dest for edge in self.handoff_edges if agent_id in edge.sources for dest in edge.destinations
        )

    def direct_destinations(self, agent_id: str) -> List[str]:
        return _unique(
            dest for edge in self.direct_edges if agent_id in edge.sources for dest in edge.destinations
        )

    def needs_command_routing(self, agent_id: str) -> bool:
        """True when the agent has both handoff and direct out-edges."""
        return bool(self.handoff_destinations(agent_id)) and bool(self.direct_destinations(agent_id))

    def handoff_edges_by_source(self) -> Dict[str, List[GraphEdge]]:
        by_source: Dict[str, List[GraphEdge]] = {}
        for edge in self.handoff_edges:
            for source in edge.sources:
                by_source.setdefault(source, []).append(edge)
        return by_source

    def direct_edges_by_destination(self) -> Dict[str, List[GraphEdge]]:
        by_destination: Dict[str, List[GraphEdge]] = {}
        for edge in self.direct_edges:
            for destination in edge.destinations:
                by_destination.setdefault(destination, []).append(edge)
        return by_destination

    def group_id_for(self, agent_id: str) -> Optional[int]:
        return self.parallel_groups.get(agent_id)

    def group_members(self) -> Dict[int, List[str]]:
        members: Dict[int, List[str]] = {}
        for agent_id, group_id in self.parallel_groups.items():
            members.setdefault(group_id, []).append(agent_id)
        return members


def compile_topology(agent_ids: List[str], edges: List[GraphEdge]) -> Topology:
    """Classify edges, then derive start agents and parallel groups."""
    handoff_edges: List[GraphEdge] = []
    direct_edges: List[GraphEdge] = []
    for edge in edges:
        if classify_edge(edge) == EdgeKind.DIRECT:
            direct_edges.append(edge)
        else:
            handoff_edges.append(edge)

    start_agents = find_start_agents(agent_ids, edges)
    parallel_groups = compute_parallel_groups(start_agents, direct_edges, handoff_edges)

    logger.info(
        f"🔀 Compiled topology: {len(handoff_edges)} handoff edge(s), {len(direct_edges)} direct edge(s), "
        f"start agents {start_agents}, {len(set(parallel_groups.values()))} parallel group(s)"
    )
    return Topology(
        agent_ids=list(agent_ids),
        handoff_edges=handoff_edges,
        direct_edges=direct_edges,
        start_agents=start_agents,
        parallel_groups=parallel_groups,
    )
