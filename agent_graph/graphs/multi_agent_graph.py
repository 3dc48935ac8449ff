# agent_graph/graphs/multi_agent_graph.py

"""
Multi-agent workflows composed from handoff and direct edges.

Agents with only handoff edges route wherever their transfer tools send
them. Agents with only direct edges always follow the static wiring. Agents
with both route exclusively: a handoff suppresses the direct edges for that
turn, otherwise every direct destination runs.
"""

import inspect
import logging
from dataclasses import replace
from typing import Annotated, Any, Dict, List, Optional, TypedDict

from langchain_core.messages import AnyMessage, BaseMessage, HumanMessage, get_buffer_string
from langchain_core.prompts import PromptTemplate
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph
from langgraph.graph.message import add_messages
from langgraph.graph.state import CompiledStateGraph

from agent_graph.core.agent_config import AgentConfig, GraphEdge
from agent_graph.core.config import settings
from agent_graph.core.errors import ConfigurationError
from agent_graph.graphs.routing import Continue, ExclusiveGoto, ParallelGoto, RoutingDirective, to_command
from agent_graph.graphs.standard_graph import StandardGraph
from agent_graph.graphs.topology import Topology, compile_topology
from agent_graph.state.graph_state import replace_messages
from agent_graph.tools.handoff import (
    create_handoff_tools_for_edge,
    is_transfer_message,
    receive_handoff,
    transfer_destination,
)

logger = logging.getLogger(__name__)


class MultiAgentGraph(StandardGraph):
    """Runs several agents wired by handoff and direct edges"""

    def __init__(
        self,
        run_id: str,
        agents: List[AgentConfig],
        edges: List[GraphEdge],
        signal=None,
        handle_tool_errors: bool = settings.HANDLE_TOOL_ERRORS,
    ):
        super().__init__(run_id, agents, signal=signal, handle_tool_errors=handle_tool_errors)
        self.edges = list(edges)
        self._validate_edges()
        self.topology: Topology = compile_topology(list(self.agent_contexts), self.edges)
        self.create_handoff_tools()

    def _validate_edges(self):
        for edge in self.edges:
            unknown = [a for a in edge.sources + edge.destinations if a not in self.agent_contexts]
            if unknown:
                raise ConfigurationError(f"Edge references unknown agent(s): {unknown}")

    def is_multi_agent_graph(self) -> bool:
        return True

    def get_parallel_group_id_for_agent(self, agent_id: str) -> Optional[int]:
        return self.topology.group_id_for(agent_id)

    def create_handoff_tools(self):
        """Give every handoff source the transfer tools of its outgoing edges."""
        for agent_id, edges in self.topology.handoff_edges_by_source().items():
            context = self.agent_contexts[agent_id]
            handoff_tools = []
            for edge in edges:
                handoff_tools.extend(create_handoff_tools_for_edge(edge, context.name))
            context.add_tools(handoff_tools)
            logger.info(f"🔧 Added {len(handoff_tools)} transfer tool(s) to agent '{agent_id}'")

    @property
    def display_names(self) -> Dict[str, str]:
        return {agent_id: context.name for agent_id, context in self.agent_contexts.items()}

    # Agent turns

    def _turn_input(self, agent_id: str, state: Dict[str, Any]):
        """Messages the agent sees this turn, and the handoff it received if any."""
        messages: List[BaseMessage] = state.get("messages") or []
        reception = receive_handoff(messages, agent_id, self.display_names)
        if reception is not None:
            turn_messages = list(reception.filtered_messages)
            if reception.instructions:
                turn_messages.append(HumanMessage(content=reception.instructions))
            return turn_messages, reception

        agent_messages = state.get("agent_messages")
        if agent_messages:
            return list(agent_messages), None
        return list(messages), None

    def routing_for_turn(self, agent_id: str, result: Dict[str, Any]) -> RoutingDirective:
        """
        Routing directive after an agent's turn.

        The tool stage's directive wins. Agents with both edge kinds fall back
        to a trailing transfer record, then to their direct destinations.
        """
        routing = result.get("routing")
        if routing is not None and not isinstance(routing, Continue):
            return routing
        if not self.topology.needs_command_routing(agent_id):
            return Continue()

        new_messages = result.get("new_messages") or []
        if new_messages and is_transfer_message(new_messages[-1]):
            destination = transfer_destination(new_messages[-1])
            if destination:
                return ExclusiveGoto(destination)

        direct = self.topology.direct_destinations(agent_id)
        if len(direct) == 1:
            return ExclusiveGoto(direct[0])
        return ExclusiveGoto(tuple(direct))

    def _transfer_records(self, routing: RoutingDirective) -> List[BaseMessage]:
        if isinstance(routing, ExclusiveGoto):
            forwarded = routing.messages or []
        elif isinstance(routing, ParallelGoto):
            forwarded = [msg for dispatch in routing.dispatches for msg in dispatch.messages]
        else:
            return []
        return [msg for msg in forwarded if is_transfer_message(msg)]

    def create_agent_wrapper(self, agent_id: str):
        agent_subgraph = self.create_agent_node(agent_id)
        context = self.agent_contexts[agent_id]

        async def agent_wrapper(state: Dict[str, Any], config: RunnableConfig):
            turn_messages, reception = self._turn_input(agent_id, state)
            if reception is not None and reception.source_agent_name:
                context.set_handoff_context(reception.source_agent_name, reception.parallel_siblings)
                logger.info(f"🔀 Agent '{agent_id}' received handoff from '{reception.source_agent_name}'")

            try:
                result = await self.invoke_agent_turn(agent_subgraph, turn_messages, config)
            finally:
                context.clear_handoff_context()

            new_messages: List[BaseMessage] = []
            if reception is not None and reception.instructions:
                new_messages.append(turn_messages[-1])
            new_messages.extend(result["new_messages"])

            routing = self.routing_for_turn(agent_id, result)
            update = {"messages": new_messages + self._transfer_records(routing), "agent_messages": []}
            if isinstance(routing, ExclusiveGoto) and routing.messages is not None:
                routing = replace(routing, messages=None)
            command = to_command(routing, update)
            return self.with_unresolved_commands(agent_id, command or update, result.get("commands"))

        return agent_wrapper

    # Fan-in prompts

    async def render_edge_prompt(self, edge: GraphEdge, messages: List[BaseMessage]):
        """Returns (prompt text, whether earlier results are excluded)."""
        prompt = edge.prompt
        exclude_results = edge.exclude_results
        if callable(prompt):
            text = prompt(messages, self.start_index)
            if inspect.isawaitable(text):
                text = await text
        elif isinstance(prompt, str) and "{results}" in prompt:
            results = get_buffer_string(messages[self.start_index:])
            rendered = await PromptTemplate.from_template(prompt).ainvoke({"results": results})
            text = rendered.to_string()
            exclude_results = exclude_results is not False and text != ""
        else:
            text = prompt
        return text, bool(exclude_results)

    def create_fan_in_node(self, edge: GraphEdge):
        async def fan_in(state: Dict[str, Any]) -> Dict[str, Any]:
            messages = state.get("messages") or []
            text, exclude_results = await self.render_edge_prompt(edge, messages)
            if not text:
                return {}

            prompt_message = HumanMessage(content=text)
            if not exclude_results:
                return {"messages": [prompt_message]}
            return {
                "messages": [prompt_message],
                "agent_messages": add_messages(list(messages[:self.start_index]), [prompt_message]),
            }

        return fan_in

    # Workflow

    def create_state_schema(self) -> type:
        return TypedDict("MultiAgentState", {
            "messages": Annotated[List[AnyMessage], self.reduce_messages],
            "agent_messages": Annotated[List[AnyMessage], replace_messages],
        })

    def create_workflow(self) -> CompiledStateGraph:
        topology = self.topology
        workflow = StateGraph(self.create_state_schema())

        for agent_id in self.agent_contexts:
            handoff = topology.handoff_destinations(agent_id)
            direct = topology.direct_destinations(agent_id)
            destinations = list(dict.fromkeys(handoff + direct))
            if handoff or not direct:
                destinations.append(END)
            workflow.add_node(agent_id, self.create_agent_wrapper(agent_id), destinations=tuple(destinations))

        for agent_id in topology.start_agents:
            workflow.add_edge(START, agent_id)

        for destination, edges in topology.direct_edges_by_destination().items():
            prompt_edges = [edge for edge in edges if edge.prompt]
            if prompt_edges:
                node_id = f"fan_in_{destination}_prompt"
                workflow.add_node(node_id, self.create_fan_in_node(prompt_edges[0]))
                for edge in edges:
                    for source in edge.sources:
                        workflow.add_edge(source, node_id)
                workflow.add_edge(node_id, destination)
                continue

            for edge in edges:
                for source in edge.sources:
                    if topology.needs_command_routing(source):
                        continue
                    workflow.add_edge(source, destination)

        logger.info(
            f"🔧 Compiled multi-agent workflow with {len(self.agent_contexts)} agent(s), "
            f"start agents {topology.start_agents}"
        )
        return workflow.compile()
