# agent_graph/state/graph_state.py

"""
Defines the state carried between graph nodes and the records emitted to
stream consumers.

Message channels use langgraph's `add_messages` reducer, so updates merge by
message id: re-sending a message with a known id replaces it in place.
"""

from typing import Annotated, Any, Dict, List, Optional, TypedDict

from langchain_core.messages import AnyMessage
from langgraph.graph.message import add_messages


def replace_messages(left: List[AnyMessage], right: List[AnyMessage]) -> List[AnyMessage]:
    """Reducer that replaces the channel value entirely."""
    return right


class AgentTurnState(TypedDict, total=False):
    """
    State of one agent's model/tool sub-turn.

    `routing` holds the aggregated routing directive of the last tool stage,
    `commands` any tool-level commands that could not be reconciled into it.
    """
    messages: Annotated[List[AnyMessage], add_messages]
    routing: Optional[Any]
    commands: Optional[List[Any]]


class ToolCallRecord(TypedDict):
    """A tool call bound to the run step that announced it."""
    id: str
    name: str
    args: Dict[str, Any]
    step_id: Optional[str]


class RunStep(TypedDict, total=False):
    """A stable, identified unit of work: a message being created or a batch of tool calls."""
    step_index: int     # Ordinal of this id within its step key
    id: str
    type: str           # "message_creation" or "tool_calls"
    index: int          # Ordinal within the run
    step_details: Dict[str, Any]
    usage: Optional[Dict[str, Any]]
    run_id: str
    agent_id: str       # Multi-agent graphs only
    group_id: int       # Agents in a parallel group only


class HandoffContext(TypedDict):
    """Who transferred control to an agent, attached for exactly one turn."""
    source_agent_name: str
    parallel_siblings: List[str]


class SessionFile(TypedDict, total=False):
    id: str
    name: str
    session_id: str


class ToolSessionState(TypedDict):
    """Latest session handle and name-deduplicated files for a stateful tool."""
    session_id: str
    files: List[SessionFile]
    last_updated: float
