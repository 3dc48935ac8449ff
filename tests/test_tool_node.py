"""
Tests for the tool execution stage and routing aggregation
"""

import asyncio
import json
from typing import Annotated, List, Optional
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.tools import InjectedToolArg, tool
from langgraph.errors import GraphInterrupt
from langgraph.graph import END
from langgraph.types import Command, Send

from agent_graph.core.agent_config import GraphEdge, ToolDefinition
from agent_graph.graphs.routing import Continue, ExclusiveGoto, ParallelGoto
from agent_graph.tools.handoff import create_handoff_tools_for_edge
from agent_graph.tools.sessions import ToolSessions
from agent_graph.tools.tool_node import ToolNode, aggregate_tool_outputs, tools_condition


@tool
async def slow_echo(text: str, delay: float = 0.0) -> str:
    """Echo text after a delay."""
    await asyncio.sleep(delay)
    return text


@tool
def explode(reason: str) -> str:
    """Always fails."""
    raise ValueError(reason)


@tool
def pause() -> str:
    """Interrupts the graph."""
    raise GraphInterrupt()


@tool("execute_code")
def execute_code(
    code: str,
    session_id: Annotated[Optional[str], InjectedToolArg] = None,
    injected_files: Annotated[Optional[List[dict]], InjectedToolArg] = None,
) -> str:
    """Runs code in a sandbox."""
    return json.dumps({"session_id": session_id, "files": injected_files})


def _call(name, call_id, **args):
    return {"name": name, "args": args, "id": call_id, "type": "tool_call"}


def _state(*calls):
    return {"messages": [HumanMessage(content="go"), AIMessage(content="", tool_calls=list(calls))]}


@pytest.mark.asyncio
async def test_results_keep_call_order():
    """Concurrent calls are returned in the order they were requested"""
    node = ToolNode([slow_echo])
    state = _state(_call("slow_echo", "c1", text="first", delay=0.05), _call("slow_echo", "c2", text="second"))

    result = await node.run(state, {})

    assert [msg.tool_call_id for msg in result["messages"]] == ["c1", "c2"]
    assert [msg.content for msg in result["messages"]] == ["first", "second"]
    assert node.get_tool_usage_counts() == {"slow_echo": 2}


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result():
    """A call for an unregistered tool is reported back to the model"""
    error_handler = AsyncMock()
    node = ToolNode([slow_echo], error_handler=error_handler)

    result = await node.run(_state(_call("missing_tool", "c1")), {})

    message = result["messages"][0]
    assert message.status == "error"
    assert "missing_tool" in message.content
    assert message.content.endswith("Please fix your mistakes.")
    error_handler.assert_awaited_once()
    assert error_handler.await_args.args[0]["id"] == "c1"


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result():
    """Tool failures do not abort the turn"""
    node = ToolNode([explode, slow_echo])
    result = await node.run(_state(_call("explode", "c1", reason="boom"), _call("slow_echo", "c2", text="ok")), {})

    assert result["messages"][0].content == "Error: boom\nPlease fix your mistakes."
    assert result["messages"][1].content == "ok"


@pytest.mark.asyncio
async def test_error_handler_failure_is_logged_not_raised():
    """A failing error handler does not replace the error result"""
    node = ToolNode([explode], error_handler=AsyncMock(side_effect=RuntimeError("no step")))
    result = await node.run(_state(_call("explode", "c1", reason="boom")), {})
    assert result["messages"][0].status == "error"


@pytest.mark.asyncio
async def test_errors_propagate_when_handling_disabled():
    """With error handling off, tool failures raise"""
    node = ToolNode([explode], handle_tool_errors=False)
    with pytest.raises(ValueError):
        await node.run(_state(_call("explode", "c1", reason="boom")), {})


@pytest.mark.asyncio
async def test_graph_interrupt_propagates():
    """Interrupts are never turned into tool errors"""
    node = ToolNode([pause])
    with pytest.raises(GraphInterrupt):
        await node.run(_state(_call("pause", "c1")), {})


@pytest.mark.asyncio
async def test_answered_and_server_calls_are_skipped():
    """Calls already answered or executed by the provider are not run again"""
    node = ToolNode([slow_echo])
    state = _state(
        _call("slow_echo", "c1", text="a"),
        _call("slow_echo", "srvtoolu_1", text="b"),
        _call("slow_echo", "c2", text="c"),
    )
    state["messages"].append(ToolMessage(content="a", tool_call_id="c1"))

    result = await node.run(state, {})
    assert [msg.tool_call_id for msg in result["messages"]] == ["c2"]


@pytest.mark.asyncio
async def test_session_files_are_injected():
    """Code execution receives the tracked session and its files"""
    sessions = ToolSessions()
    sessions.merge_files("sess-1", [{"id": "f1", "name": "data.csv"}])
    node = ToolNode([execute_code], sessions=sessions)

    result = await node.run(_state(_call("execute_code", "c1", code="print(1)")), {})

    payload = json.loads(result["messages"][0].content)
    assert payload["session_id"] == "sess-1"
    assert payload["files"] == [{"session_id": "sess-1", "id": "f1", "name": "data.csv"}]


def test_programmatic_tools_cached_until_tool_map_changes():
    """Programmatic tool data is computed once per tool map"""
    registry = {
        "slow_echo": ToolDefinition(name="slow_echo", allowed_callers=["code_execution"]),
        "explode": ToolDefinition(name="explode"),
    }
    node = ToolNode([slow_echo, explode], tool_registry=registry)

    first = node.get_programmatic_tools()
    assert list(first[0]) == ["slow_echo"]
    assert node.get_programmatic_tools() is first

    node.set_tool_map({"explode": explode})
    assert node.get_programmatic_tools() is not first
    assert node.get_programmatic_tools()[0] == {}


@pytest.mark.asyncio
async def test_single_transfer_is_exclusive():
    """One transfer among several calls yields an exclusive goto without siblings"""
    transfer = create_handoff_tools_for_edge(GraphEdge(source="a", destination="b"), "a")[0]
    node = ToolNode([transfer, slow_echo])

    result = await node.run(_state(_call(transfer.name, "t1"), _call("slow_echo", "c1", text="x")), {})

    routing = result["routing"]
    assert isinstance(routing, ExclusiveGoto)
    assert routing.destination == "b"
    assert [msg.tool_call_id for msg in result["messages"]] == ["c1"]
    record = routing.messages[-1]
    assert "handoff_parallel_siblings" not in record.additional_kwargs


@pytest.mark.asyncio
async def test_two_transfers_become_parallel():
    """Two transfers in one turn fan out, each record listing the other destination"""
    tools = create_handoff_tools_for_edge(GraphEdge(source="a", destination=["b", "c"], kind="handoff"), "a")
    node = ToolNode(tools)

    result = await node.run(_state(_call("lc_transfer_to_b", "tb"), _call("lc_transfer_to_c", "tc")), {})

    routing = result["routing"]
    assert isinstance(routing, ParallelGoto)
    assert routing.destinations == ["b", "c"]
    for dispatch, sibling in zip(routing.dispatches, ["c", "b"]):
        record = dispatch.messages[-1]
        assert record.additional_kwargs["handoff_parallel_siblings"] == [sibling]
        # Each slice carries only its own transfer call
        assert [tc["id"] for tc in dispatch.messages[-2].tool_calls] == [record.tool_call_id]


def test_aggregate_plain_outputs():
    """Without commands the outputs pass through unchanged"""
    outputs = [ToolMessage(content="a", tool_call_id="1")]
    assert aggregate_tool_outputs(outputs) == {"messages": outputs}


def test_aggregate_merges_send_commands():
    """Parent commands fanning out with sends are merged into one parallel goto"""
    outputs = [
        Command(graph=Command.PARENT, goto=[Send("x", {"messages": []}), Send("y", {"messages": []})]),
        Command(graph=Command.PARENT, goto=[Send("z", {"messages": []})]),
    ]
    result = aggregate_tool_outputs(outputs)
    assert isinstance(result["routing"], ParallelGoto)
    assert result["routing"].destinations == ["x", "y", "z"]


def test_aggregate_surfaces_unrelated_commands():
    """Commands that are not handoffs are returned unmodified"""
    unrelated = Command(update={"messages": []})
    result = aggregate_tool_outputs([unrelated])
    assert result["commands"] == [unrelated]
    assert isinstance(result["routing"], Continue)


def test_tools_condition():
    """Route to tools only for pending calls"""
    with_calls = {"messages": [AIMessage(content="", tool_calls=[_call("slow_echo", "c1")])]}
    assert tools_condition(with_calls, "tools=a") == "tools=a"
    assert tools_condition(with_calls, "tools=a", {"c1"}) == END
    assert tools_condition({"messages": [AIMessage(content="done")]}, "tools=a") == END
    assert tools_condition({"messages": []}, "tools=a") == END
