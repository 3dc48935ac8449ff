"""
Tests for multi-agent workflows: handoffs, direct edges, fan-out and fan-in prompts
"""

from unittest.mock import patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from agent_graph.core.agent_config import AgentConfig, GraphEdge
from agent_graph.core.errors import ConfigurationError
from agent_graph.graphs.multi_agent_graph import MultiAgentGraph


def _agent(agent_id, *responses, **kwargs):
    return AgentConfig(
        agent_id=agent_id,
        provider="fake",
        client_options={"responses": list(responses) or ["ok"]},
        **kwargs,
    )


def _transfer(*destinations, args=None):
    return AIMessage(
        content="",
        tool_calls=[
            {"name": f"lc_transfer_to_{destination}", "args": args or {}, "id": f"call_{destination}"}
            for destination in destinations
        ],
    )


async def _run(graph, text="hi"):
    result = await graph.create_workflow().ainvoke({"messages": [HumanMessage(content=text)]})
    return result["messages"]


def test_unknown_agent_in_edge_is_rejected():
    """Edges may only reference declared agents"""
    with pytest.raises(ConfigurationError):
        MultiAgentGraph("run-1", [_agent("a")], [GraphEdge(source="a", destination="ghost")])


def test_handoff_sources_receive_transfer_tools():
    """Only the source of a handoff edge gets a transfer tool"""
    graph = MultiAgentGraph("run-1", [_agent("a"), _agent("b")], [GraphEdge(source="a", destination="b")])

    assert "lc_transfer_to_b" in graph.agent_contexts["a"].tool_map
    assert graph.agent_contexts["b"].tool_map == {}


@pytest.mark.asyncio
async def test_handoff_transfers_control():
    """A transfer hands the conversation to the destination without the transfer noise"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a", _transfer("b")), _agent("b", "done by b")],
        [GraphEdge(source="a", destination="b")],
    )

    messages = await _run(graph)

    assert messages[-1].content == "done by b"
    assert messages[-2].name == "lc_transfer_to_b"
    assert graph.agent_contexts["b"].handoff_context is None


@pytest.mark.asyncio
async def test_handoff_forwards_instructions_and_identity():
    """Instructions become the receiver's last message and its prompt names the sender"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a", name="Planner"), _agent("b")],
        [GraphEdge(source="a", destination="b", prompt="What b should do")],
    )
    graph.override_test_model([_transfer("b", args={"instructions": "check the totals"}), "totals ok"])

    messages = await _run(graph)

    received = graph.override_model.calls[-1]
    assert isinstance(received[0], SystemMessage)
    assert 'transferred from "Planner"' in received[0].content
    assert received[-1].content == "check the totals"
    assert [msg.content for msg in received[1:]] == ["hi", "check the totals"]
    assert messages[-1].content == "totals ok"


@pytest.mark.asyncio
async def test_mixed_edges_follow_the_transfer():
    """With handoff and direct edges, a transfer suppresses the direct destination"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a", _transfer("b")), _agent("b", "from b"), _agent("c", "from c")],
        [GraphEdge(source="a", destination="b"), GraphEdge(source="a", destination="c", kind="direct")],
    )

    contents = [msg.content for msg in await _run(graph)]

    assert "from b" in contents
    assert "from c" not in contents


@pytest.mark.asyncio
async def test_mixed_edges_fall_through_to_direct():
    """Without a transfer, the direct destination runs and the handoff target does not"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a", "plain answer"), _agent("b", "from b"), _agent("c", "from c")],
        [GraphEdge(source="a", destination="b"), GraphEdge(source="a", destination="c", kind="direct")],
    )

    contents = [msg.content for msg in await _run(graph)]

    assert contents == ["hi", "plain answer", "from c"]


@pytest.mark.asyncio
async def test_parallel_transfers_tell_each_agent_about_its_sibling():
    """Two transfers in one turn run both destinations, each aware of the other"""
    graph = MultiAgentGraph(
        "run-1",
        [
            _agent("a", _transfer("b", "c"), name="Planner"),
            _agent("b", "from b", name="Builder"),
            _agent("c", "from c", name="Critic"),
        ],
        [GraphEdge(source="a", destination=["b", "c"], kind="handoff")],
    )
    b_context = graph.agent_contexts["b"]
    c_context = graph.agent_contexts["c"]

    with patch.object(b_context, "set_handoff_context", wraps=b_context.set_handoff_context) as b_spy, \
            patch.object(c_context, "set_handoff_context", wraps=c_context.set_handoff_context) as c_spy:
        contents = [msg.content for msg in await _run(graph)]

    b_spy.assert_called_once_with("Planner", ["Critic"])
    c_spy.assert_called_once_with("Planner", ["Builder"])
    assert {"from b", "from c"} <= set(contents)


@pytest.mark.asyncio
async def test_direct_fan_out_runs_every_destination():
    """A -> [B, C, D] runs all three after A"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a", "plan"), _agent("b", "from b"), _agent("c", "from c"), _agent("d", "from d")],
        [GraphEdge(source="a", destination=["b", "c", "d"])],
    )

    messages = await _run(graph)

    assert [msg.content for msg in messages[:2]] == ["hi", "plan"]
    assert {msg.content for msg in messages[2:]} == {"from b", "from c", "from d"}
    assert graph.get_parallel_group_id_for_agent("b") == 1
    assert graph.get_parallel_group_id_for_agent("a") is None


@pytest.mark.asyncio
async def test_fan_in_prompt_replaces_results():
    """A results prompt gives the fan-in agent the original input plus the rendered prompt"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a"), _agent("b"), _agent("c"), _agent("d")],
        [
            GraphEdge(source="a", destination=["b", "c"]),
            GraphEdge(source=["b", "c"], destination="d", kind="direct", prompt="Summarize:\n{results}"),
        ],
    )
    graph.override_test_model(["plan", "first result", "second result", "summary"])

    messages = await _run(graph, "go")

    received = graph.override_model.calls[-1]
    assert [type(msg) for msg in received] == [HumanMessage, HumanMessage]
    assert received[0].content == "go"
    prompt = received[1].content
    assert prompt.startswith("Summarize:\nAI: plan")
    assert "first result" in prompt and "second result" in prompt
    assert messages[-1].content == "summary"


@pytest.mark.asyncio
async def test_fan_in_prompt_without_results_keeps_history():
    """A plain prompt is appended to the full history"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a"), _agent("b")],
        [GraphEdge(source="a", destination="b", kind="direct", prompt="Now review the plan.")],
    )
    graph.override_test_model(["plan", "reviewed"])

    await _run(graph, "go")

    received = graph.override_model.calls[-1]
    assert [msg.content for msg in received] == ["go", "plan", "Now review the plan."]


@pytest.mark.asyncio
async def test_run_steps_carry_agent_and_group():
    """Steps from agent nodes are stamped with the agent and its parallel group"""
    graph = MultiAgentGraph(
        "run-1",
        [_agent("a"), _agent("b"), _agent("c")],
        [GraphEdge(source="a", destination=["b", "c"])],
    )
    metadata = {
        "run_id": "run-1",
        "thread_id": "t",
        "langgraph_node": "agent=b",
        "langgraph_step": 2,
        "checkpoint_ns": "b:1",
    }

    step_id = await graph.dispatch_run_step(
        graph.get_step_key(metadata),
        {"type": "message_creation", "message_creation": {"message_id": "m1"}},
        metadata,
    )

    run_step = graph.tracker.get_run_step(step_id)
    assert run_step["agent_id"] == "b"
    assert run_step["group_id"] == 1
    assert graph.get_active_agent_ids() == ["b"]
