"""
Tests for turning workflow requests into graph configuration
"""

import pytest
from langchain_core.messages import HumanMessage

from agent_graph.api.v1.schemas.run import RunRequest
from agent_graph.core.agent_config import FallbackConfig
from agent_graph.core.errors import ConfigurationError
from agent_graph.graphs.standard_graph import StandardGraph
from agent_graph.services.run_service import create_run_service


def _request(client_options):
    return RunRequest(
        agents=[{"agent_id": "a", "provider": "fake", "client_options": client_options}],
        messages=[{"role": "user", "content": "hi"}],
    )


def test_request_fallbacks_become_fallback_configs():
    """Fallbacks and their policy are lifted out of the client options"""
    request = _request({
        "responses": ["ok"],
        "fallbacks": [{"provider": "fake", "client_options": {"responses": ["backup"]}}],
        "fallback_on": ["rate_limit"],
    })

    agent = create_run_service().build_graph_config(request).agents[0]

    assert agent.client_options == {"responses": ["ok"]}
    assert agent.fallbacks == [FallbackConfig(provider="fake", client_options={"responses": ["backup"]})]
    assert agent.fallback_on == ["rate_limit"]


def test_fallback_without_provider_is_rejected():
    """A fallback entry must name its provider"""
    request = _request({"fallbacks": [{"client_options": {}}]})

    with pytest.raises(ConfigurationError, match="fallback without a provider"):
        create_run_service().build_graph_config(request)


@pytest.mark.asyncio
async def test_request_fallback_recovers_a_failed_call():
    """A fallback declared in a request body is used when the primary is rate limited"""
    request = _request({
        "responses": [Exception("429 rate limit exceeded")],
        "fallbacks": [{"provider": "fake", "client_options": {"responses": ["recovered"]}}],
        "fallback_on": ["rate_limit"],
    })
    config = create_run_service().build_graph_config(request)
    graph = StandardGraph("run-1", config.agents)

    result = await graph.create_call_model("a")({"messages": [HumanMessage(content="hi")]}, {})

    assert result["messages"][0].content == "recovered"
