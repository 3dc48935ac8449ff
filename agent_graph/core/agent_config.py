"""
Configuration for agents, edges and runs
"""
import os
from typing import Any, Callable, Dict, List, Optional, Union
from dataclasses import dataclass, field

from langchain_core.tools import BaseTool

from agent_graph.common.enums import DEFAULT_PROMPT_KEY
from agent_graph.core.config import settings


@dataclass
class ToolDefinition:
    """Registry entry describing how a tool may be called"""
    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    allowed_callers: List[str] = field(default_factory=lambda: ["direct"])
    defer_loading: bool = False


@dataclass
class FallbackConfig:
    """A provider to try when the primary model call fails"""
    provider: str
    client_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentConfig:
    """Configuration for individual agents"""
    agent_id: str
    provider: str = settings.DEFAULT_PROVIDER
    client_options: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    tools: List[BaseTool] = field(default_factory=list)
    tool_map: Optional[Dict[str, BaseTool]] = None
    tool_registry: Optional[Dict[str, ToolDefinition]] = None
    instructions: Optional[str] = None
    additional_instructions: Optional[str] = None
    reasoning_key: str = "reasoning_content"
    tool_end: bool = False
    stream_buffer: Optional[int] = settings.STREAM_BUFFER_MS
    fallbacks: List[FallbackConfig] = field(default_factory=list)
    fallback_on: Optional[List[str]] = None

    def __post_init__(self):
        if "model" not in self.client_options and self.provider == settings.DEFAULT_PROVIDER:
            self.client_options["model"] = settings.DEFAULT_MODEL


# Condition callables receive the workflow state and return
# True/False, a destination id, or a list of destination ids.
EdgeCondition = Callable[[Dict[str, Any]], Union[bool, str, List[str], None]]
# Prompt callables receive (messages, start_index) and return the prompt text.
EdgePrompt = Union[str, Callable[[List[Any], int], Any]]


@dataclass(frozen=True)
class GraphEdge:
    """
    A declared transition between agents.

    `source` and `destination` accept a single agent id or a list of ids.
    `kind` is "handoff", "direct" or None (inferred at compile time).
    """
    source: Union[str, List[str]]
    destination: Union[str, List[str]]
    kind: Optional[str] = None
    condition: Optional[EdgeCondition] = None
    prompt: Optional[EdgePrompt] = None
    exclude_results: Optional[bool] = None
    prompt_key: Optional[str] = None
    description: Optional[str] = None

    @property
    def sources(self) -> List[str]:
        return list(self.source) if isinstance(self.source, (list, tuple)) else [self.source]

    @property
    def destinations(self) -> List[str]:
        return list(self.destination) if isinstance(self.destination, (list, tuple)) else [self.destination]

    @property
    def effective_prompt_key(self) -> str:
        return self.prompt_key or DEFAULT_PROMPT_KEY


@dataclass
class GraphConfig:
    """Everything needed to build a run's graph"""
    agents: List[AgentConfig]
    edges: List[GraphEdge] = field(default_factory=list)
    handle_tool_errors: bool = settings.HANDLE_TOOL_ERRORS

    @property
    def is_multi_agent(self) -> bool:
        return len(self.edges) > 0 or len(self.agents) > 1


@dataclass
class RunServiceConfig:
    """Configuration for the run service"""
    max_concurrent_runs: int = 10
    return_content: bool = False


class RunSettings:
    """Settings for the run service"""

    def __init__(self):
        self.service_config = RunServiceConfig(
            max_concurrent_runs=int(os.getenv("MAX_CONCURRENT_RUNS", "10")),
            return_content=os.getenv("RETURN_CONTENT", "false").lower() == "true",
        )


# Global settings instance
run_settings = RunSettings()
