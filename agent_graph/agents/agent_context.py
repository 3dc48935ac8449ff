# agent_graph/agents/agent_context.py
"""
Per-agent, per-run state.

Holds the agent's model binding, tools and instructions, plus the mutable
values a run accumulates for it: usage of the last call, reasoning-stream
token tracking, tools discovered through tool search and the handoff
context attached for the agent's next turn.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Set

from langchain_core.messages import BaseMessage, SystemMessage
from langchain_core.runnables import Runnable, RunnableLambda
from langchain_core.tools import BaseTool

from agent_graph.common.enums import PROGRAMMATIC_TOOL_CALLING, ContentTypes
from agent_graph.core.agent_config import AgentConfig, ToolDefinition
from agent_graph.state.graph_state import HandoffContext

logger = logging.getLogger(__name__)


class AgentContext:
    """Encapsulates the state that varies between agents of one run"""

    def __init__(
        self,
        agent_id: str,
        provider: str,
        client_options: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        tools: Optional[List[BaseTool]] = None,
        tool_map: Optional[Dict[str, BaseTool]] = None,
        tool_registry: Optional[Dict[str, ToolDefinition]] = None,
        instructions: Optional[str] = None,
        additional_instructions: Optional[str] = None,
        reasoning_key: str = ContentTypes.REASONING_CONTENT.value,
        tool_end: bool = False,
        stream_buffer: Optional[int] = None,
    ):
        self.agent_id = agent_id
        self.name = name or agent_id
        self.provider = provider
        self.client_options: Dict[str, Any] = dict(client_options or {})
        self.tools: List[BaseTool] = list(tools or [])
        self.tool_map: Dict[str, BaseTool] = dict(tool_map) if tool_map is not None else {
            tool.name: tool for tool in self.tools
        }
        self.tool_registry = tool_registry
        self.instructions = instructions
        self.additional_instructions = additional_instructions
        self.reasoning_key = reasoning_key
        self.tool_end = tool_end
        self.stream_buffer = stream_buffer

        # Per-run values, cleared by reset()
        self.current_usage: Optional[Dict[str, Any]] = None
        self.last_stream_call: Optional[float] = None
        self.last_token: Optional[str] = None
        self.token_type_switch: Optional[str] = None
        self.current_token_type: str = ContentTypes.TEXT.value
        self.discovered_tool_names: Set[str] = set()
        self.handoff_context: Optional[HandoffContext] = None

        self._cached_system_runnable: Optional[Runnable] = None
        self._system_runnable_stale = True

    @classmethod
    def from_config(cls, config: AgentConfig) -> "AgentContext":
        client_options = dict(config.client_options)
        if config.fallbacks:
            client_options["fallbacks"] = list(config.fallbacks)
        if config.fallback_on is not None:
            client_options["fallback_on"] = list(config.fallback_on)
        return cls(
            agent_id=config.agent_id,
            provider=config.provider,
            client_options=client_options,
            name=config.name,
            tools=config.tools,
            tool_map=config.tool_map,
            tool_registry=config.tool_registry,
            instructions=config.instructions,
            additional_instructions=config.additional_instructions,
            reasoning_key=config.reasoning_key,
            tool_end=config.tool_end,
            stream_buffer=config.stream_buffer,
        )

    def add_tools(self, tools: List[BaseTool]):
        """Bind additional tools, e.g. the transfer tools of handoff edges."""
        for tool in tools:
            self.tools.append(tool)
            self.tool_map[tool.name] = tool

    # System prompt

    def _build_programmatic_only_tools_instructions(self) -> str:
        if not self.tool_registry:
            return ""

        programmatic_only: List[ToolDefinition] = []
        for name, tool_def in self.tool_registry.items():
            allowed_callers = tool_def.allowed_callers or ["direct"]
            if "code_execution" not in allowed_callers or "direct" in allowed_callers:
                continue
            if not tool_def.defer_loading or name in self.discovered_tool_names:
                programmatic_only.append(tool_def)

        if not programmatic_only:
            return ""

        descriptions = []
        for tool_def in programmatic_only:
            desc = f"- **{tool_def.name}**"
            if tool_def.description:
                desc += f": {tool_def.description}"
            if tool_def.parameters:
                params = json.dumps(tool_def.parameters, indent=2).replace("\n", "\n  ")
                desc += f"\n  Parameters: {params}"
            descriptions.append(desc)

        return (
            "\n\n## Programmatic-Only Tools\n\n"
            f"The following tools are available exclusively through the `{PROGRAMMATIC_TOOL_CALLING}` tool. "
            f"You cannot call these tools directly; instead, use `{PROGRAMMATIC_TOOL_CALLING}` "
            "with Python code that invokes them.\n\n"
            + "\n\n".join(descriptions)
        )

    def _build_identity_preamble(self) -> str:
        if not self.handoff_context:
            return ""

        lines = [
            "## Multi-Agent Workflow",
            f'You are "{self.name}", transferred from "{self.handoff_context["source_agent_name"]}".',
        ]
        siblings = self.handoff_context["parallel_siblings"]
        if siblings:
            lines.append(f"Running in parallel with: {', '.join(siblings)}.")
        lines.append(
            "Execute only tasks relevant to your role. "
            "Routing is already handled if requested, unless you can route further."
        )
        return "\n".join(lines)

    def build_instructions_string(self) -> str:
        parts = [
            self._build_identity_preamble(),
            self.instructions or "",
            self.additional_instructions or "",
            self._build_programmatic_only_tools_instructions(),
        ]
        return "\n\n".join(part for part in parts if part)

    @property
    def system_runnable(self) -> Optional[Runnable]:
        """
        Runnable prepending the system message to the model input.

        Cached until the handoff context, the discovered tools or the run
        changes. None when the agent has no instructions at all.
        """
        if not self._system_runnable_stale:
            return self._cached_system_runnable

        instructions = self.build_instructions_string()
        if instructions:
            system_message = SystemMessage(content=instructions)

            def prepend_system(messages: List[BaseMessage]) -> List[BaseMessage]:
                return [system_message, *messages]

            self._cached_system_runnable = RunnableLambda(prepend_system).with_config(run_name="prompt")
        else:
            self._cached_system_runnable = None
        self._system_runnable_stale = False
        return self._cached_system_runnable

    # Handoff context

    def set_handoff_context(self, source_agent_name: str, parallel_siblings: List[str]):
        self.handoff_context = {
            "source_agent_name": source_agent_name,
            "parallel_siblings": list(parallel_siblings),
        }
        self._system_runnable_stale = True

    def clear_handoff_context(self):
        if self.handoff_context:
            self.handoff_context = None
            self._system_runnable_stale = True

    # Tool discovery

    def mark_tools_as_discovered(self, tool_names: List[str]) -> bool:
        """Returns True when at least one tool was newly discovered."""
        new_names = set(tool_names) - self.discovered_tool_names
        if not new_names:
            return False
        self.discovered_tool_names.update(new_names)
        self._system_runnable_stale = True
        logger.info(f"🔧 Agent '{self.agent_id}' discovered tools: {sorted(new_names)}")
        return True

    def get_deferred_tool_registry(self, only_deferred: bool = True) -> Dict[str, ToolDefinition]:
        return {
            name: tool_def for name, tool_def in (self.tool_registry or {}).items()
            if not only_deferred or tool_def.defer_loading
        }

    def get_tools_for_binding(self) -> List[BaseTool]:
        """Direct-callable tools that are not deferred, plus discovered ones."""
        if not self.tool_registry:
            return list(self.tools)

        tools = []
        for tool in self.tools:
            tool_def = self.tool_registry.get(tool.name)
            if tool_def is None:
                tools.append(tool)
                continue
            direct = "direct" in (tool_def.allowed_callers or ["direct"])
            if tool.name in self.discovered_tool_names:
                if direct:
                    tools.append(tool)
            elif direct and not tool_def.defer_loading:
                tools.append(tool)
        return tools

    def reset(self):
        """Reset the context for a new run"""
        self.current_usage = None
        self.last_stream_call = None
        self.last_token = None
        self.token_type_switch = None
        self.current_token_type = ContentTypes.TEXT.value
        self.discovered_tool_names.clear()
        self.handoff_context = None
        self._cached_system_runnable = None
        self._system_runnable_stale = True
