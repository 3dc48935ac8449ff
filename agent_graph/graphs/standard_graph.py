# agent_graph/graphs/standard_graph.py

"""
Single-agent graph and the machinery every graph shares.

Each agent runs as a compiled subgraph of two nodes, `agent=<id>` (model
call) and `tools=<id>` (tool stage), looping until the model stops calling
tools. The enclosing workflow invokes that subgraph from a node named after
the agent. Run steps, deltas and tool completions are dispatched straight to
the run's handler registry.
"""

import asyncio
import json
import logging
import math
import time
from typing import Annotated, Any, Dict, List, Mapping, Optional, Tuple, TypedDict

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, BaseMessage, BaseMessageChunk, message_chunk_to_message
from langchain_core.runnables import Runnable, RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.errors import GraphBubbleUp
from langgraph.graph import END, START, StateGraph
from langgraph.graph.message import add_messages
from langgraph.graph.state import CompiledStateGraph
from langgraph.types import Command

from agent_graph.agents.agent_context import AgentContext
from agent_graph.common.enums import (
    AGENT_NODE_PREFIX,
    EXECUTE_CODE,
    PROGRAMMATIC_TOOL_CALLING,
    SERVER_TOOL_ID_PREFIX,
    TOOLS_NODE_PREFIX,
    GraphEvents,
    StepTypes,
)
from agent_graph.core.agent_config import AgentConfig, FallbackConfig
from agent_graph.core.config import settings
from agent_graph.core.errors import ConfigurationError, EmptyMessagesError, RunAbortedError
from agent_graph.events import HandlerRegistry
from agent_graph.graphs.routing import Continue
from agent_graph.llm.fake import FakeStreamingChatModel
from agent_graph.llm.providers import create_chat_model
from agent_graph.messages.tools import extract_tool_discoveries
from agent_graph.run_steps.tracker import RunStepTracker, build_key_list, join_keys
from agent_graph.state.graph_state import AgentTurnState, RunStep
from agent_graph.tools.kinds import INJECTED_ARG_NAMES
from agent_graph.tools.sessions import ToolSessions
from agent_graph.tools.tool_node import ToolNode, tools_condition
from agent_graph.utils.abort import check_abort
from agent_graph.utils.error_classification import classify_error, should_trigger_fallback

logger = logging.getLogger(__name__)

# Client option keys consumed by the fallback policy, never passed to a model class
_POLICY_OPTION_KEYS = ("fallbacks", "fallback_on")


def _serialize_args(args: Any) -> str:
    if isinstance(args, str):
        return args
    if isinstance(args, dict):
        args = {key: value for key, value in args.items() if key not in INJECTED_ARG_NAMES}
    return json.dumps(args, default=str)


def _as_fallback(entry: Any) -> FallbackConfig:
    """Fallbacks arrive as FallbackConfig or as plain mappings from request bodies."""
    if isinstance(entry, FallbackConfig):
        return entry
    if isinstance(entry, Mapping) and entry.get("provider"):
        return FallbackConfig(provider=entry["provider"], client_options=dict(entry.get("client_options") or {}))
    raise ConfigurationError(f"Invalid fallback configuration: {entry!r}")


class StandardGraph:
    """Runs a single agent and tracks the run steps it produces"""

    def __init__(
        self,
        run_id: str,
        agents: List[AgentConfig],
        signal: Optional[asyncio.Event] = None,
        handle_tool_errors: bool = settings.HANDLE_TOOL_ERRORS,
    ):
        if not agents:
            raise ConfigurationError("At least one agent configuration is required")

        self.run_id = run_id
        self.signal = signal
        self.handle_tool_errors = handle_tool_errors
        self.agent_contexts: Dict[str, AgentContext] = {
            agent.agent_id: AgentContext.from_config(agent) for agent in agents
        }
        self.default_agent_id = agents[0].agent_id

        self.tracker = RunStepTracker()
        self.sessions = ToolSessions()
        self.handler_registry: Optional[HandlerRegistry] = None
        self.tool_nodes: Dict[str, ToolNode] = {}
        self.override_model: Optional[BaseChatModel] = None
        # (agent id, provider, options) -> model, kept for the whole run
        self.models: Dict[Tuple[str, str, str], BaseChatModel] = {}
        self.config: Optional[RunnableConfig] = None
        self.messages: List[BaseMessage] = []
        self.start_index = 0

    def reset_values(self, keep_content: bool = False):
        """Clear everything a previous run left behind"""
        self.messages = []
        self.start_index = 0
        self.config = None
        self.models.clear()
        self.tracker.reset(keep_content=keep_content)
        self.sessions.reset()
        for context in self.agent_contexts.values():
            context.reset()

    # Agent lookup and step keys

    def get_agent_context(self, metadata: Optional[Dict[str, Any]]) -> AgentContext:
        if not metadata:
            raise ConfigurationError("No metadata provided to retrieve agent context")

        node = metadata.get("langgraph_node")
        if not node:
            raise ConfigurationError("No langgraph_node in metadata to retrieve agent context")

        agent_id = None
        if node.startswith(AGENT_NODE_PREFIX):
            agent_id = node[len(AGENT_NODE_PREFIX):]
        elif node.startswith(TOOLS_NODE_PREFIX):
            agent_id = node[len(TOOLS_NODE_PREFIX):]

        context = self.agent_contexts.get(agent_id or "")
        if context is None:
            raise ConfigurationError(f"No agent context found for agent ID {agent_id}")
        return context

    def get_step_key(self, metadata: Optional[Dict[str, Any]]) -> str:
        if not metadata:
            return ""
        context = self.get_agent_context(metadata)
        key_list = build_key_list(
            metadata,
            current_token_type=context.current_token_type,
            token_type_switch=context.token_type_switch,
            invoked_tool_count=len(self.tracker.invoked_tool_ids),
        )
        return join_keys(key_list)

    def is_multi_agent_graph(self) -> bool:
        return False

    def get_parallel_group_id_for_agent(self, agent_id: str) -> Optional[int]:
        return None

    # Dispatchers

    async def _emit(self, event: GraphEvents, data: Any, metadata: Optional[Dict[str, Any]] = None):
        if self.handler_registry is None:
            return
        handler = self.handler_registry.get_handler(event.value)
        if handler is not None:
            await handler.handle(event.value, data, metadata, self)

    async def dispatch_run_step(
        self,
        step_key: str,
        step_details: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Allocate a step for `step_key`, bind its tool calls and emit it. Returns the step id."""
        step_id, step_index = self.tracker.generate_step_id(step_key)
        if step_details.get("type") == StepTypes.TOOL_CALLS.value:
            self.tracker.bind_tool_calls(step_id, step_details.get("tool_calls") or [])

        run_step: RunStep = {
            "step_index": step_index,
            "id": step_id,
            "type": step_details["type"],
            "index": self.tracker.next_index,
            "step_details": step_details,
            "usage": None,
        }
        if self.run_id:
            run_step["run_id"] = self.run_id

        if metadata and self.is_multi_agent_graph():
            node = metadata.get("langgraph_node") or ""
            if node.startswith((AGENT_NODE_PREFIX, TOOLS_NODE_PREFIX)):
                agent_id = self.get_agent_context(metadata).agent_id
                run_step["agent_id"] = agent_id
                group_id = self.get_parallel_group_id_for_agent(agent_id)
                if group_id is not None:
                    run_step["group_id"] = group_id

        self.tracker.record(run_step)
        await self._emit(GraphEvents.ON_RUN_STEP, run_step, metadata)
        return step_id

    async def dispatch_run_step_delta(self, step_id: str, delta: Dict[str, Any]):
        if not step_id:
            raise ConfigurationError("No step ID found")
        await self._emit(GraphEvents.ON_RUN_STEP_DELTA, {"id": step_id, "delta": delta})

    async def dispatch_message_delta(self, step_id: str, delta: Dict[str, Any]):
        if not step_id:
            raise ConfigurationError("No step ID found")
        await self._emit(GraphEvents.ON_MESSAGE_DELTA, {"id": step_id, "delta": delta})

    async def dispatch_reasoning_delta(self, step_id: str, delta: Dict[str, Any]):
        if not step_id:
            raise ConfigurationError("No step ID found")
        await self._emit(GraphEvents.ON_REASONING_DELTA, {"id": step_id, "delta": delta})

    async def _dispatch_tool_completion(self, step_id: str, tool_call: Dict[str, Any], metadata):
        run_step = self.tracker.get_run_step(step_id)
        if run_step is None:
            raise ConfigurationError(f"No run step found for stepId {step_id}")
        await self._emit(
            GraphEvents.ON_RUN_STEP_COMPLETED,
            {"result": {"id": step_id, "index": run_step["index"], "type": "tool_call", "tool_call": tool_call}},
            metadata,
        )

    async def handle_tool_call_completed(
        self,
        data: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        omit_output: bool = False,
    ):
        """Attach a finished tool's output to the run step that owns its call."""
        output = data.get("output")
        if output is None or isinstance(output, Command):
            return

        tool_call_id = getattr(output, "tool_call_id", None) or ""
        step_id = self.tracker.step_id_for_tool_call(tool_call_id)

        if output.name in (EXECUTE_CODE, PROGRAMMATIC_TOOL_CALLING):
            artifact = output.artifact if isinstance(output.artifact, dict) else {}
            files = artifact.get("files") or []
            if files and artifact.get("session_id"):
                self.sessions.merge_files(artifact["session_id"], files)

        content = output.content if isinstance(output.content, str) else json.dumps(output.content, default=str)
        tool_call = {
            "args": _serialize_args(data.get("input")),
            "name": output.name or "",
            "id": tool_call_id,
            "output": "" if omit_output else content,
            "progress": 1,
        }
        await self._dispatch_tool_completion(step_id, tool_call, metadata)

    async def handle_tool_call_error(self, data: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None):
        if not data.get("id"):
            logger.warning("⚠️ No tool call ID provided for tool error")
            return

        step_id = self.tracker.step_id_for_tool_call(data["id"])
        record = self.tracker.get_tool_call(data["id"]) or {}
        error = data.get("error")
        tool_call = {
            "id": data["id"],
            "name": data.get("name") or record.get("name") or "",
            "args": _serialize_args(data.get("input") if data.get("input") is not None else record.get("args")),
            "output": f"Error processing tool: {error}" if error is not None else "Error processing tool",
            "progress": 1,
        }
        await self._dispatch_tool_completion(step_id, tool_call, metadata)

    # Models

    def override_test_model(self, responses: List[Any], sleep: Optional[float] = None):
        """Replace every agent's model with a scripted fake for tests."""
        self.override_model = FakeStreamingChatModel(responses=responses, sleep=sleep)

    def get_new_model(self, provider: str, client_options: Optional[Dict[str, Any]] = None) -> BaseChatModel:
        options = {k: v for k, v in (client_options or {}).items() if k not in _POLICY_OPTION_KEYS}
        return create_chat_model(provider, options)

    def get_model(self, agent_id: str, provider: str, client_options: Optional[Dict[str, Any]] = None) -> BaseChatModel:
        """The agent's model for `provider`, created on first use and reused until the run is reset."""
        options = {k: v for k, v in (client_options or {}).items() if k not in _POLICY_OPTION_KEYS}
        key = (agent_id, provider, json.dumps(options, sort_keys=True, default=str))
        model = self.models.get(key)
        if model is None:
            model = self.get_new_model(provider, options)
            self.models[key] = model
        return model

    def initialize_model(
        self,
        agent_id: str,
        provider: str,
        tools: Optional[List[BaseTool]] = None,
        client_options: Optional[Dict[str, Any]] = None,
    ) -> Runnable:
        model = self.override_model or self.get_model(agent_id, provider, client_options)
        if not tools:
            return model
        return model.bind_tools(tools)

    async def attempt_invoke(self, model: Runnable, messages: List[BaseMessage], config: RunnableConfig) -> AIMessage:
        """Stream one model call to completion, stopping if the run is aborted."""
        final_chunk: Optional[BaseMessageChunk] = None
        async for chunk in model.astream(messages, config):
            check_abort(self.signal)
            if not isinstance(chunk, BaseMessageChunk):
                continue
            final_chunk = chunk if final_chunk is None else final_chunk + chunk

        if final_chunk is None:
            raise ValueError("Model produced no output")
        message = message_chunk_to_message(final_chunk)
        if isinstance(message, AIMessage) and message.tool_calls:
            message.tool_calls = [tc for tc in message.tool_calls if tc.get("name")]
        return message

    def create_call_model(self, agent_id: str):
        context = self.agent_contexts.get(agent_id)
        if context is None:
            raise ConfigurationError(f"Agent context not found for agentId: {agent_id}")

        async def call_model(state: Dict[str, Any], config: RunnableConfig) -> Dict[str, Any]:
            messages: List[BaseMessage] = state.get("messages") or []
            self.config = config

            discovered = extract_tool_discoveries(messages)
            if discovered:
                context.mark_tools_as_discovered(discovered)

            tools = context.get_tools_for_binding()
            model = self.initialize_model(agent_id, context.provider, tools, context.client_options)
            system_runnable = context.system_runnable
            if system_runnable is not None:
                model = system_runnable | model

            if context.last_stream_call is not None and context.stream_buffer is not None:
                elapsed_ms = (time.time() - context.last_stream_call) * 1000
                if elapsed_ms < context.stream_buffer:
                    await asyncio.sleep(math.ceil((context.stream_buffer - elapsed_ms) / 1000))
            context.last_stream_call = time.time()

            if not messages:
                raise EmptyMessagesError()

            check_abort(self.signal)
            try:
                message = await self.attempt_invoke(model, messages, config)
            except (GraphBubbleUp, RunAbortedError):
                raise
            except Exception as primary_error:
                message = await self._invoke_fallbacks(context, tools, messages, config, primary_error)

            # Calls the provider already executed never reach the tool stage
            for tool_call in getattr(message, "tool_calls", None) or []:
                if (tool_call.get("id") or "").startswith(SERVER_TOOL_ID_PREFIX):
                    self.tracker.mark_tool_invoked(tool_call["id"])

            context.current_usage = getattr(message, "usage_metadata", None)
            return {"messages": [message]}

        return call_model

    async def _invoke_fallbacks(
        self,
        context: AgentContext,
        tools: List[BaseTool],
        messages: List[BaseMessage],
        config: RunnableConfig,
        primary_error: Exception,
    ) -> AIMessage:
        fallbacks = [_as_fallback(entry) for entry in context.client_options.get("fallbacks") or []]
        fallback_on = context.client_options.get("fallback_on")
        classified = classify_error(primary_error)
        if not fallbacks or not should_trigger_fallback(classified.type, fallback_on):
            raise primary_error

        logger.warning(f"⚠️ Agent '{context.agent_id}' model call failed ({classified.type.value}), trying fallbacks")
        last_error: Exception = primary_error
        for fallback in fallbacks:
            try:
                model = self.get_model(context.agent_id, fallback.provider, fallback.client_options)
                if tools:
                    model = model.bind_tools(tools)
                if context.system_runnable is not None:
                    model = context.system_runnable | model
                message = await self.attempt_invoke(model, messages, config)
            except (GraphBubbleUp, RunAbortedError):
                raise
            except Exception as e:
                classified = classify_error(e)
                last_error = e
                if not classified.retryable:
                    break
                if not should_trigger_fallback(classified.type, fallback_on):
                    raise
                continue

            policy = {k: v for k, v in context.client_options.items() if k in _POLICY_OPTION_KEYS}
            context.provider = fallback.provider
            context.client_options = {**fallback.client_options, **policy}
            logger.info(f"✅ Agent '{context.agent_id}' recovered with fallback provider '{fallback.provider}'")
            return message

        raise last_error

    # Workflow

    def create_tool_node(self, context: AgentContext) -> ToolNode:
        tool_node = ToolNode(
            tools=context.tools,
            tool_map=context.tool_map,
            tool_call_step_ids=self.tracker.tool_call_step_ids,
            error_handler=self.handle_tool_call_error,
            handle_tool_errors=self.handle_tool_errors,
            tool_registry=context.tool_registry,
            sessions=self.sessions,
            signal=self.signal,
        )
        self.tool_nodes[context.agent_id] = tool_node
        return tool_node

    def create_agent_node(self, agent_id: str) -> CompiledStateGraph:
        """Compile the model/tool loop of one agent."""
        context = self.agent_contexts.get(agent_id)
        if context is None:
            raise ConfigurationError(f"Agent context not found for agentId: {agent_id}")

        agent_node = f"{AGENT_NODE_PREFIX}{agent_id}"
        tools_node = f"{TOOLS_NODE_PREFIX}{agent_id}"
        tool_node = self.create_tool_node(context)

        def route_message(state: Dict[str, Any]) -> str:
            return tools_condition(state, tools_node, self.tracker.invoked_tool_ids)

        def route_after_tools(state: Dict[str, Any]) -> str:
            routing = state.get("routing")
            if context.tool_end or (routing is not None and not isinstance(routing, Continue)):
                return END
            return agent_node

        workflow = StateGraph(AgentTurnState)
        workflow.add_node(agent_node, self.create_call_model(agent_id))
        workflow.add_node(tools_node, tool_node.run)
        workflow.add_edge(START, agent_node)
        workflow.add_conditional_edges(agent_node, route_message, [tools_node, END])
        workflow.add_conditional_edges(tools_node, route_after_tools, [agent_node, END])
        return workflow.compile()

    async def invoke_agent_turn(
        self,
        agent_subgraph: CompiledStateGraph,
        messages: List[BaseMessage],
        config: RunnableConfig,
    ) -> Dict[str, Any]:
        """
        Run an agent's sub-turn on `messages`.

        Returns the subgraph's final state with `new_messages` added: the
        messages the turn produced, in order.
        """
        result = await agent_subgraph.ainvoke({"messages": messages}, config)
        result_messages = result.get("messages") or []
        return {**result, "new_messages": list(result_messages[len(messages):])}

    def with_unresolved_commands(self, agent_id: str, output: Any, commands: Optional[List[Command]]) -> Any:
        """
        Pass tool commands the tool stage could not reconcile to the workflow as-is.

        They are re-issued for the enclosing graph, next to the turn's own output.
        """
        if not commands:
            return output
        logger.warning(f"⚠️ Agent '{agent_id}' returned {len(commands)} unresolved tool command(s)")
        return [output, *(Command(goto=c.goto, update=c.update, resume=c.resume) for c in commands)]

    def reduce_messages(self, left: List[AnyMessage], right: List[AnyMessage]) -> List[AnyMessage]:
        """Merge messages, remembering where the run's own messages start."""
        if not left:
            self.start_index = len(right) if isinstance(right, list) else 1
        merged = add_messages(left, right)
        self.messages = merged
        return merged

    def create_state_schema(self) -> type:
        return TypedDict("RunState", {"messages": Annotated[List[AnyMessage], self.reduce_messages]})

    def create_workflow(self) -> CompiledStateGraph:
        agent_id = self.default_agent_id
        agent_subgraph = self.create_agent_node(agent_id)

        async def run_agent(state: Dict[str, Any], config: RunnableConfig):
            result = await self.invoke_agent_turn(agent_subgraph, state.get("messages") or [], config)
            return self.with_unresolved_commands(agent_id, {"messages": result["new_messages"]}, result.get("commands"))

        workflow = StateGraph(self.create_state_schema())
        workflow.add_node(agent_id, run_agent)
        workflow.add_edge(START, agent_id)
        workflow.add_edge(agent_id, END)
        logger.info(f"🔧 Compiled single-agent workflow for '{agent_id}'")
        return workflow.compile()

    # Queries

    def get_run_messages(self) -> List[BaseMessage]:
        return list(self.messages[self.start_index:])

    def get_run_steps(self, agent_id: Optional[str] = None) -> List[RunStep]:
        return self.tracker.get_run_steps(agent_id)

    def get_run_steps_by_agent(self) -> Dict[str, List[RunStep]]:
        return self.tracker.get_run_steps_by_agent()

    def get_active_agent_ids(self) -> List[str]:
        return self.tracker.get_active_agent_ids()

    def get_content_part_agent_map(self) -> Dict[int, str]:
        return self.tracker.get_content_part_agent_map()
